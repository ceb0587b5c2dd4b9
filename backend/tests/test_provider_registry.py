from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from navfeed.cache import ProviderCache
from navfeed.errors import AllProvidersFailed
from navfeed.events import DegradedDataServed, EventBus, EventRecorder, FailoverOccurred, ProvidersExhausted
from navfeed.health import HealthTracker, RetryConfig
from navfeed.kv_store import MemoryStore
from navfeed.models import BoundingBox, TrafficFlow
from navfeed.registry import ProviderRegistry
from navfeed.settings import Settings

TTLS_MS = {"map_tiles": 604_800_000, "traffic": 300_000, "radar": 86_400_000, "weather": 1_800_000}
BBOX = BoundingBox(min_lat=47.36, min_lng=8.52, max_lat=47.39, max_lng=8.56)


class _Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000_000

    def __call__(self) -> int:
        return self.now


async def _no_sleep(_seconds: float) -> None:
    return None


class _FakeTraffic:
    def __init__(self, name: str, *, fail: bool = False, speed: float = 30.0) -> None:
        self.name = name
        self.fail = fail
        self.speed = speed
        self.calls = 0

    def get_name(self) -> str:
        return self.name

    async def get_flow(self, bbox: BoundingBox) -> list[TrafficFlow]:
        self.calls += 1
        if self.fail:
            raise ConnectionError(f"{self.name} unreachable")
        return [TrafficFlow(id=f"{self.name}-1", coordinates=[bbox.center()], speed=self.speed, free_flow_speed=60.0)]


def _config(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "MAPBOX_TOKEN": "",
        "MAPTILER_TOKEN": "",
        "HERE_API_KEY": "",
        "TOMTOM_API_KEY": "",
        "OPENWEATHER_API_KEY": "",
        "CACHE_BACKEND": "memory",
    }
    values.update(overrides)
    return Settings(**values)


def _unreachable(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, request=request)


class _Harness:
    def __init__(self, *, store: MemoryStore | None = None, failure_threshold: int = 3, **config: Any) -> None:
        self.clock = _Clock()
        self.events = EventBus()
        self.recorder = EventRecorder(self.events)
        self.cache = ProviderCache(store or MemoryStore(), ttls_ms=TTLS_MS, prefix="t", now_ms=self.clock)
        self.health = HealthTracker(
            failure_threshold=failure_threshold,
            default_retry=RetryConfig(max_attempts=1),
            events=self.events,
            now_ms=self.clock,
            sleep=_no_sleep,
        )
        self.registry = ProviderRegistry(
            health=self.health,
            cache=self.cache,
            events=self.events,
            config=_config(**config),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(_unreachable)),
        )

    def flow(self, providers: list[_FakeTraffic], **kwargs: Any):
        return self.registry.with_failover(providers, lambda p: p.get_flow(BBOX), "traffic.flow", **kwargs)


def test_failover_uses_second_provider_and_notifies_once() -> None:
    h = _Harness()
    a, b = _FakeTraffic("A", fail=True), _FakeTraffic("B")

    result = asyncio.run(h.flow([a, b]))

    assert result.provider == "B"
    assert result.used_fallback is True
    assert result.data[0].id == "B-1"
    assert result.providers_tried == ("A", "B")
    assert result.total_attempts == 2
    failovers = h.recorder.of_type(FailoverOccurred)
    assert len(failovers) == 1
    assert failovers[0].from_provider == "A"
    assert failovers[0].to_provider == "B"
    assert "unreachable" in failovers[0].reason


def test_primary_success_emits_no_failover() -> None:
    h = _Harness()
    a, b = _FakeTraffic("A"), _FakeTraffic("B")

    result = asyncio.run(h.flow([a, b]))

    assert result.provider == "A"
    assert result.used_fallback is False
    assert b.calls == 0
    assert h.recorder.of_type(FailoverOccurred) == []


def test_fresh_cache_hit_invokes_no_provider() -> None:
    h = _Harness()
    a = _FakeTraffic("A")

    async def _run():
        first = await h.flow([a], cache_key="area", category="traffic", value_type=list[TrafficFlow])
        second = await h.flow([a], cache_key="area", category="traffic", value_type=list[TrafficFlow])
        return first, second

    first, second = asyncio.run(_run())
    assert first.provider == "A"
    assert second.provider == "Cache(A)"
    assert second.from_cache is True
    assert second.total_attempts == 0
    assert a.calls == 1
    assert second.data[0].id == "A-1"


def test_all_fail_with_expired_cache_serves_stale_data() -> None:
    h = _Harness()
    good, broken = _FakeTraffic("A"), _FakeTraffic("A", fail=True)

    async def _run():
        await h.flow([good], cache_key="area", category="traffic", value_type=list[TrafficFlow])
        h.clock.now += 10 * 60_000
        return await h.flow(
            [broken, _FakeTraffic("B", fail=True)],
            cache_key="area",
            category="traffic",
            value_type=list[TrafficFlow],
        )

    result = asyncio.run(_run())
    assert result.provider == "Cache(Stale, A)"
    assert result.is_stale is True
    assert result.used_fallback is True
    assert result.age_ms == 10 * 60_000
    degraded = h.recorder.of_type(DegradedDataServed)
    assert len(degraded) == 1
    assert degraded[0].age_minutes == 10
    assert degraded[0].source_name == "A"
    assert h.recorder.of_type(ProvidersExhausted) == []


def test_all_fail_without_cache_raises_and_reports_exhaustion_once() -> None:
    h = _Harness()
    providers = [_FakeTraffic("A", fail=True), _FakeTraffic("B", fail=True)]

    async def _run():
        errors = []
        for _ in range(2):
            with pytest.raises(AllProvidersFailed) as exc:
                await h.flow(providers)
            errors.append(exc.value)
        return errors

    errors = asyncio.run(_run())
    assert errors[0].details["provider_count"] == 2
    assert errors[0].details["total_attempts"] == 2
    assert "B unreachable" in errors[0].message
    assert len(h.recorder.of_type(ProvidersExhausted)) == 1


def test_exhaustion_is_reported_again_after_a_success() -> None:
    h = _Harness()
    a = _FakeTraffic("A", fail=True)

    async def _run():
        with pytest.raises(AllProvidersFailed):
            await h.flow([a])
        a.fail = False
        await h.flow([a])
        a.fail = True
        with pytest.raises(AllProvidersFailed):
            await h.flow([a])

    asyncio.run(_run())
    assert len(h.recorder.of_type(ProvidersExhausted)) == 2


def test_open_breaker_is_skipped_without_invoking_provider() -> None:
    h = _Harness(failure_threshold=1)
    a, b = _FakeTraffic("A", fail=True), _FakeTraffic("B")

    async def _run():
        await h.flow([a, b])
        return await h.flow([a, b])

    second = asyncio.run(_run())
    assert a.calls == 1
    assert second.provider == "B"
    assert second.total_attempts == 1


def test_cache_write_failure_does_not_fail_the_fetch() -> None:
    h = _Harness(store=MemoryStore(quota_bytes=10))
    a = _FakeTraffic("A")

    result = asyncio.run(h.flow([a], cache_key="area", category="traffic"))

    assert result.provider == "A"
    assert h.cache.snapshot()["write_failures"] == 1


def test_empty_chain_raises_all_providers_failed() -> None:
    h = _Harness()

    with pytest.raises(AllProvidersFailed) as exc:
        asyncio.run(h.flow([]))
    assert exc.value.details["provider_count"] == 0


def test_providers_for_orders_chains_and_appends_mock_last() -> None:
    h = _Harness(MAPBOX_TOKEN="mb", TOMTOM_API_KEY="tt")

    eu = h.registry.providers_for("EU").names()
    assert eu["traffic"] == ["Mapbox Traffic", "TomTom Traffic", "Mock Traffic"]
    assert eu["map_tiles"] == ["Mapbox", "Mock"]
    assert eu["weather"] == ["Open-Meteo", "Mock Weather"]
    assert eu["radar"] == ["Remote Radar (EU)", "Static Radar", "Mock Radar"]

    india = h.registry.providers_for("IN").names()
    assert india["traffic"] == ["TomTom Traffic", "Mock Traffic"]


def test_providers_for_includes_here_where_licensed() -> None:
    h = _Harness(HERE_API_KEY="here", OPENWEATHER_API_KEY="ow", MAPTILER_TOKEN="mt")

    me = h.registry.providers_for("ME").names()
    assert me["traffic"] == ["HERE Traffic", "Mock Traffic"]
    assert me["weather"] == ["OpenWeather", "Open-Meteo", "Mock Weather"]
    assert me["map_tiles"] == ["MapTiler", "Mock"]
    assert h.registry.providers_for("US").names()["traffic"] == ["Mock Traffic"]


def test_providers_for_is_memoized_until_cleared() -> None:
    h = _Harness()

    first = h.registry.providers_for("CH")
    assert h.registry.providers_for("CH") is first
    h.registry.clear()
    assert h.registry.providers_for("CH") is not first
