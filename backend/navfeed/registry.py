from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import httpx

from .cache import ProviderCache
from .errors import (
    AllProvidersFailed,
    AllRetriesExhausted,
    CacheWriteFailed,
    CircuitOpen,
    ProviderUnavailable,
)
from .events import DegradedDataServed, EventBus, FailoverOccurred, ProvidersExhausted
from .health import HealthTracker, RetryConfig
from .logging_utils import log_event, log_error, log_warning
from .models import CacheCategory, Region
from .providers.base import MapTilesProvider, Provider, RadarProvider, TrafficProvider, WeatherProvider
from .providers.map_tiles import MapboxTiles, MapTilerTiles, MockMapTiles
from .providers.radar import MockRadar, RemoteGeoJSONRadar, StaticRadar
from .providers.traffic import HereTraffic, MapboxTraffic, MockTraffic, TomTomTraffic
from .providers.weather import MockWeather, OpenMeteoWeather, OpenWeather
from .settings import Settings, settings

P = TypeVar("P", bound=Provider)
T = TypeVar("T")

_MAPBOX_TRAFFIC_REGIONS: frozenset[str] = frozenset({"EU", "CH", "US"})
_HERE_TRAFFIC_REGIONS: frozenset[str] = frozenset({"EU", "ME", "IN"})


@dataclass(frozen=True)
class ProviderSet:
    map_tiles: tuple[MapTilesProvider, ...]
    traffic: tuple[TrafficProvider, ...]
    radar: tuple[RadarProvider, ...]
    weather: tuple[WeatherProvider, ...]

    def names(self) -> dict[str, list[str]]:
        return {
            "map_tiles": [p.get_name() for p in self.map_tiles],
            "traffic": [p.get_name() for p in self.traffic],
            "radar": [p.get_name() for p in self.radar],
            "weather": [p.get_name() for p in self.weather],
        }


@dataclass(frozen=True)
class FailoverResult(Generic[T]):
    data: T
    provider: str
    used_fallback: bool
    total_attempts: int
    from_cache: bool = False
    is_stale: bool = False
    age_ms: int = 0
    latency_ms: int = 0
    providers_tried: tuple[str, ...] = field(default_factory=tuple)


def _build_chain(region: Region, label: str, candidates: Sequence[Callable[[], P]], fallback: P) -> tuple[P, ...]:
    chain: list[P] = []
    for factory in candidates:
        try:
            chain.append(factory())
        except ProviderUnavailable as exc:
            log_event("provider_unavailable", region=region, capability=label, reason=exc.message)
    chain.append(fallback)
    return tuple(chain)


class ProviderRegistry:
    """Owns the ordered provider chains per region and runs the cache-then-failover protocol."""

    def __init__(
        self,
        *,
        health: HealthTracker,
        cache: ProviderCache,
        events: EventBus,
        config: Settings = settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._health = health
        self._cache = cache
        self._events = events
        self._config = config
        self._client = http_client
        self._owns_client = http_client is None
        self._sets: dict[Region, ProviderSet] = {}
        self._exhausted_operations: set[str] = set()

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.provider_http_timeout_s, connect=3.0),
                headers={"accept": "application/json"},
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def providers_for(self, region: Region) -> ProviderSet:
        cached = self._sets.get(region)
        if cached is not None:
            return cached
        provider_set = self._build_provider_set(region)
        self._sets[region] = provider_set
        log_event("provider_set_built", region=region, **provider_set.names())
        return provider_set

    def clear(self) -> None:
        self._sets.clear()

    def _build_provider_set(self, region: Region) -> ProviderSet:
        cfg = self._config
        client = self.http_client

        traffic: list[Callable[[], TrafficProvider]] = []
        if region in _MAPBOX_TRAFFIC_REGIONS:
            traffic.append(lambda: MapboxTraffic(cfg.mapbox_token, client=client))
        if region in _HERE_TRAFFIC_REGIONS:
            traffic.append(lambda: HereTraffic(cfg.here_api_key, client=client))
        traffic.append(lambda: TomTomTraffic(cfg.tomtom_api_key, client=client))

        return ProviderSet(
            map_tiles=_build_chain(
                region,
                "map_tiles",
                [lambda: MapboxTiles(cfg.mapbox_token), lambda: MapTilerTiles(cfg.maptiler_token)],
                MockMapTiles(),
            ),
            traffic=_build_chain(region, "traffic", traffic, MockTraffic()),
            radar=_build_chain(
                region,
                "radar",
                [
                    lambda: RemoteGeoJSONRadar(region, client=client, timeout_s=cfg.radar_http_timeout_s),
                    StaticRadar,
                ],
                MockRadar(),
            ),
            weather=_build_chain(
                region,
                "weather",
                [
                    lambda: OpenWeather(cfg.openweather_api_key, client=client),
                    lambda: OpenMeteoWeather(client=client),
                ],
                MockWeather(),
            ),
        )

    async def _serve_from_cache(
        self,
        category: CacheCategory,
        cache_key: str,
        operation_name: str,
        *,
        allow_stale: bool,
        value_type: Any,
        total_attempts: int = 0,
        providers_tried: tuple[str, ...] = (),
    ) -> FailoverResult[Any] | None:
        hit = await self._cache.get(category, cache_key, allow_stale=allow_stale, value_type=value_type)
        if hit is None:
            return None
        if not allow_stale:
            log_event("failover_cache_hit", operation=operation_name, source_name=hit.source_name)
            return FailoverResult(
                data=hit.data,
                provider=f"Cache({hit.source_name})",
                used_fallback=False,
                total_attempts=0,
                from_cache=True,
                age_ms=hit.age_ms,
            )
        self._events.publish(
            DegradedDataServed(
                operation=operation_name,
                age_minutes=hit.age_ms // 60_000,
                source_name=hit.source_name,
            )
        )
        tag = f"Cache(Stale, {hit.source_name})" if not hit.is_fresh else f"Cache({hit.source_name})"
        return FailoverResult(
            data=hit.data,
            provider=tag,
            used_fallback=True,
            total_attempts=total_attempts,
            from_cache=True,
            is_stale=not hit.is_fresh,
            age_ms=hit.age_ms,
            providers_tried=providers_tried,
        )

    async def with_failover(
        self,
        providers: Sequence[P],
        operation: Callable[[P], Awaitable[T]],
        operation_name: str,
        cache_key: str | None = None,
        category: CacheCategory | None = None,
        *,
        value_type: Any = None,
        retry_config: RetryConfig | None = None,
    ) -> FailoverResult[T]:
        use_cache = cache_key is not None and category is not None

        if use_cache:
            fresh = await self._serve_from_cache(
                category, cache_key, operation_name, allow_stale=False, value_type=value_type
            )
            if fresh is not None:
                return fresh

        total_attempts = 0
        tried: list[str] = []
        last_error: BaseException | None = None
        primary = providers[0].get_name() if providers else ""

        for idx, provider in enumerate(providers):
            name = provider.get_name()
            tried.append(name)
            log_event(
                "failover_attempt",
                operation=operation_name,
                provider=name,
                position=idx + 1,
                chain_length=len(providers),
            )
            try:
                run = await self._health.run(name, lambda p=provider: operation(p), retry_config)
            except CircuitOpen as exc:
                last_error = exc
                log_warning("failover_provider_skipped", operation=operation_name, provider=name, reason=exc.message)
                continue
            except AllRetriesExhausted as exc:
                last_error = exc
                total_attempts += exc.attempts
                log_warning("failover_provider_failed", operation=operation_name, provider=name, reason=exc.message)
                continue

            total_attempts += run.attempts_used
            if use_cache:
                try:
                    await self._cache.set(category, cache_key, run.result, name)
                except CacheWriteFailed as exc:
                    log_warning("cache_write_failed", operation=operation_name, reason=exc.message)

            self._exhausted_operations.discard(operation_name)
            if idx > 0:
                self._events.publish(
                    FailoverOccurred(
                        operation=operation_name,
                        from_provider=primary,
                        to_provider=name,
                        latency_ms=run.latency_ms,
                        reason=str(last_error) if last_error is not None else "",
                    )
                )
            return FailoverResult(
                data=run.result,
                provider=name,
                used_fallback=idx > 0,
                total_attempts=total_attempts,
                latency_ms=run.latency_ms,
                providers_tried=tuple(tried),
            )

        log_error("failover_chain_failed", operation=operation_name, providers=tried, total_attempts=total_attempts)
        if use_cache:
            stale = await self._serve_from_cache(
                category,
                cache_key,
                operation_name,
                allow_stale=True,
                value_type=value_type,
                total_attempts=total_attempts,
                providers_tried=tuple(tried),
            )
            if stale is not None:
                return stale

        error = AllProvidersFailed(
            operation_name,
            provider_count=len(providers),
            total_attempts=total_attempts,
            last_error=last_error,
        )
        if operation_name not in self._exhausted_operations:
            self._exhausted_operations.add(operation_name)
            self._events.publish(
                ProvidersExhausted(
                    operation=operation_name,
                    total_attempts=total_attempts,
                    reason=str(last_error) if last_error is not None else "no providers configured",
                )
            )
        raise error

