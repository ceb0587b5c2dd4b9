from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from .cache import epoch_ms
from .errors import AllProvidersFailed, FusionCycleFailed
from .events import EventBus, OfflineEntered, OfflineRecovered, TrafficSegmentUpdated
from .fusion import fuse_segments, haversine_m
from .logging_utils import log_event, log_error, log_warning
from .models import (
    BoundingBox,
    NetworkQuality,
    Point,
    Region,
    TrafficFlow,
    TrafficIncident,
    TrafficSegment,
    WeatherNow,
)
from .network import NetworkMonitor
from .registry import ProviderRegistry
from .settings import Settings, settings
from .snapshot_store import TrafficSnapshotStore
from .traffic_patterns import TimeOfDayPatternModel, TrafficPatternModel

CycleStatus = Literal["updated", "offline", "failed", "discarded", "skipped", "idle"]


def _local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass(frozen=True)
class CycleReport:
    status: CycleStatus
    segment_count: int = 0
    sources: dict[str, str] = field(default_factory=dict)
    error: str | None = None


class TrafficFusionEngine:
    """Periodic flow/incident/weather fusion into risk-tagged traffic segments.

    One cycle runs at a time. The live segment map is only ever replaced
    wholesale, so readers always see a complete mapping.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        events: EventBus,
        network: NetworkMonitor,
        config: Settings = settings,
        region: Region = "GLOBAL",
        pattern_model: TrafficPatternModel | None = None,
        snapshot_store: TrafficSnapshotStore | None = None,
        clock: Callable[[], datetime] = _local_now,
        now_ms: Callable[[], int] = epoch_ms,
    ) -> None:
        self._registry = registry
        self._events = events
        self._network = network
        self._config = config
        self._region: Region = region
        self._pattern_model = pattern_model or TimeOfDayPatternModel()
        self._snapshot_store = snapshot_store
        self._clock = clock
        self._now_ms = now_ms

        self._bbox: BoundingBox | None = None
        self._segments: dict[str, TrafficSegment] = {}
        self._snapshot: list[TrafficSegment] = []
        self._offline = False
        self._in_flight = False
        self._generation = 0
        self._poll_task: asyncio.Task[None] | None = None
        self._rearm: asyncio.Event | None = None
        self._unsubscribe_network: Callable[[], None] | None = None
        self._cycles_completed = 0
        self._cycles_failed = 0
        self._last_cycle_at_ms: int | None = None
        self._last_error: str | None = None

        if snapshot_store is not None:
            restored = snapshot_store.load()
            if restored is not None:
                self._snapshot = restored[0]
                log_event("traffic_snapshot_restored", segments=len(self._snapshot), updated_at=restored[1])

    # -- lifecycle -----------------------------------------------------------------

    @property
    def is_monitoring(self) -> bool:
        return self._bbox is not None

    def poll_interval_s(self, quality: NetworkQuality | None = None) -> float:
        current = quality or self._network.quality
        if current == "good":
            return self._config.fusion_interval_good_s
        return self._config.fusion_interval_weak_s

    async def start_monitoring(self, bbox: BoundingBox, *, region: Region | None = None) -> CycleReport:
        if self.is_monitoring:
            self.stop_monitoring()
        self._generation += 1
        self._bbox = bbox
        if region is not None:
            self._region = region
        self._rearm = asyncio.Event()
        self._unsubscribe_network = self._network.subscribe(self._on_quality_change)
        log_event(
            "traffic_monitoring_started",
            region=self._region,
            bbox=bbox.cache_key(),
            interval_s=self.poll_interval_s(),
        )

        report = await self.run_cycle()
        if self._bbox is bbox:
            self._poll_task = asyncio.create_task(self._poll_loop(self._generation))
        return report

    def stop_monitoring(self) -> None:
        if not self.is_monitoring:
            return
        # An in-flight cycle sees the bumped generation and drops its result.
        self._generation += 1
        self._bbox = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        if self._unsubscribe_network is not None:
            self._unsubscribe_network()
            self._unsubscribe_network = None
        self._rearm = None
        log_event("traffic_monitoring_stopped", segments=len(self._segments))

    def _on_quality_change(self, previous: NetworkQuality, current: NetworkQuality) -> None:
        log_event(
            "traffic_poll_rearmed",
            previous=previous,
            current=current,
            interval_s=self.poll_interval_s(current),
        )
        if self._rearm is not None:
            self._rearm.set()

    async def _poll_loop(self, generation: int) -> None:
        while generation == self._generation and self._rearm is not None:
            rearm = self._rearm
            rearm.clear()
            try:
                await asyncio.wait_for(rearm.wait(), timeout=self.poll_interval_s())
            except TimeoutError:
                try:
                    await self.run_cycle()
                except Exception as exc:
                    log_error("traffic_poll_error", error=f"{type(exc).__name__}: {exc}")
            # Re-armed: loop to restart the timer at the new interval.

    # -- fusion cycle --------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        bbox = self._bbox
        if bbox is None:
            return CycleReport(status="idle")
        if self._in_flight:
            log_event("traffic_cycle_skipped", reason="in_flight")
            return CycleReport(status="skipped")

        self._in_flight = True
        generation = self._generation
        try:
            return await self._cycle(bbox, generation)
        finally:
            self._in_flight = False

    async def _cycle(self, bbox: BoundingBox, generation: int) -> CycleReport:
        if self._network.is_offline:
            return self._serve_offline()
        if self._offline:
            self._offline = False
            self._events.publish(OfflineRecovered(timestamp=self._now_ms(), quality=self._network.quality))

        try:
            segments, sources = await self._fetch_and_fuse(bbox)
        except FusionCycleFailed as exc:
            self._cycles_failed += 1
            self._last_error = exc.message
            log_error("traffic_cycle_failed", reason_code=exc.reason_code, error=exc.message)
            return CycleReport(status="failed", segment_count=len(self._segments), error=exc.message)

        if generation != self._generation:
            log_event("traffic_cycle_discarded", segments=len(segments))
            return CycleReport(status="discarded", sources=sources)

        merged = dict(self._segments)
        merged.update((segment.segment_id, segment) for segment in segments)
        self._segments = merged
        self._snapshot = list(merged.values())
        self._cycles_completed += 1
        self._last_cycle_at_ms = self._now_ms()
        self._last_error = None
        await self._persist_snapshot()

        for segment in segments:
            self._events.publish(
                TrafficSegmentUpdated(
                    segment_id=segment.segment_id,
                    congestion=segment.congestion,
                    predicted_congestion=segment.predicted_congestion,
                    incident_ids=tuple(incident.id for incident in segment.incidents),
                    risk_tags=tuple(segment.risk_tags),
                    timestamp=segment.last_updated,
                )
            )
        log_event("traffic_cycle_completed", segments=len(segments), total_segments=len(merged), **sources)
        return CycleReport(status="updated", segment_count=len(segments), sources=sources)

    def _serve_offline(self) -> CycleReport:
        if self._snapshot:
            self._segments = {segment.segment_id: segment for segment in self._snapshot}
        if not self._offline:
            self._offline = True
            self._events.publish(OfflineEntered(timestamp=self._now_ms(), restored_segments=len(self._segments)))
        return CycleReport(status="offline", segment_count=len(self._segments))

    async def _persist_snapshot(self) -> None:
        if self._snapshot_store is None or not self._config.fusion_persist_snapshot:
            return
        try:
            await asyncio.to_thread(self._snapshot_store.save, list(self._snapshot))
        except OSError as exc:
            log_warning("traffic_snapshot_save_failed", error=f"{type(exc).__name__}: {exc}")

    async def _fetch_and_fuse(self, bbox: BoundingBox) -> tuple[list[TrafficSegment], dict[str, str]]:
        providers = self._registry.providers_for(self._region)
        area = bbox.cache_key()
        lat, lng = bbox.center()

        flow_job = self._registry.with_failover(
            providers.traffic,
            lambda p: p.get_flow(bbox),
            "traffic.flow",
            f"flow_{area}",
            "traffic",
            value_type=list[TrafficFlow],
        )
        incidents_job = self._registry.with_failover(
            providers.traffic,
            lambda p: p.get_incidents(bbox),
            "traffic.incidents",
            f"incidents_{area}",
            "traffic",
            value_type=list[TrafficIncident],
        )
        weather_job = self._registry.with_failover(
            providers.weather,
            lambda p: p.get_now(lat, lng),
            "weather.now",
            f"{lat:.2f},{lng:.2f}",
            "weather",
            value_type=WeatherNow,
        )
        flow_res, incidents_res, weather_res = await asyncio.gather(
            flow_job, incidents_job, weather_job, return_exceptions=True
        )

        for outcome in (flow_res, incidents_res):
            if isinstance(outcome, BaseException):
                raise FusionCycleFailed(outcome) from outcome

        weather: WeatherNow | None = None
        sources = {"flow_source": flow_res.provider, "incidents_source": incidents_res.provider}
        if isinstance(weather_res, AllProvidersFailed):
            log_warning("traffic_weather_unavailable", error=weather_res.message)
        elif isinstance(weather_res, BaseException):
            raise FusionCycleFailed(weather_res) from weather_res
        else:
            weather = weather_res.data
            sources["weather_source"] = weather_res.provider

        try:
            segments = fuse_segments(
                flow_res.data,
                incidents_res.data,
                weather,
                moment=self._clock(),
                updated_at_ms=self._now_ms(),
                pattern_model=self._pattern_model,
                prediction_window_s=self._config.fusion_prediction_window_s,
                incident_radius_m=self._config.fusion_incident_radius_m,
            )
        except (ValueError, TypeError) as exc:
            raise FusionCycleFailed(exc) from exc
        return segments, sources

    # -- reads ---------------------------------------------------------------------

    def segment_for(self, segment_id: str) -> TrafficSegment | None:
        return self._segments.get(segment_id)

    def all_segments(self) -> list[TrafficSegment]:
        return list(self._segments.values())

    def incidents_near(self, point: Point, radius_m: float) -> list[TrafficIncident]:
        """Distinct incidents across live segments within ``radius_m``, nearest first."""
        found: dict[str, tuple[float, TrafficIncident]] = {}
        for segment in self._segments.values():
            for incident in segment.incidents:
                if incident.id in found:
                    continue
                distance = haversine_m(point, incident.location)
                if distance <= radius_m:
                    found[incident.id] = (distance, incident)
        return [incident for _, incident in sorted(found.values(), key=lambda item: item[0])]

    def status(self) -> dict[str, Any]:
        return {
            "monitoring": self.is_monitoring,
            "region": self._region,
            "bbox": self._bbox.model_dump() if self._bbox is not None else None,
            "network_quality": self._network.quality,
            "offline": self._offline,
            "in_flight": self._in_flight,
            "poll_interval_s": self.poll_interval_s(),
            "segments": len(self._segments),
            "snapshot_segments": len(self._snapshot),
            "cycles_completed": self._cycles_completed,
            "cycles_failed": self._cycles_failed,
            "last_cycle_at_ms": self._last_cycle_at_ms,
            "last_error": self._last_error,
        }
