from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, TypeVar

from .logging_utils import log_event, log_error
from .models import NetworkQuality, RiskTag


@dataclass(frozen=True)
class FailoverOccurred:
    operation: str
    from_provider: str
    to_provider: str
    latency_ms: int
    reason: str


@dataclass(frozen=True)
class CircuitBreakerOpened:
    provider: str
    failure_count: int
    cooldown_ms: int


@dataclass(frozen=True)
class DegradedDataServed:
    operation: str
    age_minutes: int
    source_name: str


@dataclass(frozen=True)
class ProvidersExhausted:
    operation: str
    total_attempts: int
    reason: str


@dataclass(frozen=True)
class TrafficSegmentUpdated:
    segment_id: str
    congestion: int
    predicted_congestion: int
    incident_ids: tuple[str, ...]
    risk_tags: tuple[RiskTag, ...]
    timestamp: int


@dataclass(frozen=True)
class OfflineEntered:
    timestamp: int
    restored_segments: int


@dataclass(frozen=True)
class OfflineRecovered:
    timestamp: int
    quality: NetworkQuality = "good"


Event = (
    FailoverOccurred
    | CircuitBreakerOpened
    | DegradedDataServed
    | ProvidersExhausted
    | TrafficSegmentUpdated
    | OfflineEntered
    | OfflineRecovered
)

EventHandler = Callable[[Any], None]
E = TypeVar("E")

_EVENT_NAMES: dict[type, str] = {
    FailoverOccurred: "provider_failover",
    CircuitBreakerOpened: "provider_circuit_breaker_opened",
    DegradedDataServed: "cache_degraded_data_served",
    ProvidersExhausted: "provider_chain_exhausted",
    TrafficSegmentUpdated: "traffic_segment_updated",
    OfflineEntered: "offline_mode_entered",
    OfflineRecovered: "offline_mode_recovered",
}

_EVENT_LEVELS: dict[type, int] = {
    CircuitBreakerOpened: logging.WARNING,
    FailoverOccurred: logging.WARNING,
    ProvidersExhausted: logging.ERROR,
    TrafficSegmentUpdated: logging.DEBUG,
}


def event_name(event: object) -> str:
    return _EVENT_NAMES.get(type(event), type(event).__name__)


@dataclass
class _Subscription:
    handler: EventHandler
    kind: type | None = None
    active: bool = field(default=True)


class EventBus:
    """Dispatches typed events to handlers registered per event class or for every event."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._by_kind: dict[type | None, list[_Subscription]] = defaultdict(list)
        self._published = 0

    def subscribe(self, handler: Callable[[E], None], kind: type[E] | None = None) -> Callable[[], None]:
        sub = _Subscription(handler=handler, kind=kind)
        with self._lock:
            self._by_kind[kind].append(sub)

        def _unsubscribe() -> None:
            with self._lock:
                sub.active = False
                subs = self._by_kind.get(kind, [])
                if sub in subs:
                    subs.remove(sub)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        name = event_name(event)
        log_event(name, level=_EVENT_LEVELS.get(type(event), logging.INFO), **asdict(event))
        with self._lock:
            self._published += 1
            targets = [*self._by_kind.get(type(event), ()), *self._by_kind.get(None, ())]
        for sub in targets:
            if not sub.active:
                continue
            try:
                sub.handler(event)
            except Exception as exc:
                # One broken observer must not starve the rest.
                log_error("event_handler_failed", event_kind=name, error=f"{type(exc).__name__}: {exc}")

    @property
    def published_count(self) -> int:
        return self._published


class EventRecorder:
    """Collects every published event; handy for diagnostics endpoints and tests."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[Any] = []
        self._unsubscribe = bus.subscribe(self.events.append)

    def of_type(self, kind: type[E]) -> list[E]:
        return [event for event in self.events if isinstance(event, kind)]

    def close(self) -> None:
        self._unsubscribe()
