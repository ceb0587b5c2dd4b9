from __future__ import annotations

from dataclasses import dataclass

import httpx

from .cache import ProviderCache, build_store
from .events import EventBus
from .engine import TrafficFusionEngine
from .health import HealthTracker, RetryConfig
from .metrics_store import MetricsStore
from .network import NetworkMonitor
from .regions import normalize_region
from .registry import ProviderRegistry
from .settings import Settings, settings
from .snapshot_store import TrafficSnapshotStore


@dataclass
class DataLayer:
    config: Settings
    events: EventBus
    metrics: MetricsStore
    cache: ProviderCache
    health: HealthTracker
    registry: ProviderRegistry
    network: NetworkMonitor
    engine: TrafficFusionEngine

    async def aclose(self) -> None:
        self.engine.stop_monitoring()
        await self.registry.aclose()


def build_data_layer(
    config: Settings = settings,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> DataLayer:
    """Wire every component once; callers share the returned instances."""
    events = EventBus()
    metrics = MetricsStore()
    cache = ProviderCache(
        build_store(config),
        ttls_ms=config.cache_ttls_ms(),
        prefix=config.cache_key_prefix,
    )
    health = HealthTracker(
        failure_threshold=config.breaker_failure_threshold,
        cooldown_ms=config.breaker_cooldown_ms,
        default_retry=RetryConfig.from_settings(config),
        events=events,
        metrics=metrics,
    )
    registry = ProviderRegistry(
        health=health,
        cache=cache,
        events=events,
        config=config,
        http_client=http_client,
    )
    network = NetworkMonitor(
        probe_timeout_ms=config.network_probe_timeout_ms,
        weak_threshold_ms=config.network_weak_threshold_ms,
    )
    engine = TrafficFusionEngine(
        registry=registry,
        events=events,
        network=network,
        config=config,
        region=normalize_region(config.default_region),
        snapshot_store=TrafficSnapshotStore.under(config.out_dir) if config.fusion_persist_snapshot else None,
    )
    return DataLayer(
        config=config,
        events=events,
        metrics=metrics,
        cache=cache,
        health=health,
        registry=registry,
        network=network,
        engine=engine,
    )
