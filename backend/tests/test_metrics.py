from __future__ import annotations

import asyncio

from navfeed.events import EventBus
from navfeed.health import HealthTracker, RetryConfig
from navfeed.metrics_store import MetricsStore


def test_snapshot_aggregates_per_provider_counters() -> None:
    metrics = MetricsStore()
    metrics.record("HERE Traffic", duration_ms=100.0)
    metrics.record("HERE Traffic", duration_ms=300.0, error=True)
    metrics.record("HERE Traffic", duration_ms=5_000.0, timeout=True)
    metrics.record("Open-Meteo", duration_ms=-4.0)
    metrics.record_rejection("HERE Traffic")

    snap = metrics.snapshot()

    assert snap["total_attempts"] == 4
    assert snap["total_errors"] == 2
    assert snap["provider_count"] == 2
    here = snap["providers"]["HERE Traffic"]
    assert here["attempt_count"] == 3
    assert here["error_count"] == 2
    assert here["timeout_count"] == 1
    assert here["rejected_count"] == 1
    assert here["max_duration_ms"] == 5_000.0
    assert here["avg_duration_ms"] == 1_800.0
    assert snap["providers"]["Open-Meteo"]["total_duration_ms"] == 0.0


def test_blank_provider_name_is_bucketed_as_unknown() -> None:
    metrics = MetricsStore()
    metrics.record("   ", duration_ms=1.0)
    assert list(metrics.snapshot()["providers"]) == ["unknown"]


def test_reset_clears_counters() -> None:
    metrics = MetricsStore()
    metrics.record("Mapbox", duration_ms=10.0)
    metrics.reset()
    snap = metrics.snapshot()
    assert snap["total_attempts"] == 0
    assert snap["providers"] == {}


def test_health_tracker_feeds_metrics_for_each_attempt() -> None:
    metrics = MetricsStore()
    tracker = HealthTracker(
        failure_threshold=5,
        cooldown_ms=1_000,
        default_retry=RetryConfig(max_attempts=2, initial_delay_ms=0, attempt_timeout_ms=1_000),
        events=EventBus(),
        metrics=metrics,
    )
    calls = {"n": 0}

    async def _flaky() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionError("reset")
        return "ok"

    outcome = asyncio.run(tracker.run("TomTom Traffic", _flaky))
    assert outcome.result == "ok"
    assert outcome.attempts_used == 2

    stats = metrics.snapshot()["providers"]["TomTom Traffic"]
    assert stats["attempt_count"] == 2
    assert stats["error_count"] == 1
