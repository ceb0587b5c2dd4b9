from __future__ import annotations

import logging
from pathlib import Path

import pytest

from navfeed.errors import AllProvidersFailed, CircuitOpen, DataLayerError, normalize_reason_code
from navfeed.logging_utils import _parse_level, get_logger, log_event
from navfeed.models import TrafficSegment
from navfeed.regions import normalize_region, region_for_country
from navfeed.settings import Settings, settings
from navfeed.snapshot_store import TrafficSnapshotStore


def test_logging_utils_emit_structured_event(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "out_dir", str(tmp_path))
    assert _parse_level("debug") == logging.DEBUG
    assert _parse_level("nonsense") == logging.INFO

    logger = get_logger()
    handlers = len(logger.handlers)
    assert get_logger() is logger
    assert len(logger.handlers) == handlers

    log_event("unit_test_event", provider="Mock Traffic", attempts=1)


def test_settings_normalise_inconsistent_values() -> None:
    cfg = Settings(
        **{
            "PROVIDER_BACKOFF_INITIAL_MS": 800,
            "PROVIDER_BACKOFF_MAX_MS": 100,
            "FUSION_INTERVAL_GOOD_S": 90.0,
            "FUSION_INTERVAL_WEAK_S": 30.0,
            "CACHE_BACKEND": "Redis",
            "DEFAULT_REGION": " eu ",
        }
    )
    assert cfg.provider_backoff_max_ms == 800
    assert cfg.fusion_interval_weak_s == 90.0
    assert cfg.cache_backend == "file"
    assert cfg.default_region == "EU"


def test_cache_ttls_and_dir(tmp_path: Path) -> None:
    cfg = Settings(**{"OUT_DIR": str(tmp_path), "CACHE_TTL_TRAFFIC_S": 120})
    assert cfg.cache_ttls_ms()["traffic"] == 120_000
    assert cfg.cache_ttls_ms()["map_tiles"] == 7 * 24 * 3600 * 1000
    assert cfg.resolved_cache_dir() == tmp_path / "cache"

    custom = Settings(**{"OUT_DIR": str(tmp_path), "CACHE_DIR": str(tmp_path / "kv")})
    assert custom.resolved_cache_dir() == tmp_path / "kv"


def test_region_lookup() -> None:
    assert region_for_country("de") == "EU"
    assert region_for_country("LI") == "CH"
    assert region_for_country("AE") == "ME"
    assert region_for_country("BR") == "GLOBAL"
    assert region_for_country(None) == "GLOBAL"
    assert normalize_region("us") == "US"
    assert normalize_region("FR") == "EU"
    assert normalize_region("atlantis") == "GLOBAL"
    assert normalize_region("", default="CH") == "CH"


def test_reason_codes_and_payloads() -> None:
    assert normalize_reason_code("circuit_open") == "circuit_open"
    assert normalize_reason_code("made_up") == "data_layer_error"

    err = AllProvidersFailed(
        "traffic.flow",
        provider_count=2,
        total_attempts=6,
        last_error=ConnectionError("refused"),
    )
    payload = err.to_payload()
    assert payload["type"] == "AllProvidersFailed"
    assert payload["reason_code"] == "all_providers_failed"
    assert payload["details"]["total_attempts"] == 6
    assert "All 2 providers failed for traffic.flow" in str(err)
    assert "ConnectionError: refused" in str(err)

    assert "retry in 12s" in str(CircuitOpen("HERE Traffic", 12_400))

    stray = DataLayerError(reason_code=" upstream_exploded ", message="boom")
    assert stray.to_payload()["reason_code"] == "data_layer_error"
    assert CircuitOpen("HERE Traffic", 1_000).to_payload()["reason_code"] == "circuit_open"


def _segment(segment_id: str) -> TrafficSegment:
    return TrafficSegment(
        segment_id=segment_id,
        coordinates=[(47.37, 8.54)],
        congestion=40,
        predicted_congestion=45,
        speed=36.0,
        free_flow_speed=60.0,
        last_updated=1_700_000_000_000,
    )


def test_snapshot_store_round_trip_and_clear(tmp_path: Path) -> None:
    store = TrafficSnapshotStore.under(tmp_path)
    assert store.path == tmp_path / "offline" / "traffic_snapshot.json"
    assert store.load() is None

    store.save([_segment("a"), _segment("b")])
    loaded = store.load()
    assert loaded is not None
    segments, updated_at = loaded
    assert [s.segment_id for s in segments] == ["a", "b"]
    assert updated_at

    assert store.clear() is True
    assert store.clear() is False


def test_snapshot_store_ignores_corrupt_file(tmp_path: Path) -> None:
    store = TrafficSnapshotStore(tmp_path / "snap.json")
    store.path.write_text("{not json", encoding="utf-8")
    assert store.load() is None

    store.path.write_text('{"updated_at": "x", "segments": [{"segment_id": 1}]}', encoding="utf-8")
    assert store.load() is None
