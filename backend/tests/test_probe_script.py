from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

import httpx
import pytest

from navfeed.container import build_data_layer
from navfeed.models import BoundingBox
from navfeed.settings import Settings
from scripts.probe_providers import _parse_bbox, probe


def test_parse_bbox_rejects_bad_input() -> None:
    box = _parse_bbox("47.30, 8.45, 47.45, 8.65")
    assert box.center() == pytest.approx((47.375, 8.55))

    with pytest.raises(argparse.ArgumentTypeError):
        _parse_bbox("1,2,3")
    with pytest.raises(argparse.ArgumentTypeError):
        _parse_bbox("47.45,8.45,47.30,8.65")


def test_probe_reports_fallback_provider_per_capability(tmp_path: Path) -> None:
    config = Settings(
        **{
            "OUT_DIR": str(tmp_path),
            "CACHE_BACKEND": "memory",
            "PROVIDER_BACKOFF_INITIAL_MS": 0,
            "PROVIDER_BACKOFF_MAX_MS": 0,
            "MAPBOX_TOKEN": "",
            "MAPTILER_TOKEN": "",
            "HERE_API_KEY": "",
            "TOMTOM_API_KEY": "",
            "OPENWEATHER_API_KEY": "",
        }
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    layer = build_data_layer(config, http_client=http_client)
    bbox = BoundingBox(min_lat=47.30, min_lng=8.45, max_lat=47.45, max_lng=8.65)

    async def _run():
        try:
            return await probe(layer, "de", bbox, ["traffic", "weather", "map_tiles"])
        finally:
            await layer.aclose()

    report = asyncio.run(_run())

    assert report["region"] == "EU"
    assert set(report["results"]) == {"traffic", "weather", "map_tiles"}
    assert report["results"]["traffic"]["provider"] == "Mock Traffic"
    assert report["results"]["traffic"]["used_fallback"] is False
    weather = report["results"]["weather"]
    assert weather["provider"] == "Mock Weather"
    assert weather["used_fallback"] is True
    assert weather["providers_tried"] == ["Open-Meteo", "Mock Weather"]
    assert weather["total_attempts"] == 4
    assert report["breakers"]["Open-Meteo"]["consecutive_failures"] == 1
    assert report["breakers"]["Open-Meteo"]["is_open"] is False
