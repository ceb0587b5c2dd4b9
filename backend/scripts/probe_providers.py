from __future__ import annotations

# ruff: noqa: E402
import argparse
import asyncio
import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from navfeed.container import DataLayer, build_data_layer
from navfeed.errors import DataLayerError
from navfeed.models import BoundingBox, MapStyle, SpeedCamera, TrafficFlow, TrafficIncident, WeatherNow
from navfeed.regions import normalize_region
from navfeed.registry import FailoverResult
from navfeed.settings import Settings, settings

CAPABILITIES = ("traffic", "incidents", "weather", "radar", "map_tiles")


def _now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _error_payload(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, DataLayerError):
        return exc.to_payload()
    return {
        "type": type(exc).__name__,
        "reason_code": "unexpected_error",
        "message": str(exc),
        "details": {},
    }


def _parse_bbox(raw: str) -> BoundingBox:
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError("bbox must be min_lat,min_lng,max_lat,max_lng")
    try:
        min_lat, min_lng, max_lat, max_lng = (float(p) for p in parts)
        return BoundingBox(min_lat=min_lat, min_lng=min_lng, max_lat=max_lat, max_lng=max_lng)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _result_summary(result: FailoverResult[Any]) -> dict[str, Any]:
    data = result.data
    return {
        "ok": True,
        "provider": result.provider,
        "used_fallback": result.used_fallback,
        "from_cache": result.from_cache,
        "is_stale": result.is_stale,
        "total_attempts": result.total_attempts,
        "latency_ms": result.latency_ms,
        "providers_tried": list(result.providers_tried),
        "records": len(data) if isinstance(data, list) else 1,
    }


async def probe(layer: DataLayer, region: str, bbox: BoundingBox, capabilities: Sequence[str]) -> dict[str, Any]:
    resolved = normalize_region(region)
    providers = layer.registry.providers_for(resolved)
    lat, lng = bbox.center()
    area = bbox.cache_key()
    registry = layer.registry

    jobs: dict[str, Any] = {
        "traffic": lambda: registry.with_failover(
            providers.traffic, lambda p: p.get_flow(bbox), "traffic.flow", f"flow_{area}", "traffic",
            value_type=list[TrafficFlow],
        ),
        "incidents": lambda: registry.with_failover(
            providers.traffic, lambda p: p.get_incidents(bbox), "traffic.incidents", f"incidents_{area}", "traffic",
            value_type=list[TrafficIncident],
        ),
        "weather": lambda: registry.with_failover(
            providers.weather, lambda p: p.get_now(lat, lng), "weather.now", f"{lat:.2f},{lng:.2f}", "weather",
            value_type=WeatherNow,
        ),
        "radar": lambda: registry.with_failover(
            providers.radar, lambda p: p.get_cameras(bbox), "radar.cameras", area, "radar",
            value_type=list[SpeedCamera],
        ),
        "map_tiles": lambda: registry.with_failover(
            providers.map_tiles, lambda p: p.get_style(), "map_tiles.style", resolved, "map_tiles",
            value_type=MapStyle,
        ),
    }

    results: dict[str, Any] = {}
    for name in capabilities:
        try:
            results[name] = _result_summary(await jobs[name]())
        except DataLayerError as exc:
            results[name] = {"ok": False, "error": _error_payload(exc)}

    return {
        "generated_at": _now_iso(),
        "region": resolved,
        "bbox": bbox.model_dump(),
        "providers": providers.names(),
        "results": results,
        "breakers": layer.health.snapshot(),
        "metrics": layer.metrics.snapshot(),
    }


async def _run(config: Settings, region: str, bbox: BoundingBox, capabilities: Sequence[str]) -> dict[str, Any]:
    layer = build_data_layer(config)
    try:
        return await probe(layer, region, bbox, capabilities)
    finally:
        await layer.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Probe the provider failover chain for a region.")
    parser.add_argument("--region", default=settings.default_region, help="Region code or ISO country code.")
    parser.add_argument(
        "--bbox",
        type=_parse_bbox,
        default=_parse_bbox("47.36,8.52,47.39,8.56"),
        help="min_lat,min_lng,max_lat,max_lng",
    )
    parser.add_argument(
        "--capability",
        action="append",
        choices=CAPABILITIES,
        help="Capability to probe; repeatable. Defaults to all.",
    )
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write the JSON report.")
    args = parser.parse_args(argv)

    report = asyncio.run(_run(settings, args.region, args.bbox, args.capability or list(CAPABILITIES)))
    text = json.dumps(report, indent=2, default=str)
    print(text)
    if args.output is not None:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(text, encoding="utf-8")

    failed = [name for name, item in report["results"].items() if not item.get("ok")]
    return 2 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
