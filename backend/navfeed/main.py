from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import asdict
from typing import Annotated, Any

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .cache import purge_periodically
from .container import DataLayer, build_data_layer
from .errors import AllProvidersFailed, CircuitOpen, DataLayerError
from .logging_utils import log_event
from .models import (
    BoundingBox,
    IncidentListResponse,
    MapStyle,
    MonitoringRequest,
    NetworkQualityUpdate,
    ProviderListResponse,
    SegmentListResponse,
    SpeedCamera,
    TrafficSegment,
    WeatherNow,
)
from .network import probe_periodically
from .regions import normalize_region
from .settings import Settings, settings

_UNAVAILABLE_ERRORS = (AllProvidersFailed, CircuitOpen)


def create_app(config: Settings = settings, *, http_client: httpx.AsyncClient | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        layer = build_data_layer(config, http_client=http_client)
        app.state.data_layer = layer
        tasks = [
            asyncio.create_task(
                purge_periodically(
                    layer.cache,
                    interval_s=config.cache_purge_interval_s,
                    max_age_ms=config.cache_purge_max_age_s * 1000,
                )
            )
        ]
        if config.network_probe_url.strip():
            tasks.append(
                asyncio.create_task(
                    probe_periodically(
                        layer.network,
                        layer.registry.http_client,
                        url=config.network_probe_url,
                        interval_s=config.network_probe_interval_s,
                    )
                )
            )
        log_event("data_layer_started", region=config.default_region, cache_backend=config.cache_backend)
        yield
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        await layer.aclose()
        log_event("data_layer_stopped")

    app = FastAPI(title="navfeed live data layer", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(DataLayerError, _data_layer_error_handler)
    _register_routes(app)
    return app


async def _data_layer_error_handler(request: Request, exc: DataLayerError) -> JSONResponse:
    status_code = 503 if isinstance(exc, _UNAVAILABLE_ERRORS) else 500
    return JSONResponse(status_code=status_code, content=exc.to_payload())


def data_layer(request: Request) -> DataLayer:
    layer: DataLayer | None = getattr(request.app.state, "data_layer", None)
    if layer is None:
        raise HTTPException(status_code=503, detail="data layer not initialised")
    return layer


LayerDep = Annotated[DataLayer, Depends(data_layer)]


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health(layer: LayerDep) -> dict[str, Any]:
        return {
            "status": "ok",
            "network_quality": layer.network.quality,
            "monitoring": layer.engine.is_monitoring,
        }

    @app.get("/traffic/segments", response_model=SegmentListResponse)
    async def list_segments(layer: LayerDep) -> SegmentListResponse:
        segments = layer.engine.all_segments()
        return SegmentListResponse(count=len(segments), segments=segments)

    @app.get("/traffic/segments/{segment_id}", response_model=TrafficSegment)
    async def get_segment(segment_id: str, layer: LayerDep) -> TrafficSegment:
        segment = layer.engine.segment_for(segment_id)
        if segment is None:
            raise HTTPException(status_code=404, detail="segment not found")
        return segment

    @app.get("/traffic/incidents", response_model=IncidentListResponse)
    async def incidents_near(
        layer: LayerDep,
        lat: Annotated[float, Query(ge=-90, le=90)],
        lng: Annotated[float, Query(ge=-180, le=180)],
        radius_m: Annotated[float, Query(gt=0, le=200_000)] = 2_000.0,
    ) -> IncidentListResponse:
        incidents = layer.engine.incidents_near((lat, lng), radius_m)
        return IncidentListResponse(count=len(incidents), incidents=incidents)

    @app.post("/traffic/monitoring")
    async def start_monitoring(req: MonitoringRequest, layer: LayerDep) -> dict[str, Any]:
        report = await layer.engine.start_monitoring(req.bbox, region=req.region)
        return {"cycle": asdict(report), "status": layer.engine.status()}

    @app.delete("/traffic/monitoring")
    async def stop_monitoring(layer: LayerDep) -> dict[str, Any]:
        layer.engine.stop_monitoring()
        return {"status": layer.engine.status()}

    @app.get("/traffic/status")
    async def traffic_status(layer: LayerDep) -> dict[str, Any]:
        return layer.engine.status()

    @app.post("/traffic/refresh")
    async def refresh(layer: LayerDep) -> dict[str, Any]:
        if not layer.engine.is_monitoring:
            raise HTTPException(status_code=409, detail="traffic monitoring is not active")
        report = await layer.engine.run_cycle()
        return {"cycle": asdict(report), "status": layer.engine.status()}

    @app.put("/network")
    async def set_network(update: NetworkQualityUpdate, layer: LayerDep) -> dict[str, Any]:
        changed = layer.network.set_quality(update.quality)
        return {"quality": layer.network.quality, "changed": changed}

    @app.get("/weather/now", response_model=WeatherNow)
    async def weather_now(
        layer: LayerDep,
        lat: Annotated[float, Query(ge=-90, le=90)],
        lng: Annotated[float, Query(ge=-180, le=180)],
        region: str | None = None,
    ) -> WeatherNow:
        providers = layer.registry.providers_for(normalize_region(region or layer.config.default_region))
        result = await layer.registry.with_failover(
            providers.weather,
            lambda p: p.get_now(lat, lng),
            "weather.now",
            f"{lat:.2f},{lng:.2f}",
            "weather",
            value_type=WeatherNow,
        )
        return result.data

    @app.get("/radar/cameras", response_model=list[SpeedCamera])
    async def radar_cameras(
        layer: LayerDep,
        min_lat: Annotated[float, Query(ge=-90, le=90)],
        min_lng: Annotated[float, Query(ge=-180, le=180)],
        max_lat: Annotated[float, Query(ge=-90, le=90)],
        max_lng: Annotated[float, Query(ge=-180, le=180)],
        region: str | None = None,
    ) -> list[SpeedCamera]:
        try:
            bbox = BoundingBox(min_lat=min_lat, min_lng=min_lng, max_lat=max_lat, max_lng=max_lng)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        providers = layer.registry.providers_for(normalize_region(region or layer.config.default_region))
        result = await layer.registry.with_failover(
            providers.radar,
            lambda p: p.get_cameras(bbox),
            "radar.cameras",
            bbox.cache_key(),
            "radar",
            value_type=list[SpeedCamera],
        )
        return result.data

    @app.get("/map/style", response_model=MapStyle)
    async def map_style(layer: LayerDep, region: str | None = None) -> MapStyle:
        resolved = normalize_region(region or layer.config.default_region)
        providers = layer.registry.providers_for(resolved)
        result = await layer.registry.with_failover(
            providers.map_tiles,
            lambda p: p.get_style(),
            "map_tiles.style",
            resolved,
            "map_tiles",
            value_type=MapStyle,
        )
        return result.data

    @app.get("/providers/health")
    async def providers_health(layer: LayerDep) -> dict[str, Any]:
        return {"breakers": layer.health.snapshot(), "cooldown_ms": layer.health.cooldown_ms}

    @app.get("/providers/{region}", response_model=ProviderListResponse)
    async def list_providers(region: str, layer: LayerDep) -> ProviderListResponse:
        resolved = normalize_region(region)
        return ProviderListResponse(region=resolved, **layer.registry.providers_for(resolved).names())

    @app.get("/cache/stats")
    async def cache_stats(layer: LayerDep) -> dict[str, Any]:
        return layer.cache.snapshot()

    @app.delete("/cache")
    async def clear_cache(layer: LayerDep) -> dict[str, int]:
        return {"cleared": await layer.cache.clear_all()}

    @app.get("/metrics")
    async def metrics(layer: LayerDep) -> dict[str, Any]:
        return {
            **layer.metrics.snapshot(),
            "events_published": layer.events.published_count,
            "cache": layer.cache.snapshot(),
        }


app = create_app()
