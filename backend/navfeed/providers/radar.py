from __future__ import annotations

from typing import Any

import httpx

from ..models import BoundingBox, CameraType, Region, SpeedCamera
from .base import as_float, get_json

REGIONAL_RADAR_URLS: dict[str, str] = {
    "EU": "https://data.europa.eu/api/hub/store/data/speed-cameras-eu.geojson",
    "CH": "https://opendata.swiss/api/3/action/datastore_search?resource_id=speed-cameras-ch",
    "US": "https://opendata.arcgis.com/api/v3/datasets/speed-cameras-us/downloads/data?format=geojson",
    "IN": "https://data.gov.in/api/datastore/resource_id/speed-cameras-in?format=json",
    "ME": "https://data.gov.ae/api/speed-cameras-me.geojson",
    "GLOBAL": "https://raw.githubusercontent.com/datasets/speed-cameras/main/data/cameras.geojson",
}

_CAMERA_TYPES: frozenset[str] = frozenset({"fixed", "mobile", "red_light", "average_speed"})


def _within(cameras: list[SpeedCamera], bbox: BoundingBox) -> list[SpeedCamera]:
    return [camera for camera in cameras if bbox.contains(camera.lat, camera.lng)]


class RemoteGeoJSONRadar:
    def __init__(self, region: Region, *, client: httpx.AsyncClient, timeout_s: float | None = None) -> None:
        self._region = region
        self._url = REGIONAL_RADAR_URLS.get(region, REGIONAL_RADAR_URLS["GLOBAL"])
        self._client = client
        self._timeout_s = timeout_s

    def get_name(self) -> str:
        return f"Remote Radar ({self._region})"

    def _transform(self, data: Any) -> list[SpeedCamera]:
        features = data.get("features") if isinstance(data, dict) else None
        if not isinstance(features, list):
            return []
        cameras: list[SpeedCamera] = []
        for idx, feature in enumerate(features):
            geometry = feature.get("geometry") or {}
            if geometry.get("type") != "Point":
                continue
            coords = geometry.get("coordinates") or []
            if len(coords) < 2:
                continue
            props = feature.get("properties") or {}
            kind = str(props.get("type") or "fixed")
            camera_type: CameraType = kind if kind in _CAMERA_TYPES else "fixed"  # type: ignore[assignment]
            cameras.append(
                SpeedCamera(
                    id=f"remote-{self._region}-{idx}",
                    lat=float(coords[1]),
                    lng=float(coords[0]),
                    speed_limit=as_float(props.get("speed_limit"), 50.0),
                    type=camera_type,
                    direction=props.get("direction"),
                )
            )
        return cameras

    async def get_cameras(self, bbox: BoundingBox) -> list[SpeedCamera]:
        data = await get_json(self._client, self.get_name(), self._url, timeout_s=self._timeout_s)
        return _within(self._transform(data), bbox)


class StaticRadar:
    """Bundled camera list for the major cities; needs no network."""

    CAMERAS: tuple[SpeedCamera, ...] = (
        SpeedCamera(id="static-1", lat=47.3769, lng=8.5417, speed_limit=50),
        SpeedCamera(id="static-2", lat=47.3779, lng=8.5427, speed_limit=60),
        SpeedCamera(id="static-3", lat=46.9481, lng=7.4474, speed_limit=50),
        SpeedCamera(id="static-4", lat=46.2044, lng=6.1432, speed_limit=80),
        SpeedCamera(id="static-5", lat=51.5074, lng=-0.1278, speed_limit=30),
        SpeedCamera(id="static-6", lat=48.8566, lng=2.3522, speed_limit=50),
        SpeedCamera(id="static-7", lat=52.5200, lng=13.4050, speed_limit=50),
        SpeedCamera(id="static-8", lat=40.7128, lng=-74.0060, speed_limit=25),
        SpeedCamera(id="static-9", lat=34.0522, lng=-118.2437, speed_limit=35),
        SpeedCamera(id="static-10", lat=28.6139, lng=77.2090, speed_limit=60),
    )

    def get_name(self) -> str:
        return "Static Radar"

    async def get_cameras(self, bbox: BoundingBox) -> list[SpeedCamera]:
        return _within(list(self.CAMERAS), bbox)


class MockRadar:
    def get_name(self) -> str:
        return "Mock Radar"

    async def get_cameras(self, bbox: BoundingBox) -> list[SpeedCamera]:
        lat, lng = bbox.center()
        return [
            SpeedCamera(id="mock-1", lat=lat + 0.001, lng=lng + 0.001, speed_limit=50, type="fixed"),
            SpeedCamera(id="mock-2", lat=lat - 0.001, lng=lng - 0.001, speed_limit=60, type="mobile"),
        ]
