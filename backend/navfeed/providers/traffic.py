from __future__ import annotations

from typing import Any

import httpx

from ..models import BoundingBox, IncidentSeverity, IncidentType, Point, TrafficFlow, TrafficIncident
from .base import as_float, get_json, require_credential

_DEFAULT_SPEED = 50.0
_DEFAULT_FREE_FLOW = 60.0

_HERE_INCIDENT_TYPES: dict[str, IncidentType] = {
    "accident": "accident",
    "construction": "construction",
    "roadClosure": "closure",
    "laneRestriction": "construction",
    "congestion": "congestion",
    "weather": "weather",
}

_TOMTOM_INCIDENT_TYPES: dict[int, IncidentType] = {
    1: "accident",
    2: "weather",
    6: "congestion",
    7: "construction",
    8: "closure",
    9: "construction",
    10: "weather",
    11: "weather",
}


def _severity_from_scale(value: Any, *, moderate_at: float, severe_at: float) -> IncidentSeverity:
    level = as_float(value, 0.0)
    if level >= severe_at:
        return "severe"
    if level >= moderate_at:
        return "moderate"
    return "low"


def _lnglat_pairs(raw: Any) -> list[Point]:
    out: list[Point] = []
    if not isinstance(raw, list):
        return out
    for pt in raw:
        if isinstance(pt, (list, tuple)) and len(pt) >= 2:
            out.append((float(pt[1]), float(pt[0])))
    return out


class MapboxTraffic:
    BASE_URL = "https://api.mapbox.com/v4/mapbox.mapbox-traffic-v1/tilequery"

    def __init__(self, token: str | None, *, client: httpx.AsyncClient) -> None:
        self._token = require_credential("Mapbox Traffic", token, "MAPBOX_TOKEN")
        self._client = client

    def get_name(self) -> str:
        return "Mapbox Traffic"

    async def get_flow(self, bbox: BoundingBox) -> list[TrafficFlow]:
        lat, lng = bbox.center()
        data = await get_json(
            self._client,
            self.get_name(),
            f"{self.BASE_URL}/{lng},{lat}.json",
            params={"access_token": self._token, "radius": 1000, "limit": 50},
        )
        features = data.get("features") if isinstance(data, dict) else None
        if not isinstance(features, list):
            return []
        flows: list[TrafficFlow] = []
        for idx, feature in enumerate(features):
            props = feature.get("properties") or {}
            geometry = feature.get("geometry") or {}
            coords = geometry.get("coordinates") or []
            if geometry.get("type") == "Point":
                coords = [coords]
            flows.append(
                TrafficFlow(
                    id=f"mapbox-traffic-{idx}",
                    coordinates=_lnglat_pairs(coords),
                    speed=as_float(props.get("speed"), _DEFAULT_SPEED),
                    free_flow_speed=as_float(props.get("freeFlowSpeed"), _DEFAULT_FREE_FLOW),
                )
            )
        return flows

    async def get_incidents(self, bbox: BoundingBox) -> list[TrafficIncident]:
        # The tilequery traffic tileset carries congestion only.
        return []


class HereTraffic:
    FLOW_URL = "https://data.traffic.hereapi.com/v7/flow"
    INCIDENTS_URL = "https://data.traffic.hereapi.com/v7/incidents"

    def __init__(self, api_key: str | None, *, client: httpx.AsyncClient) -> None:
        self._api_key = require_credential("HERE Traffic", api_key, "HERE_API_KEY")
        self._client = client

    def get_name(self) -> str:
        return "HERE Traffic"

    def _params(self, bbox: BoundingBox) -> dict[str, str]:
        return {
            "in": f"bbox:{bbox.min_lng},{bbox.min_lat},{bbox.max_lng},{bbox.max_lat}",
            "locationReferencing": "shape",
            "apiKey": self._api_key,
        }

    @staticmethod
    def _shape(location: dict[str, Any]) -> list[Point]:
        points: list[Point] = []
        links = ((location.get("shape") or {}).get("links")) or []
        for link in links:
            for pt in link.get("points") or []:
                if "lat" in pt and "lng" in pt:
                    points.append((float(pt["lat"]), float(pt["lng"])))
        return points

    async def get_flow(self, bbox: BoundingBox) -> list[TrafficFlow]:
        data = await get_json(self._client, self.get_name(), self.FLOW_URL, params=self._params(bbox))
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []
        flows: list[TrafficFlow] = []
        for idx, item in enumerate(results):
            current = item.get("currentFlow") or {}
            flows.append(
                TrafficFlow(
                    id=f"here-traffic-{idx}",
                    coordinates=self._shape(item.get("location") or {}),
                    speed=as_float(current.get("speed"), _DEFAULT_SPEED),
                    free_flow_speed=as_float(current.get("freeFlow"), _DEFAULT_FREE_FLOW),
                )
            )
        return flows

    async def get_incidents(self, bbox: BoundingBox) -> list[TrafficIncident]:
        data = await get_json(self._client, self.get_name(), self.INCIDENTS_URL, params=self._params(bbox))
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []
        incidents: list[TrafficIncident] = []
        for idx, item in enumerate(results):
            details = item.get("incidentDetails") or {}
            shape = self._shape(item.get("location") or {})
            if not shape:
                continue
            incidents.append(
                TrafficIncident(
                    id=str(details.get("id") or f"here-incident-{idx}"),
                    type=_HERE_INCIDENT_TYPES.get(str(details.get("type")), "other"),
                    severity=_severity_from_scale(details.get("criticality"), moderate_at=1, severe_at=3),
                    location=shape[0],
                    description=str((details.get("description") or {}).get("value") or ""),
                )
            )
        return incidents


class TomTomTraffic:
    FLOW_URL = "https://api.tomtom.com/traffic/services/4/flowSegmentData/absolute/10/json"
    INCIDENTS_URL = "https://api.tomtom.com/traffic/services/5/incidentDetails"

    def __init__(self, api_key: str | None, *, client: httpx.AsyncClient) -> None:
        self._api_key = require_credential("TomTom Traffic", api_key, "TOMTOM_API_KEY")
        self._client = client

    def get_name(self) -> str:
        return "TomTom Traffic"

    async def get_flow(self, bbox: BoundingBox) -> list[TrafficFlow]:
        lat, lng = bbox.center()
        data = await get_json(
            self._client,
            self.get_name(),
            self.FLOW_URL,
            params={"point": f"{lat},{lng}", "key": self._api_key},
        )
        item = data.get("flowSegmentData") if isinstance(data, dict) else None
        if not isinstance(item, dict):
            return []
        coords = ((item.get("coordinates") or {}).get("coordinate")) or []
        return [
            TrafficFlow(
                id="tomtom-traffic-0",
                coordinates=[
                    (float(pt["latitude"]), float(pt["longitude"]))
                    for pt in coords
                    if "latitude" in pt and "longitude" in pt
                ],
                speed=as_float(item.get("currentSpeed"), _DEFAULT_SPEED),
                free_flow_speed=as_float(item.get("freeFlowSpeed"), _DEFAULT_FREE_FLOW),
            )
        ]

    async def get_incidents(self, bbox: BoundingBox) -> list[TrafficIncident]:
        data = await get_json(
            self._client,
            self.get_name(),
            self.INCIDENTS_URL,
            params={
                "bbox": f"{bbox.min_lng},{bbox.min_lat},{bbox.max_lng},{bbox.max_lat}",
                "fields": "{incidents{type,geometry{type,coordinates},properties{id,iconCategory,magnitudeOfDelay,delay,events{description}}}}",
                "key": self._api_key,
            },
        )
        raw = data.get("incidents") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            return []
        incidents: list[TrafficIncident] = []
        for idx, item in enumerate(raw):
            props = item.get("properties") or {}
            geometry = item.get("geometry") or {}
            coords = geometry.get("coordinates") or []
            points = _lnglat_pairs([coords] if geometry.get("type") == "Point" else coords)
            if not points:
                continue
            events = props.get("events") or [{}]
            delay_s = props.get("delay")
            incidents.append(
                TrafficIncident(
                    id=str(props.get("id") or f"tomtom-incident-{idx}"),
                    type=_TOMTOM_INCIDENT_TYPES.get(int(as_float(props.get("iconCategory"), 0)), "other"),
                    severity=_severity_from_scale(props.get("magnitudeOfDelay"), moderate_at=2, severe_at=3),
                    location=points[0],
                    delay_minutes=round(as_float(delay_s, 0.0) / 60.0, 1) if delay_s is not None else None,
                    description=str(events[0].get("description") or ""),
                )
            )
        return incidents


class MockTraffic:
    """Offline provider that never needs credentials; always last in the chain."""

    def get_name(self) -> str:
        return "Mock Traffic"

    async def get_flow(self, bbox: BoundingBox) -> list[TrafficFlow]:
        return [
            TrafficFlow(
                id="mock-1",
                coordinates=[(bbox.min_lat, bbox.min_lng), (bbox.max_lat, bbox.max_lng)],
                speed=45.0,
                free_flow_speed=60.0,
            )
        ]

    async def get_incidents(self, bbox: BoundingBox) -> list[TrafficIncident]:
        return []
