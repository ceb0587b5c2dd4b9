from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Region = Literal["EU", "CH", "US", "IN", "ME", "GLOBAL"]
CacheCategory = Literal["map_tiles", "traffic", "radar", "weather"]
NetworkQuality = Literal["good", "weak", "offline"]
IncidentType = Literal["accident", "construction", "closure", "congestion", "weather", "other"]
IncidentSeverity = Literal["low", "moderate", "severe"]
WeatherCondition = Literal["clear", "rain", "snow", "fog", "storm", "clouds"]
CameraType = Literal["fixed", "mobile", "red_light", "average_speed"]
RiskTag = Literal[
    "high_congestion",
    "accident",
    "construction",
    "closure",
    "congestion",
    "weather",
    "other",
    "heavy_rain",
    "snow",
    "fog",
    "storm",
    "rush_hour",
]

CACHE_CATEGORIES: tuple[CacheCategory, ...] = ("map_tiles", "traffic", "radar", "weather")
REGIONS: tuple[Region, ...] = ("EU", "CH", "US", "IN", "ME", "GLOBAL")

# (lat, lng)
Point = tuple[float, float]


class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_lat: float = Field(..., ge=-90, le=90)
    min_lng: float = Field(..., ge=-180, le=180)
    max_lat: float = Field(..., ge=-90, le=90)
    max_lng: float = Field(..., ge=-180, le=180)

    @model_validator(mode="after")
    def ordered(self) -> "BoundingBox":
        if self.min_lat > self.max_lat or self.min_lng > self.max_lng:
            raise ValueError("bounding box minimums must not exceed maximums")
        return self

    def center(self) -> Point:
        return ((self.min_lat + self.max_lat) / 2.0, (self.min_lng + self.max_lng) / 2.0)

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng

    def cache_key(self) -> str:
        return f"{self.min_lat:.4f},{self.min_lng:.4f},{self.max_lat:.4f},{self.max_lng:.4f}"


class TrafficFlow(BaseModel):
    id: str
    coordinates: list[Point] = Field(default_factory=list)
    speed: float = Field(..., ge=0.0)
    free_flow_speed: float = Field(..., ge=0.0)
    segment_id: str | None = None

    @property
    def key(self) -> str:
        return self.segment_id or self.id


class TrafficIncident(BaseModel):
    id: str
    type: IncidentType = "other"
    severity: IncidentSeverity = "moderate"
    location: Point
    delay_minutes: float | None = Field(default=None, ge=0.0)
    description: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def accept_legacy_types(cls, value: object) -> object:
        # Some feeds report closures as "road_closure".
        if value == "road_closure":
            return "closure"
        return value


class WeatherNow(BaseModel):
    condition: WeatherCondition = "clear"
    wind_speed: float = 0.0
    precipitation: float = 0.0
    visibility: float = 10_000.0
    timestamp: int = Field(..., description="epoch milliseconds")
    temperature: float | None = None
    humidity: float | None = None
    wind_direction: float | None = None


class SpeedCamera(BaseModel):
    id: str
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    speed_limit: float = Field(default=50.0, ge=0.0)
    type: CameraType = "fixed"
    direction: float | None = None


class MapStyle(BaseModel):
    provider: str
    style_url: str


class TrafficSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    segment_id: str
    coordinates: list[Point]
    congestion: int = Field(..., ge=0, le=100)
    predicted_congestion: int = Field(..., ge=0, le=100)
    speed: float
    free_flow_speed: float
    incidents: list[TrafficIncident] = Field(default_factory=list)
    risk_tags: list[RiskTag] = Field(default_factory=list)
    last_updated: int


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: Any
    stored_at_epoch_ms: int
    source_name: str


class CacheResult(BaseModel):
    data: Any
    is_fresh: bool
    age_ms: int
    source_name: str


# API payloads


class MonitoringRequest(BaseModel):
    bbox: BoundingBox
    region: Region | None = None


class NetworkQualityUpdate(BaseModel):
    quality: NetworkQuality


class IncidentQuery(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    radius_m: float = Field(default=2_000.0, gt=0.0, le=200_000.0)


class ProviderListResponse(BaseModel):
    region: Region
    map_tiles: list[str]
    traffic: list[str]
    radar: list[str]
    weather: list[str]


class SegmentListResponse(BaseModel):
    count: int
    segments: list[TrafficSegment]


class IncidentListResponse(BaseModel):
    count: int
    incidents: list[TrafficIncident]
