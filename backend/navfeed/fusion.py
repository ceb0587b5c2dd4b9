from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from .models import Point, RiskTag, TrafficFlow, TrafficIncident, TrafficSegment, WeatherCondition, WeatherNow
from .traffic_patterns import TimeOfDayPatternModel, TrafficPatternModel, is_rush_hour

EARTH_RADIUS_M = 6_371_000.0

HIGH_CONGESTION_THRESHOLD = 70
WEATHER_IMPACT_CAP = 30
PREDICTION_DAMPING = 0.5

_CONDITION_IMPACT: dict[WeatherCondition, int] = {
    "rain": 10,
    "snow": 20,
    "fog": 15,
    "storm": 25,
}

_CONDITION_TAGS: dict[WeatherCondition, RiskTag] = {
    "rain": "heavy_rain",
    "snow": "snow",
    "fog": "fog",
    "storm": "storm",
}

_PREDICTION_WEATHER_FACTOR: dict[WeatherCondition, float] = {
    "rain": 1.15,
    "snow": 1.15,
}


def round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


def clamp_congestion(value: float) -> int:
    return max(0, min(100, round_half_up(value)))


def haversine_m(a: Point, b: Point) -> float:
    lat1, lng1 = math.radians(a[0]), math.radians(a[1])
    lat2, lng2 = math.radians(b[0]), math.radians(b[1])
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2.0) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def base_congestion(speed: float, free_flow_speed: float) -> int:
    """Share of free-flow speed lost, in percent.

    Unclamped: a flow faster than free flow scores below zero and offsets the
    weather penalty before the combined score is clamped.
    """
    if free_flow_speed <= 0:
        return 0
    return round_half_up((1.0 - float(speed) / float(free_flow_speed)) * 100.0)


def weather_impact(weather: WeatherNow | None) -> int:
    if weather is None:
        return 0
    impact = _CONDITION_IMPACT.get(weather.condition, 0)
    if weather.wind_speed > 50:
        impact += 10
    if weather.visibility < 1000:
        impact += 15
    return min(WEATHER_IMPACT_CAP, impact)


def predict_congestion(
    congestion: int,
    *,
    current_expected: int,
    future_expected: int,
    weather: WeatherNow | None,
) -> int:
    factor = _PREDICTION_WEATHER_FACTOR.get(weather.condition, 1.0) if weather is not None else 1.0
    trend = (future_expected - current_expected) * PREDICTION_DAMPING * factor
    return clamp_congestion(congestion + trend)


def match_incidents(
    coordinates: Sequence[Point],
    incidents: Iterable[TrafficIncident],
    *,
    radius_m: float = 500.0,
) -> list[TrafficIncident]:
    return [
        incident
        for incident in incidents
        if any(haversine_m(coord, incident.location) <= radius_m for coord in coordinates)
    ]


def risk_tags(
    congestion: int,
    incidents: Iterable[TrafficIncident],
    weather: WeatherNow | None,
    moment: datetime,
) -> list[RiskTag]:
    tags: list[RiskTag] = []

    def _add(tag: RiskTag) -> None:
        if tag not in tags:
            tags.append(tag)

    if congestion >= HIGH_CONGESTION_THRESHOLD:
        _add("high_congestion")
    for incident in incidents:
        _add(incident.type)
    if weather is not None and weather.condition in _CONDITION_TAGS:
        _add(_CONDITION_TAGS[weather.condition])
    if is_rush_hour(moment):
        _add("rush_hour")
    return tags


def fuse_segments(
    flows: Iterable[TrafficFlow],
    incidents: Sequence[TrafficIncident],
    weather: WeatherNow | None,
    *,
    moment: datetime,
    updated_at_ms: int,
    pattern_model: TrafficPatternModel | None = None,
    prediction_window_s: int = 1800,
    incident_radius_m: float = 500.0,
) -> list[TrafficSegment]:
    """Score every flow into a segment with prediction, matched incidents and risk tags."""
    model = pattern_model or TimeOfDayPatternModel()
    current = model.expected_at(moment).expected_congestion
    future = model.expected_at(moment + timedelta(seconds=prediction_window_s)).expected_congestion
    impact = weather_impact(weather)

    segments: list[TrafficSegment] = []
    for flow in flows:
        congestion = clamp_congestion(base_congestion(flow.speed, flow.free_flow_speed) + impact)
        matched = match_incidents(flow.coordinates, incidents, radius_m=incident_radius_m)
        segments.append(
            TrafficSegment(
                segment_id=flow.key,
                coordinates=list(flow.coordinates),
                congestion=congestion,
                predicted_congestion=predict_congestion(
                    congestion,
                    current_expected=current,
                    future_expected=future,
                    weather=weather,
                ),
                speed=flow.speed,
                free_flow_speed=flow.free_flow_speed,
                incidents=matched,
                risk_tags=risk_tags(congestion, matched, weather, moment),
                last_updated=updated_at_ms,
            )
        )
    return segments
