from __future__ import annotations

import random
from datetime import datetime

from navfeed.fusion import (
    base_congestion,
    clamp_congestion,
    fuse_segments,
    haversine_m,
    match_incidents,
    predict_congestion,
    risk_tags,
    weather_impact,
)
from navfeed.models import TrafficFlow, TrafficIncident, WeatherNow
from navfeed.traffic_patterns import TimeOfDayPatternModel, is_rush_hour

# Saturday 03:00: no rush hour and a flat pattern across the prediction window.
QUIET = datetime(2026, 3, 14, 3, 0)
# Wednesday
WEEKDAY_MORNING = datetime(2026, 3, 11, 9, 45)

ZURICH = (47.3769, 8.5417)


def _flow(speed: float, free_flow: float = 60.0, coords: list[tuple[float, float]] | None = None) -> TrafficFlow:
    return TrafficFlow(id="seg-1", coordinates=coords or [ZURICH], speed=speed, free_flow_speed=free_flow)


def _weather(condition: str = "clear", **kwargs) -> WeatherNow:  # noqa: ANN003
    return WeatherNow(condition=condition, timestamp=0, **kwargs)


def test_half_speed_scores_fifty_without_weather() -> None:
    [segment] = fuse_segments([_flow(30.0)], [], None, moment=QUIET, updated_at_ms=1)
    assert segment.congestion == 50
    assert segment.predicted_congestion == 50
    assert segment.risk_tags == []
    assert segment.last_updated == 1


def test_snow_adds_twenty_and_tags_segment() -> None:
    [segment] = fuse_segments([_flow(30.0)], [], _weather("snow"), moment=QUIET, updated_at_ms=1)
    assert segment.congestion == 70
    assert segment.predicted_congestion == 70
    assert segment.risk_tags == ["high_congestion", "snow"]


def test_accident_within_500m_is_matched_and_tagged() -> None:
    near = TrafficIncident(id="i-near", type="accident", severity="severe", location=(47.3790, 8.5417))
    far = TrafficIncident(id="i-far", type="construction", location=(47.4000, 8.5400))
    assert haversine_m(ZURICH, near.location) < 500
    assert haversine_m(ZURICH, far.location) > 500

    [segment] = fuse_segments([_flow(45.0)], [near, far], None, moment=QUIET, updated_at_ms=1)

    assert [i.id for i in segment.incidents] == ["i-near"]
    assert segment.risk_tags == ["accident"]


def test_incident_types_are_tagged_once_each() -> None:
    incidents = [
        TrafficIncident(id="a", type="accident", location=ZURICH),
        TrafficIncident(id="b", type="accident", location=ZURICH),
        TrafficIncident(id="c", type="road_closure", location=ZURICH),
    ]
    tags = risk_tags(10, incidents, None, QUIET)
    assert tags == ["accident", "closure"]


def test_weather_impact_is_capped_at_thirty() -> None:
    assert weather_impact(None) == 0
    assert weather_impact(_weather("rain")) == 10
    assert weather_impact(_weather("fog")) == 15
    assert weather_impact(_weather("clear", wind_speed=60.0)) == 10
    assert weather_impact(_weather("clear", visibility=500.0)) == 15
    assert weather_impact(_weather("storm", wind_speed=80.0, visibility=200.0)) == 30


def test_prediction_follows_pattern_trend_with_damping() -> None:
    # 09:45 rush (60) -> 10:15 weekday midday (35)
    assert predict_congestion(50, current_expected=60, future_expected=35, weather=None) == 38
    assert predict_congestion(60, current_expected=60, future_expected=35, weather=_weather("rain")) == 46
    assert predict_congestion(99, current_expected=20, future_expected=60, weather=_weather("snow")) == 100


def test_rush_hour_segment_gets_tag_and_falling_prediction() -> None:
    [segment] = fuse_segments([_flow(30.0)], [], None, moment=WEEKDAY_MORNING, updated_at_ms=1)
    assert "rush_hour" in segment.risk_tags
    assert segment.congestion == 50
    assert segment.predicted_congestion == 38


def test_time_of_day_pattern_bands() -> None:
    model = TimeOfDayPatternModel()
    assert model.expected_at(datetime(2026, 3, 11, 8, 0)).expected_congestion == 60
    assert model.expected_at(datetime(2026, 3, 11, 17, 30)).expected_congestion == 60
    assert model.expected_at(datetime(2026, 3, 11, 12, 0)).expected_congestion == 35
    assert model.expected_at(datetime(2026, 3, 14, 12, 0)).expected_congestion == 40
    assert model.expected_at(datetime(2026, 3, 14, 10, 0)).expected_congestion == 20
    assert model.expected_at(datetime(2026, 3, 14, 8, 0)).expected_congestion == 20
    assert is_rush_hour(datetime(2026, 3, 14, 8, 0)) is False
    assert is_rush_hour(datetime(2026, 3, 11, 19, 59)) is True
    assert is_rush_hour(datetime(2026, 3, 11, 20, 0)) is False


def test_segment_id_prefers_provider_segment_id() -> None:
    flow = TrafficFlow(id="raw-7", segment_id="A1-north", coordinates=[ZURICH], speed=60.0, free_flow_speed=60.0)
    [segment] = fuse_segments([flow], [], None, moment=QUIET, updated_at_ms=1)
    assert segment.segment_id == "A1-north"
    assert segment.congestion == 0


def test_zero_free_flow_speed_scores_zero() -> None:
    assert base_congestion(10.0, 0.0) == 0


def test_match_incidents_checks_every_coordinate() -> None:
    path = [(47.30, 8.50), (47.35, 8.52), ZURICH]
    incident = TrafficIncident(id="x", type="congestion", location=(47.3770, 8.5420))
    assert match_incidents(path, [incident]) == [incident]
    assert match_incidents(path[:2], [incident]) == []


def test_congestion_randomized_invariants() -> None:
    rng = random.Random(20260311)
    conditions = ["clear", "rain", "snow", "fog", "storm", "clouds"]
    model = TimeOfDayPatternModel()

    for _ in range(300):
        flow = _flow(rng.uniform(0.0, 200.0), rng.uniform(0.0, 150.0))
        weather = _weather(
            rng.choice(conditions),
            wind_speed=rng.uniform(0.0, 120.0),
            visibility=rng.uniform(0.0, 20_000.0),
        )
        moment = datetime(2026, 3, rng.randint(9, 15), rng.randint(0, 23), rng.randint(0, 59))
        [segment] = fuse_segments([flow], [], weather, moment=moment, updated_at_ms=0, pattern_model=model)

        assert 0 <= segment.congestion <= 100
        assert 0 <= segment.predicted_congestion <= 100
        assert len(segment.risk_tags) == len(set(segment.risk_tags))
        assert 0 <= weather_impact(weather) <= 30

    for value in (-1e9, -0.5, 0.0, 49.5, 100.49, 1e9):
        assert 0 <= clamp_congestion(value) <= 100


def test_faster_than_free_flow_offsets_weather_penalty() -> None:
    assert base_congestion(72.0, 60.0) == -20

    [snow] = fuse_segments([_flow(72.0)], [], _weather("snow"), moment=QUIET, updated_at_ms=1)
    assert snow.congestion == 0
    assert snow.risk_tags == ["snow"]

    [storm] = fuse_segments(
        [_flow(66.0)], [], _weather("storm", visibility=500.0), moment=QUIET, updated_at_ms=1
    )
    assert storm.congestion == 20
