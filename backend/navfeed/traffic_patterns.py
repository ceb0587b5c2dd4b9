from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class HistoricalPattern:
    hour: int
    weekday: int
    expected_congestion: int


class TrafficPatternModel(Protocol):
    def expected_at(self, moment: datetime) -> HistoricalPattern: ...


def is_weekend(moment: datetime) -> bool:
    return moment.weekday() >= 5


def is_rush_hour(moment: datetime) -> bool:
    """Weekday morning (07-09) and evening (16-19) peaks, inclusive hours."""
    if is_weekend(moment):
        return False
    hour = int(moment.hour)
    return 7 <= hour <= 9 or 16 <= hour <= 19


class TimeOfDayPatternModel:
    """Deterministic congestion profile from the clock alone.

    Bands are coarse on purpose so predictions stay reproducible without
    a learned history.
    """

    def __init__(
        self,
        *,
        rush_hour: int = 60,
        weekday_midday: int = 35,
        weekend_midday: int = 40,
        baseline: int = 20,
    ) -> None:
        self.rush_hour = rush_hour
        self.weekday_midday = weekday_midday
        self.weekend_midday = weekend_midday
        self.baseline = baseline

    def expected_at(self, moment: datetime) -> HistoricalPattern:
        hour = int(moment.hour)
        weekend = is_weekend(moment)
        if is_rush_hour(moment):
            expected = self.rush_hour
        elif not weekend and 10 <= hour <= 15:
            expected = self.weekday_midday
        elif weekend and 11 <= hour <= 14:
            expected = self.weekend_midday
        else:
            expected = self.baseline
        return HistoricalPattern(hour=hour, weekday=moment.weekday(), expected_congestion=expected)
