from __future__ import annotations

import time
from datetime import datetime
from typing import Any

import httpx

from ..models import WeatherCondition, WeatherNow
from .base import as_float, get_json, require_credential

_OPENWEATHER_CONDITIONS: dict[str, WeatherCondition] = {
    "Clear": "clear",
    "Clouds": "clouds",
    "Rain": "rain",
    "Drizzle": "rain",
    "Snow": "snow",
    "Mist": "fog",
    "Fog": "fog",
    "Haze": "fog",
    "Thunderstorm": "storm",
}


def _wmo_condition(code: int) -> WeatherCondition:
    # WMO weather interpretation codes as used by Open-Meteo.
    if code in (0, 1):
        return "clear"
    if code in (2, 3):
        return "clouds"
    if code in (45, 48):
        return "fog"
    if 51 <= code <= 67 or 80 <= code <= 82:
        return "rain"
    if 71 <= code <= 77 or code in (85, 86):
        return "snow"
    if code >= 95:
        return "storm"
    return "clear"


def _now_ms() -> int:
    return int(time.time() * 1000)


class OpenWeather:
    URL = "https://api.openweathermap.org/data/2.5/weather"

    def __init__(self, api_key: str | None, *, client: httpx.AsyncClient) -> None:
        self._api_key = require_credential("OpenWeather", api_key, "OPENWEATHER_API_KEY")
        self._client = client

    def get_name(self) -> str:
        return "OpenWeather"

    async def get_now(self, lat: float, lng: float) -> WeatherNow:
        data = await get_json(
            self._client,
            self.get_name(),
            self.URL,
            params={"lat": lat, "lon": lng, "units": "metric", "appid": self._api_key},
        )
        main: dict[str, Any] = data.get("main") or {}
        wind: dict[str, Any] = data.get("wind") or {}
        weather = (data.get("weather") or [{}])[0]
        precipitation = (data.get("rain") or {}).get("1h") or (data.get("snow") or {}).get("1h") or 0.0
        return WeatherNow(
            condition=_OPENWEATHER_CONDITIONS.get(str(weather.get("main")), "clear"),
            # m/s -> km/h so thresholds line up with the other providers
            wind_speed=round(as_float(wind.get("speed"), 0.0) * 3.6, 2),
            wind_direction=as_float(wind.get("deg"), 0.0),
            precipitation=as_float(precipitation, 0.0),
            visibility=as_float(data.get("visibility"), 10_000.0),
            temperature=as_float(main.get("temp"), 15.0),
            humidity=as_float(main.get("humidity"), 50.0),
            timestamp=int(data["dt"]) * 1000 if data.get("dt") else _now_ms(),
        )


class OpenMeteoWeather:
    """Keyless public forecast API; the credential-free remote fallback."""

    URL = "https://api.open-meteo.com/v1/forecast"

    def __init__(self, *, client: httpx.AsyncClient) -> None:
        self._client = client

    def get_name(self) -> str:
        return "Open-Meteo"

    async def get_now(self, lat: float, lng: float) -> WeatherNow:
        data = await get_json(
            self._client,
            self.get_name(),
            self.URL,
            params={
                "latitude": lat,
                "longitude": lng,
                "current_weather": "true",
                "hourly": "precipitation,visibility",
                "forecast_days": 1,
            },
        )
        current: dict[str, Any] = data.get("current_weather") or {}
        hourly: dict[str, Any] = data.get("hourly") or {}
        stamp = current.get("time")
        timestamp = _now_ms()
        if isinstance(stamp, str) and stamp:
            try:
                timestamp = int(datetime.fromisoformat(stamp).timestamp() * 1000)
            except ValueError:
                pass
        return WeatherNow(
            condition=_wmo_condition(int(as_float(current.get("weathercode"), 0))),
            wind_speed=as_float(current.get("windspeed"), 0.0),
            wind_direction=as_float(current.get("winddirection"), 0.0),
            precipitation=as_float((hourly.get("precipitation") or [0.0])[0], 0.0),
            visibility=as_float((hourly.get("visibility") or [10_000.0])[0], 10_000.0),
            temperature=as_float(current.get("temperature"), 15.0),
            timestamp=timestamp,
        )


class MockWeather:
    def get_name(self) -> str:
        return "Mock Weather"

    async def get_now(self, lat: float, lng: float) -> WeatherNow:
        hour = datetime.now().hour
        return WeatherNow(
            condition="clear" if 6 < hour < 20 else "clouds",
            wind_speed=8.0,
            precipitation=0.0,
            visibility=10_000.0,
            temperature=18.0,
            humidity=60.0,
            timestamp=_now_ms(),
        )
