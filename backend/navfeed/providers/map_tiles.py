from __future__ import annotations

from ..models import MapStyle
from .base import require_credential


class MapboxTiles:
    def __init__(self, token: str | None) -> None:
        self._token = require_credential("Mapbox", token, "MAPBOX_TOKEN")

    def get_name(self) -> str:
        return "Mapbox"

    async def get_style(self) -> MapStyle:
        return MapStyle(provider=self.get_name(), style_url="mapbox://styles/mapbox/streets-v12")


class MapTilerTiles:
    def __init__(self, token: str | None) -> None:
        self._token = require_credential("MapTiler", token, "MAPTILER_TOKEN")

    def get_name(self) -> str:
        return "MapTiler"

    async def get_style(self) -> MapStyle:
        return MapStyle(
            provider=self.get_name(),
            style_url=f"https://api.maptiler.com/maps/streets-v2/style.json?key={self._token}",
        )


class MockMapTiles:
    def get_name(self) -> str:
        return "Mock"

    async def get_style(self) -> MapStyle:
        return MapStyle(provider=self.get_name(), style_url="mapbox://styles/mapbox/light-v11")
