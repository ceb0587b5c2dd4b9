"""
Capability contracts for third-party data providers.

Adapters normalise wire payloads into the records in ``navfeed.models``; the
failover, caching and health layers only ever see these protocols.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx

from ..errors import ProviderUnavailable
from ..models import BoundingBox, MapStyle, SpeedCamera, TrafficFlow, TrafficIncident, WeatherNow


@runtime_checkable
class Provider(Protocol):
    def get_name(self) -> str: ...


@runtime_checkable
class MapTilesProvider(Provider, Protocol):
    async def get_style(self) -> MapStyle: ...


@runtime_checkable
class TrafficProvider(Provider, Protocol):
    async def get_flow(self, bbox: BoundingBox) -> list[TrafficFlow]: ...

    async def get_incidents(self, bbox: BoundingBox) -> list[TrafficIncident]: ...


@runtime_checkable
class RadarProvider(Provider, Protocol):
    async def get_cameras(self, bbox: BoundingBox) -> list[SpeedCamera]: ...


@runtime_checkable
class WeatherProvider(Provider, Protocol):
    async def get_now(self, lat: float, lng: float) -> WeatherNow: ...


class ProviderHTTPError(RuntimeError):
    def __init__(self, provider: str, status_code: int) -> None:
        super().__init__(f"{provider} API error: {status_code}")
        self.provider = provider
        self.status_code = status_code


def require_credential(provider: str, value: str | None, env_name: str) -> str:
    token = str(value or "").strip()
    if not token:
        raise ProviderUnavailable(provider, env_name)
    return token


async def get_json(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    timeout_s: float | None = None,
) -> Any:
    kwargs: dict[str, Any] = {"params": params}
    if timeout_s is not None:
        kwargs["timeout"] = timeout_s
    response = await client.get(url, **kwargs)
    if response.status_code >= 400:
        raise ProviderHTTPError(provider, response.status_code)
    if response.status_code == 204 or not response.content:
        return {}
    return response.json()


def as_float(value: Any, default: float) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    if out != out:
        return default
    return out
