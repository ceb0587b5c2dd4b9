from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import httpx

from .logging_utils import log_event, log_error, log_warning
from .models import NetworkQuality

QualityHandler = Callable[[NetworkQuality, NetworkQuality], None]


class NetworkMonitor:
    """Current link quality plus change notifications.

    Handlers receive ``(previous, current)`` and fire only on an actual change.
    """

    def __init__(
        self,
        initial: NetworkQuality = "good",
        *,
        probe_timeout_ms: int = 3_000,
        weak_threshold_ms: int = 2_000,
    ) -> None:
        self._quality: NetworkQuality = initial
        self._handlers: list[QualityHandler] = []
        self._probe_timeout_ms = probe_timeout_ms
        self._weak_threshold_ms = weak_threshold_ms

    @property
    def quality(self) -> NetworkQuality:
        return self._quality

    @property
    def is_offline(self) -> bool:
        return self._quality == "offline"

    def subscribe(self, handler: QualityHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def set_quality(self, quality: NetworkQuality) -> bool:
        previous = self._quality
        if previous == quality:
            return False
        self._quality = quality
        log_event("network_quality_changed", previous=previous, current=quality)
        for handler in list(self._handlers):
            try:
                handler(previous, quality)
            except Exception as exc:
                log_error("network_handler_failed", error=f"{type(exc).__name__}: {exc}")
        return True

    def classify(self, *, ok: bool, latency_ms: float) -> NetworkQuality:
        if not ok:
            return "weak"
        return "weak" if latency_ms > self._weak_threshold_ms else "good"

    async def probe(self, client: httpx.AsyncClient, url: str) -> NetworkQuality:
        t0 = time.perf_counter()
        try:
            response = await client.head(url, timeout=self._probe_timeout_ms / 1000.0)
        except httpx.TimeoutException:
            log_warning("network_probe_timeout", url=url, timeout_ms=self._probe_timeout_ms)
            quality: NetworkQuality = "weak"
        except httpx.TransportError as exc:
            log_warning("network_probe_failed", url=url, error=f"{type(exc).__name__}: {exc}")
            quality = "offline"
        else:
            latency_ms = (time.perf_counter() - t0) * 1000.0
            quality = self.classify(ok=response.is_success, latency_ms=latency_ms)
            log_event("network_probe", url=url, status_code=response.status_code, latency_ms=round(latency_ms, 2))
        self.set_quality(quality)
        return quality


async def probe_periodically(
    monitor: NetworkMonitor,
    client: httpx.AsyncClient,
    *,
    url: str,
    interval_s: float,
) -> None:
    while True:
        await monitor.probe(client, url)
        await asyncio.sleep(interval_s)
