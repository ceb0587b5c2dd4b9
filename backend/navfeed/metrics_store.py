from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock


@dataclass
class ProviderStats:
    attempt_count: int = 0
    error_count: int = 0
    timeout_count: int = 0
    rejected_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0


class MetricsStore:
    """Per-provider attempt counters fed by the health tracker."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._providers: dict[str, ProviderStats] = {}

    def record(self, provider: str, *, duration_ms: float, error: bool = False, timeout: bool = False) -> None:
        name = provider.strip() or "unknown"
        d_ms = max(float(duration_ms), 0.0)

        with self._lock:
            stats = self._providers.setdefault(name, ProviderStats())
            stats.attempt_count += 1
            if error or timeout:
                stats.error_count += 1
            if timeout:
                stats.timeout_count += 1
            stats.total_duration_ms += d_ms
            if d_ms > stats.max_duration_ms:
                stats.max_duration_ms = d_ms

    def record_rejection(self, provider: str) -> None:
        with self._lock:
            self._providers.setdefault(provider.strip() or "unknown", ProviderStats()).rejected_count += 1

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            providers: dict[str, dict[str, float | int]] = {}
            total_attempts = 0
            total_errors = 0

            for name in sorted(self._providers):
                stats = self._providers[name]
                total_attempts += stats.attempt_count
                total_errors += stats.error_count
                avg_duration_ms = (
                    stats.total_duration_ms / stats.attempt_count if stats.attempt_count else 0.0
                )
                providers[name] = {
                    "attempt_count": stats.attempt_count,
                    "error_count": stats.error_count,
                    "timeout_count": stats.timeout_count,
                    "rejected_count": stats.rejected_count,
                    "total_duration_ms": round(stats.total_duration_ms, 3),
                    "avg_duration_ms": round(avg_duration_ms, 3),
                    "max_duration_ms": round(stats.max_duration_ms, 3),
                }

            return {
                "created_at": self._created_at,
                "total_attempts": total_attempts,
                "total_errors": total_errors,
                "provider_count": len(providers),
                "providers": providers,
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._providers.clear()
