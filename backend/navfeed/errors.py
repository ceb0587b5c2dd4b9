from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "provider_timeout",
        "provider_error",
        "provider_unavailable",
        "circuit_open",
        "all_retries_exhausted",
        "all_providers_failed",
        "cache_write_failed",
        "fusion_cycle_failed",
        "data_layer_error",
    }
)


@dataclass(eq=False)
class DataLayerError(RuntimeError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "reason_code": normalize_reason_code(self.reason_code),
            "message": self.message,
            "details": dict(self.details or {}),
        }


def normalize_reason_code(reason_code: str, *, default: str = "data_layer_error") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


def _describe(exc: BaseException | None) -> str:
    if exc is None:
        return "unknown error"
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class ProviderUnavailable(DataLayerError):
    """Raised by a provider constructor when its credential is not configured."""

    def __init__(self, provider: str, missing: str) -> None:
        super().__init__(
            reason_code="provider_unavailable",
            message=f"{provider} not available: {missing} not configured",
            details={"provider": provider, "missing": missing},
        )
        self.provider = provider


class ProviderTimeout(DataLayerError):
    def __init__(self, provider: str, timeout_ms: int) -> None:
        super().__init__(
            reason_code="provider_timeout",
            message=f"{provider} timed out after {timeout_ms}ms",
            details={"provider": provider, "timeout_ms": timeout_ms},
        )
        self.provider = provider
        self.timeout_ms = timeout_ms


class ProviderError(DataLayerError):
    def __init__(self, provider: str, cause: BaseException) -> None:
        super().__init__(
            reason_code="provider_error",
            message=f"{provider} failed: {_describe(cause)}",
            details={"provider": provider, "cause": type(cause).__name__},
        )
        self.provider = provider
        self.cause = cause


class CircuitOpen(DataLayerError):
    def __init__(self, provider: str, retry_in_ms: int) -> None:
        super().__init__(
            reason_code="circuit_open",
            message=f"circuit breaker open for {provider}, retry in {max(0, retry_in_ms) // 1000}s",
            details={"provider": provider, "retry_in_ms": retry_in_ms},
        )
        self.provider = provider
        self.retry_in_ms = retry_in_ms


class AllRetriesExhausted(DataLayerError):
    def __init__(self, provider: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(
            reason_code="all_retries_exhausted",
            message=f"{provider} failed after {attempts} attempts. Last error: {_describe(last_error)}",
            details={"provider": provider, "attempts": attempts},
        )
        self.provider = provider
        self.attempts = attempts
        self.last_error = last_error


class AllProvidersFailed(DataLayerError):
    def __init__(
        self,
        operation: str,
        *,
        provider_count: int,
        total_attempts: int,
        last_error: BaseException | None,
    ) -> None:
        super().__init__(
            reason_code="all_providers_failed",
            message=(
                f"All {provider_count} providers failed for {operation}. "
                f"Last error: {_describe(last_error)}"
            ),
            details={
                "operation": operation,
                "provider_count": provider_count,
                "total_attempts": total_attempts,
            },
        )
        self.operation = operation
        self.total_attempts = total_attempts
        self.last_error = last_error


class CacheWriteFailed(DataLayerError):
    def __init__(self, key: str, cause: str) -> None:
        super().__init__(
            reason_code="cache_write_failed",
            message=f"cache write failed for {key}: {cause}",
            details={"key": key, "cause": cause},
        )
        self.key = key


class FusionCycleFailed(DataLayerError):
    def __init__(self, cause: BaseException) -> None:
        super().__init__(
            reason_code="fusion_cycle_failed",
            message=f"traffic fusion cycle failed: {_describe(cause)}",
            details={"cause": type(cause).__name__},
        )
        self.cause = cause
