from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

from .cache import epoch_ms
from .errors import AllRetriesExhausted, CircuitOpen, ProviderError, ProviderTimeout
from .events import CircuitBreakerOpened, EventBus
from .logging_utils import log_event, log_warning
from .metrics_store import MetricsStore
from .settings import Settings, settings

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay_ms: int = 500
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 5_000
    attempt_timeout_ms: int = 5_000

    @classmethod
    def from_settings(cls, config: Settings = settings) -> RetryConfig:
        return cls(
            max_attempts=config.provider_max_attempts,
            initial_delay_ms=config.provider_backoff_initial_ms,
            backoff_multiplier=config.provider_backoff_multiplier,
            max_delay_ms=config.provider_backoff_max_ms,
            attempt_timeout_ms=config.provider_attempt_timeout_ms,
        )


@dataclass
class CircuitBreakerState:
    consecutive_failures: int = 0
    last_failure_epoch_ms: int = 0
    is_open: bool = False


@dataclass(frozen=True)
class HealthRunResult(Generic[T]):
    result: T
    latency_ms: int
    attempts_used: int


def compute_backoff_ms(attempt_index: int, config: RetryConfig) -> int:
    """Delay after the zero-based ``attempt_index`` failed attempt."""
    attempt = max(0, int(attempt_index))
    base_ms = max(0, int(config.initial_delay_ms))
    max_ms = max(base_ms, int(config.max_delay_ms))
    return int(min(max_ms, base_ms * (config.backoff_multiplier**attempt)))


def backoff_schedule_ms(config: RetryConfig) -> list[int]:
    return [compute_backoff_ms(i, config) for i in range(max(0, config.max_attempts - 1))]


class HealthTracker:
    """Timeout, retry/backoff and a circuit breaker around single-provider operations."""

    def __init__(
        self,
        *,
        failure_threshold: int = 3,
        cooldown_ms: int = 30_000,
        default_retry: RetryConfig | None = None,
        events: EventBus | None = None,
        metrics: MetricsStore | None = None,
        now_ms: Callable[[], int] = epoch_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._failure_threshold = max(1, int(failure_threshold))
        self._cooldown_ms = max(0, int(cooldown_ms))
        self._default_retry = default_retry or RetryConfig()
        self._events = events
        self._metrics = metrics
        self._now_ms = now_ms
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreakerState] = {}

    @property
    def cooldown_ms(self) -> int:
        return self._cooldown_ms

    def _check_breaker(self, provider: str) -> None:
        breaker = self._breakers.get(provider)
        if breaker is None or not breaker.is_open:
            return
        elapsed = self._now_ms() - breaker.last_failure_epoch_ms
        if elapsed < self._cooldown_ms:
            if self._metrics is not None:
                self._metrics.record_rejection(provider)
            raise CircuitOpen(provider, self._cooldown_ms - elapsed)
        log_event("circuit_breaker_reset", provider=provider, elapsed_ms=elapsed)
        self._breakers[provider] = CircuitBreakerState()

    def _record_success(self, provider: str) -> None:
        breaker = self._breakers.get(provider)
        if breaker is not None and breaker.consecutive_failures > 0:
            log_event("provider_recovered", provider=provider, failures=breaker.consecutive_failures)
            self._breakers[provider] = CircuitBreakerState()

    def _record_failure(self, provider: str) -> None:
        breaker = self._breakers.setdefault(provider, CircuitBreakerState())
        breaker.consecutive_failures += 1
        if breaker.is_open:
            # Runs admitted before the breaker opened must not push the cooldown out.
            return
        breaker.last_failure_epoch_ms = self._now_ms()
        if breaker.consecutive_failures >= self._failure_threshold:
            breaker.is_open = True
            if self._events is not None:
                self._events.publish(
                    CircuitBreakerOpened(
                        provider=provider,
                        failure_count=breaker.consecutive_failures,
                        cooldown_ms=self._cooldown_ms,
                    )
                )
            else:
                log_warning(
                    "provider_circuit_breaker_opened",
                    provider=provider,
                    failure_count=breaker.consecutive_failures,
                    cooldown_ms=self._cooldown_ms,
                )

    async def _attempt(self, provider: str, operation: Callable[[], Awaitable[T]], timeout_ms: int) -> T:
        t0 = time.perf_counter()
        try:
            result = await asyncio.wait_for(operation(), timeout=timeout_ms / 1000.0)
        except TimeoutError as exc:
            self._observe(provider, t0, timeout=True)
            raise ProviderTimeout(provider, timeout_ms) from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._observe(provider, t0, error=True)
            raise ProviderError(provider, exc) from exc
        self._observe(provider, t0)
        return result

    def _observe(self, provider: str, t0: float, *, error: bool = False, timeout: bool = False) -> None:
        if self._metrics is not None:
            self._metrics.record(
                provider,
                duration_ms=(time.perf_counter() - t0) * 1000.0,
                error=error,
                timeout=timeout,
            )

    async def run(
        self,
        provider_name: str,
        operation: Callable[[], Awaitable[T]],
        retry_config: RetryConfig | None = None,
    ) -> HealthRunResult[T]:
        config = retry_config or self._default_retry
        self._check_breaker(provider_name)

        max_attempts = max(1, int(config.max_attempts))
        started = time.perf_counter()
        last_error: Exception | None = None

        for attempt in range(max_attempts):
            try:
                result = await self._attempt(provider_name, operation, config.attempt_timeout_ms)
            except (ProviderTimeout, ProviderError) as exc:
                last_error = exc
                log_warning(
                    "provider_attempt_failed",
                    provider=provider_name,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    reason_code=exc.reason_code,
                    error=exc.message,
                )
                if attempt < max_attempts - 1:
                    delay_ms = compute_backoff_ms(attempt, config)
                    log_event("provider_retry_scheduled", provider=provider_name, delay_ms=delay_ms)
                    await self._sleep(delay_ms / 1000.0)
                continue

            self._record_success(provider_name)
            return HealthRunResult(
                result=result,
                latency_ms=int((time.perf_counter() - started) * 1000.0),
                attempts_used=attempt + 1,
            )

        self._record_failure(provider_name)
        underlying = getattr(last_error, "cause", last_error)
        raise AllRetriesExhausted(provider_name, max_attempts, underlying)

    def status(self, provider_name: str) -> CircuitBreakerState | None:
        breaker = self._breakers.get(provider_name)
        return replace(breaker) if breaker is not None else None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            name: {
                "consecutive_failures": state.consecutive_failures,
                "last_failure_epoch_ms": state.last_failure_epoch_ms,
                "is_open": state.is_open,
            }
            for name, state in sorted(self._breakers.items())
        }

    def reset(self, provider_name: str | None = None) -> None:
        if provider_name is None:
            log_event("circuit_breakers_reset_all", count=len(self._breakers))
            self._breakers.clear()
        else:
            self._breakers.pop(provider_name, None)
