"""Shared plumbing for provider adapters: typed errors, retries, health."""
from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import httpx
import openai

from contactscout.config import settings
from contactscout.services.logger import log_provider_call

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class ProviderError(Exception):
    """Failure reported by an external provider."""

    transient = False

    def __init__(self, message: str, *, provider: str = "", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network, timeout or rate limit. Worth retrying."""

    transient = True


class PermanentProviderError(ProviderError):
    """Invalid input, auth or not found. Retrying will not help."""


def classify_exception(exc: BaseException, provider: str = "") -> ProviderError:
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        message = f"{provider} returned HTTP {code}"
        if code in TRANSIENT_STATUS_CODES or code >= 500:
            return TransientProviderError(message, provider=provider, status_code=code)
        return PermanentProviderError(message, provider=provider, status_code=code)
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return TransientProviderError(f"{provider} network error: {exc}", provider=provider)
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError)):
        return TransientProviderError(f"{provider} LLM unavailable: {exc}", provider=provider)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError, openai.BadRequestError, openai.NotFoundError)):
        return PermanentProviderError(f"{provider} LLM rejected request: {exc}", provider=provider)
    if isinstance(exc, asyncio.TimeoutError):
        return TransientProviderError(f"{provider} timed out", provider=provider)
    return PermanentProviderError(f"{provider} failed: {exc}", provider=provider)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(settings.provider_retry_max_attempts, 1),
            base_delay=settings.provider_retry_base_delay,
            max_delay=settings.provider_retry_max_delay,
            backoff=settings.provider_retry_backoff,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * self.backoff ** (attempt - 1), self.max_delay)


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return {"healthy": 0, "degraded": 1, "unhealthy": 2}[self.value]


@dataclass(slots=True)
class ServiceHealth:
    service: str
    status: HealthStatus
    response_time_ms: float = 0.0
    error_rate: float = 0.0
    uptime: float = 100.0
    last_check: datetime | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "status": self.status.value,
            "response_time_ms": round(self.response_time_ms, 2),
            "error_rate": round(self.error_rate, 2),
            "uptime": round(self.uptime, 2),
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "details": self.details,
        }


def aggregate_health(reports: Iterable[ServiceHealth]) -> HealthStatus:
    """Worst status wins; no reports means healthy."""
    worst = HealthStatus.HEALTHY
    for report in reports:
        if report.status.severity > worst.severity:
            worst = report.status
    return worst


class HealthTracker:
    """Rolling window of call outcomes for one provider."""

    def __init__(self, service: str, window_seconds: float = 900.0, clock: Callable[[], float] = time.monotonic):
        self.service = service
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: deque[tuple[float, float, bool]] = deque()

    def record(self, duration_ms: float, success: bool) -> None:
        self._calls.append((self._clock(), duration_ms, success))
        self._prune()

    def _prune(self) -> None:
        cutoff = self._clock() - self.window_seconds
        while self._calls and self._calls[0][0] < cutoff:
            self._calls.popleft()

    def snapshot(self, **details: Any) -> ServiceHealth:
        self._prune()
        total = len(self._calls)
        failures = sum(1 for _, _, ok in self._calls if not ok)
        error_rate = failures / total * 100 if total else 0.0
        average_ms = sum(ms for _, ms, _ in self._calls) / total if total else 0.0

        if error_rate > 50 or average_ms > 30_000:
            status = HealthStatus.UNHEALTHY
        elif error_rate > 10 or average_ms > 10_000:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return ServiceHealth(
            service=self.service,
            status=status,
            response_time_ms=average_ms,
            error_rate=error_rate,
            uptime=100.0 - error_rate,
            last_check=datetime.now(timezone.utc),
            details={"calls": total, **details},
        )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    provider: str,
    name: str,
    policy: RetryPolicy,
    health: HealthTracker | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` and retry transient failures with exponential backoff.

    Every failure leaves as a ``ProviderError``. Permanent failures are raised
    on the first attempt.
    """
    last_error: ProviderError | None = None
    for attempt in range(1, policy.max_attempts + 1):
        started = time.monotonic()
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            elapsed_ms = (time.monotonic() - started) * 1000
            error = classify_exception(exc, provider)
            if health is not None:
                health.record(elapsed_ms, success=False)
            log_provider_call(provider, name, int(elapsed_ms), "error", attempt, str(error))
            last_error = error
            if not error.transient or attempt >= policy.max_attempts:
                if error is exc:
                    raise
                raise error from exc
            await sleep(policy.delay_for(attempt))
            continue

        elapsed_ms = (time.monotonic() - started) * 1000
        if health is not None:
            health.record(elapsed_ms, success=True)
        log_provider_call(provider, name, int(elapsed_ms), "success", attempt)
        return result

    raise last_error or PermanentProviderError(f"{provider} {name} made no attempts", provider=provider)
