"""
Rate-limited retrying wrapper for upstream API calls.

Every physical request to an upstream API goes through one RetryingClient.
The client owns a RateLimiter, so sharing a single instance across sources
and concurrently running targets throttles all of them together.

Failure classes:
  - RATE_LIMITED: HTTP 429 or a quota message. Retried with a 4**n backoff,
    since the server is asking for a longer cool-down.
  - TRANSIENT: network errors and 5xx. Retried with a 2**(n-1) backoff.
  - PERMANENT: anything else. Raised at once as PermanentUpstreamError.
"""
import asyncio
import enum
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from sourcesync.errors import (
    PermanentUpstreamError,
    RetriesExhaustedError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MIN_INTERVAL = 1.0
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_DELAY = 2.0
DEFAULT_MAX_DELAY = 300.0

_RATE_LIMIT_MARKERS = (
    "429",
    "Too Many Requests",
    "Rate limit exceeded",
    "Resource has been exhausted",
)
_TRANSIENT_MARKERS = (
    "503 Service Unavailable",
    "overloaded",
    "Internal server error",
    "Bad Gateway",
    "Gateway Timeout",
)


class FailureKind(enum.Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"


def _status_code_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, UpstreamError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def classify_failure(exc: BaseException) -> FailureKind:
    """Decide whether a failed upstream call is worth retrying."""
    status = _status_code_of(exc)
    if status is not None:
        if status == 429:
            return FailureKind.RATE_LIMITED
        if status >= 500:
            return FailureKind.TRANSIENT
        return FailureKind.PERMANENT

    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return FailureKind.TRANSIENT

    text = str(exc)
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return FailureKind.RATE_LIMITED
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


class RateLimiter:
    """
    Enforces a minimum interval between physical calls.

    The time of the last call is shared by every caller holding this
    instance; updating it happens under a lock so concurrent tasks queue up
    instead of firing together.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    async def acquire(self) -> None:
        """Wait until a call is allowed, then claim the slot."""
        async with self._lock:
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                if elapsed < self.min_interval:
                    await self._sleep(self.min_interval - elapsed)
            self._last_call = self._clock()


class RetryingClient:
    """Runs upstream operations through the rate limiter, retrying transient failures."""

    def __init__(
        self,
        limiter: Optional[RateLimiter] = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.limiter = limiter or RateLimiter()
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "RetryingClient":
        return cls(
            RateLimiter(settings.min_request_interval_seconds),
            max_retries=settings.max_retries,
            initial_delay=settings.initial_retry_delay_seconds,
            max_delay=settings.max_retry_delay_seconds,
        )

    def backoff_delay(self, retry: int, kind: FailureKind) -> float:
        """Seconds to wait before retry number `retry` (1-based)."""
        if kind is FailureKind.RATE_LIMITED:
            delay = self.initial_delay * 4 ** retry
        else:
            delay = self.initial_delay * 2 ** (retry - 1)
        return min(delay, self.max_delay)

    async def call(self, operation: Callable[[], Awaitable[T]], *, label: str = "") -> T:
        """
        Run `operation` (a zero-argument coroutine factory) with rate limiting
        and retries.

        Raises:
            PermanentUpstreamError: on the first permanent failure.
            RetriesExhaustedError: when transient failures outlast max_retries.
        """
        name = label or getattr(operation, "__name__", "upstream call")
        retry = 0
        while True:
            await self.limiter.acquire()
            try:
                return await operation()
            except Exception as exc:
                kind = classify_failure(exc)
                if kind is FailureKind.PERMANENT:
                    logger.warning("%s failed permanently: %s", name, exc)
                    raise PermanentUpstreamError(f"{name} failed: {exc}") from exc

                if retry >= self.max_retries:
                    logger.error(
                        "%s failed after %d retries: %s", name, self.max_retries, exc
                    )
                    raise RetriesExhaustedError(
                        f"{name} failed after {self.max_retries} retries: {exc}",
                        retries=self.max_retries,
                    ) from exc

                retry += 1
                delay = self.backoff_delay(retry, kind)
                logger.warning(
                    "%s failed (%s), retry %d/%d in %.1fs: %s",
                    name, kind.value, retry, self.max_retries, delay, exc,
                )
                await self._sleep(delay)
