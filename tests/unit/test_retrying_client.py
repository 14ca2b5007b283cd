"""Tests for the rate limiter, failure classification and retry schedule."""
import asyncio

import httpx
import pytest

from fakes import FakeClock
from sourcesync.errors import (
    PermanentUpstreamError,
    RetriesExhaustedError,
    UpstreamError,
)
from sourcesync.sync.retrying_client import (
    FailureKind,
    RateLimiter,
    RetryingClient,
    classify_failure,
)


def _client(clock: FakeClock, **kwargs) -> RetryingClient:
    kwargs.setdefault("initial_delay", 1.0)
    return RetryingClient(
        RateLimiter(1.0, clock=clock, sleep=clock.sleep),
        sleep=clock.sleep,
        **kwargs,
    )


class Flaky:
    """Operation that raises the given errors in order, then returns 'ok'."""

    def __init__(self, clock: FakeClock, *errors: Exception):
        self.clock = clock
        self.errors = list(errors)
        self.call_times = []

    async def __call__(self):
        self.call_times.append(self.clock.now)
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


# ─── classify_failure ─────────────────────────────────────────────────────────

class TestClassifyFailure:
    def test_429_is_rate_limited(self):
        assert classify_failure(UpstreamError("slow down", 429)) is FailureKind.RATE_LIMITED

    def test_5xx_is_transient(self):
        assert classify_failure(UpstreamError("oops", 503)) is FailureKind.TRANSIENT
        assert classify_failure(UpstreamError("oops", 500)) is FailureKind.TRANSIENT

    def test_4xx_is_permanent(self):
        assert classify_failure(UpstreamError("denied", 401)) is FailureKind.PERMANENT
        assert classify_failure(UpstreamError("missing", 404)) is FailureKind.PERMANENT

    def test_httpx_status_error_uses_response_code(self):
        request = httpx.Request("GET", "https://example.test")
        response = httpx.Response(502, request=request)
        exc = httpx.HTTPStatusError("bad gateway", request=request, response=response)
        assert classify_failure(exc) is FailureKind.TRANSIENT

    def test_network_errors_are_transient(self):
        assert classify_failure(httpx.ConnectError("refused")) is FailureKind.TRANSIENT
        assert classify_failure(ConnectionResetError()) is FailureKind.TRANSIENT
        assert classify_failure(TimeoutError()) is FailureKind.TRANSIENT

    def test_message_markers(self):
        assert classify_failure(Exception("429 Too Many Requests")) is FailureKind.RATE_LIMITED
        assert classify_failure(Exception("Resource has been exhausted")) is FailureKind.RATE_LIMITED
        assert classify_failure(Exception("503 Service Unavailable")) is FailureKind.TRANSIENT
        assert classify_failure(Exception("model is overloaded")) is FailureKind.TRANSIENT

    def test_unknown_error_is_permanent(self):
        assert classify_failure(ValueError("bad json")) is FailureKind.PERMANENT


# ─── backoff_delay ────────────────────────────────────────────────────────────

class TestBackoffDelay:
    def test_transient_doubles(self):
        client = RetryingClient(initial_delay=2.0)
        delays = [client.backoff_delay(n, FailureKind.TRANSIENT) for n in (1, 2, 3, 4)]
        assert delays == [2.0, 4.0, 8.0, 16.0]

    def test_rate_limited_quadruples(self):
        client = RetryingClient(initial_delay=2.0)
        delays = [client.backoff_delay(n, FailureKind.RATE_LIMITED) for n in (1, 2, 3)]
        assert delays == [8.0, 32.0, 128.0]

    def test_capped_at_max_delay(self):
        client = RetryingClient(initial_delay=2.0, max_delay=300.0)
        assert client.backoff_delay(5, FailureKind.RATE_LIMITED) == 300.0


# ─── RateLimiter ──────────────────────────────────────────────────────────────

class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_call_is_immediate(self):
        clock = FakeClock()
        limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_waits_out_remaining_interval(self):
        clock = FakeClock()
        limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        clock.now += 0.25
        await limiter.acquire()
        assert clock.sleeps == [pytest.approx(0.75)]

    @pytest.mark.asyncio
    async def test_no_wait_after_interval_elapsed(self):
        clock = FakeClock()
        limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        clock.now += 5
        await limiter.acquire()
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_concurrent_callers_are_spaced(self):
        """Calls issued together still start at least min_interval apart."""
        clock = FakeClock()
        client = _client(clock)
        started = []

        async def op():
            started.append(clock.now)
            return len(started)

        await asyncio.gather(*(client.call(op) for _ in range(4)))

        assert started == [0.0, 1.0, 2.0, 3.0]
        gaps = [b - a for a, b in zip(started, started[1:])]
        assert all(gap >= 1.0 for gap in gaps)


# ─── RetryingClient.call ──────────────────────────────────────────────────────

class TestRetryingClient:
    @pytest.mark.asyncio
    async def test_success_returns_result(self):
        clock = FakeClock()
        op = Flaky(clock)
        assert await _client(clock).call(op) == "ok"
        assert op.call_times == [0.0]

    @pytest.mark.asyncio
    async def test_transient_failures_back_off_exponentially(self):
        """Three 503s then success: waits 1s, 2s, 4s and returns the result."""
        clock = FakeClock()
        op = Flaky(clock, *(UpstreamError("unavailable", 503) for _ in range(3)))

        result = await _client(clock).call(op)

        assert result == "ok"
        assert clock.sleeps == [1.0, 2.0, 4.0]
        assert op.call_times == [0.0, 1.0, 3.0, 7.0]

    @pytest.mark.asyncio
    async def test_rate_limited_uses_longer_backoff(self):
        clock = FakeClock()
        op = Flaky(clock, UpstreamError("Too Many Requests", 429))

        assert await _client(clock).call(op) == "ok"
        assert clock.sleeps == [4.0]

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self):
        clock = FakeClock()
        original = UpstreamError("unauthorized", 401)
        op = Flaky(clock, original)

        with pytest.raises(PermanentUpstreamError) as exc_info:
            await _client(clock).call(op, label="list pages")

        assert exc_info.value.__cause__ is original
        assert "list pages" in str(exc_info.value)
        assert len(op.call_times) == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        clock = FakeClock()
        op = Flaky(clock, *(UpstreamError("down", 500) for _ in range(10)))

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await _client(clock, max_retries=2).call(op)

        assert exc_info.value.retries == 2
        assert "after 2 retries" in str(exc_info.value)
        # first attempt plus two retries
        assert len(op.call_times) == 3

    @pytest.mark.asyncio
    async def test_zero_retries_fails_on_first_transient(self):
        clock = FakeClock()
        op = Flaky(clock, httpx.ReadTimeout("timed out"))

        with pytest.raises(RetriesExhaustedError):
            await _client(clock, max_retries=0).call(op)
        assert len(op.call_times) == 1

    @pytest.mark.asyncio
    async def test_every_attempt_goes_through_limiter(self):
        """Retries are physical calls too and respect the minimum interval."""
        clock = FakeClock()
        op = Flaky(clock, UpstreamError("down", 500), UpstreamError("down", 500))

        await _client(clock, initial_delay=0.1).call(op)

        gaps = [b - a for a, b in zip(op.call_times, op.call_times[1:])]
        assert all(gap == pytest.approx(1.0) or gap > 1.0 for gap in gaps)

    def test_from_settings(self):
        class _Settings:
            min_request_interval_seconds = 0.5
            max_retries = 3
            initial_retry_delay_seconds = 1.5
            max_retry_delay_seconds = 60

        client = RetryingClient.from_settings(_Settings())
        assert client.limiter.min_interval == 0.5
        assert client.max_retries == 3
        assert client.initial_delay == 1.5
        assert client.max_delay == 60
