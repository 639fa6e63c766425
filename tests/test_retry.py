"""Tests for failure classification and retry with backoff."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from llm_relay.gateway.cancellation import CancellationToken
from llm_relay.gateway.errors import CancellationError, TransportError, ValidationError
from llm_relay.gateway.retry import (
    MAX_RETRY_DELAY_MS,
    RetryAttempt,
    calculate_backoff,
    call_with_retry,
    is_fatal,
)


class _Flaky:
    """Fails ``failures`` times with ``error`` then returns "done"."""

    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error
        return "done"


class TestClassification:
    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422, 499])
    def test_client_errors_are_fatal(self, status):
        assert is_fatal(TransportError("x", status=status)) is True

    @pytest.mark.parametrize("status", [0, 429, 500, 502, 503])
    def test_other_statuses_are_retryable(self, status):
        assert is_fatal(TransportError("x", status=status)) is False

    def test_plain_exceptions_are_retryable(self):
        assert is_fatal(ConnectionError("reset")) is False

    def test_validation_and_cancellation_are_fatal(self):
        assert is_fatal(ValidationError("bad")) is True
        assert is_fatal(CancellationError("stop")) is True


class TestBackoff:
    def test_delay_within_half_jitter_bounds(self):
        for attempt in range(5):
            delay = calculate_backoff(attempt, base_delay_ms=100)
            full = 100 * 2**attempt
            assert full * 0.5 <= delay <= full

    def test_delay_capped(self):
        assert calculate_backoff(30, base_delay_ms=1000) == MAX_RETRY_DELAY_MS

    def test_uses_uniform_jitter(self):
        with patch("llm_relay.gateway.retry.random.uniform", return_value=0.75) as mock_uniform:
            assert calculate_backoff(2, base_delay_ms=1000) == 3000
        mock_uniform.assert_called_once_with(0.5, 1.0)


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_max_retries_failures(self, no_sleep):
        op = _Flaky(failures=3, error=TransportError("boom", status=500))
        result = await call_with_retry(op, max_retries=3, base_delay_ms=1, sleep=no_sleep)
        assert result == "done"
        assert op.attempts == 4

    @pytest.mark.asyncio
    async def test_fatal_status_attempted_once(self, no_sleep):
        op = _Flaky(failures=10, error=TransportError("missing", status=404))
        with pytest.raises(TransportError) as exc_info:
            await call_with_retry(op, max_retries=5, base_delay_ms=1, sleep=no_sleep)
        assert exc_info.value.status == 404
        assert op.attempts == 1

    @pytest.mark.asyncio
    async def test_429_is_retried(self, no_sleep):
        op = _Flaky(failures=1, error=TransportError("slow down", status=429))
        assert await call_with_retry(op, max_retries=1, base_delay_ms=1, sleep=no_sleep) == "done"
        assert op.attempts == 2

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error_unchanged(self, no_sleep):
        error = TransportError("down", status=503)
        op = _Flaky(failures=10, error=error)
        with pytest.raises(TransportError) as exc_info:
            await call_with_retry(op, max_retries=2, base_delay_ms=1, sleep=no_sleep)
        assert exc_info.value is error
        assert op.attempts == 3

    @pytest.mark.asyncio
    async def test_zero_retries_means_single_attempt(self, no_sleep):
        op = _Flaky(failures=1, error=TransportError("down", status=500))
        with pytest.raises(TransportError):
            await call_with_retry(op, max_retries=0, base_delay_ms=1, sleep=no_sleep)
        assert op.attempts == 1

    @pytest.mark.asyncio
    async def test_sleeps_follow_backoff(self, fake_clock):
        op = _Flaky(failures=2, error=TransportError("down", status=500))
        with patch("llm_relay.gateway.retry.random.uniform", return_value=1.0):
            await call_with_retry(op, max_retries=2, base_delay_ms=100, sleep=fake_clock.sleep)
        assert fake_clock.sleeps == [pytest.approx(0.1), pytest.approx(0.2)]

    @pytest.mark.asyncio
    async def test_on_retry_observer(self, no_sleep):
        seen: list[RetryAttempt] = []
        op = _Flaky(failures=2, error=TransportError("down", status=502))
        await call_with_retry(op, max_retries=2, base_delay_ms=1, sleep=no_sleep, on_retry=seen.append)
        assert [a.index for a in seen] == [0, 1]
        assert all(isinstance(a.error, TransportError) for a in seen)

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        token = CancellationToken()
        op = _Flaky(failures=5, error=TransportError("down", status=500))

        task = asyncio.create_task(call_with_retry(op, max_retries=5, base_delay_ms=10_000, token=token))
        await asyncio.sleep(0.01)
        token.cancel()
        with pytest.raises(CancellationError):
            await asyncio.wait_for(task, timeout=1.0)
        assert op.attempts == 1
