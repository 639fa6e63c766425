"""Retry with exponential backoff and jitter.

Failure classification:
  - status in [400, 500) except 429 → fatal, raised immediately
  - ValidationError / CancellationError → fatal
  - anything else (5xx, 429, network errors, timeouts) → retryable

Backoff strategy:
  delay = min(base * 2^attempt * uniform(0.5, 1.0), 30s)

After max_retries retries the last error propagates unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from llm_relay.core.metrics import RETRY_ATTEMPTS
from llm_relay.gateway.cancellation import CancellationToken
from llm_relay.gateway.errors import CancellationError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_DELAY_MS = 30_000


@dataclass
class RetryAttempt:
    """A failed attempt that is about to be retried."""

    index: int
    delay_ms: float
    error: Exception


def is_fatal(error: Exception) -> bool:
    """Return True for errors that must not be retried."""
    if isinstance(error, (ValidationError, CancellationError)):
        return True
    status = getattr(error, "status", None)
    if isinstance(status, int) and 400 <= status < 500 and status != 429:
        return True
    return False


def calculate_backoff(
    attempt: int,
    base_delay_ms: float = 1000.0,
    max_delay_ms: float = MAX_RETRY_DELAY_MS,
) -> float:
    """Calculate exponential backoff with half-jitter, in milliseconds.

    Formula: min(base * 2^attempt * uniform(0.5, 1.0), max_delay)
    """
    exponential = base_delay_ms * (2**attempt)
    return min(exponential * random.uniform(0.5, 1.0), max_delay_ms)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    base_delay_ms: float = 1000.0,
    *,
    token: CancellationToken | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Callable[[RetryAttempt], None] | None = None,
) -> T:
    """Run ``operation`` with up to ``max_retries`` retries.

    Total attempts are at most max_retries + 1. Each retry delay observes
    ``token`` so a cancelled dispatch does not sit out its backoff.
    """
    max_retries = max(0, max_retries)

    for attempt in range(max_retries + 1):
        if token is not None:
            token.raise_if_cancelled()
        try:
            return await operation()
        except Exception as e:
            if is_fatal(e) or attempt >= max_retries:
                raise

            delay_ms = calculate_backoff(attempt, base_delay_ms)
            RETRY_ATTEMPTS.inc()
            logger.debug(
                "Request failed (%s), retrying in %dms (attempt %d/%d)",
                e,
                delay_ms,
                attempt + 1,
                max_retries,
            )
            if on_retry is not None:
                on_retry(RetryAttempt(index=attempt, delay_ms=delay_ms, error=e))

            if token is not None:
                await token.guard(sleep(delay_ms / 1000))
            else:
                await sleep(delay_ms / 1000)

    # Unreachable: the last attempt either returns or raises
    raise AssertionError("retry loop exhausted")
