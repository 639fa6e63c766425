"""Cooperative cancellation for in-flight dispatches.

Every dispatch owns a CancellationToken registered with the client's
CancellationRegistry. ``cancel_all()`` fires every registered token;
dispatches observe their token at each suspension point (throttle
wait, retry delay, transport I/O) through ``token.guard(...)`` and
abort with CancellationError.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TypeVar

from llm_relay.gateway.errors import CancellationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(f"Operation {self.reason}")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins, the pending operation is cancelled and
        CancellationError is raised without waiting for it to finish
        its current wait or response.
        """
        if self._event.is_set():
            # Close a never-started coroutine so it is not reported as unawaited
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done() and not self._event.is_set():
            waiter.cancel()
            return task.result()

        waiter.cancel()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise CancellationError(f"Operation {self.reason}")


@dataclass
class InFlightHandle:
    """Registration of one running dispatch."""

    dispatch_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    token: CancellationToken = field(default_factory=CancellationToken)


class CancellationRegistry:
    """Tracks in-flight dispatches so they can be cancelled together.

    Usage:
        registry = CancellationRegistry()

        with registry.track() as handle:
            await handle.token.guard(transport.send(...))

        # From anywhere else:
        registry.cancel_all()
    """

    def __init__(self) -> None:
        self._handles: dict[str, InFlightHandle] = {}

    def register(self, dispatch_id: str | None = None) -> InFlightHandle:
        handle = InFlightHandle(dispatch_id=dispatch_id) if dispatch_id else InFlightHandle()
        self._handles[handle.dispatch_id] = handle
        return handle

    def release(self, handle: InFlightHandle) -> bool:
        """Deregister a handle. Returns False if it was already released."""
        return self._handles.pop(handle.dispatch_id, None) is not None

    @contextmanager
    def track(self, dispatch_id: str | None = None) -> Iterator[InFlightHandle]:
        """Register a handle for the duration of the block, releasing it on any exit."""
        handle = self.register(dispatch_id)
        try:
            yield handle
        finally:
            self.release(handle)

    def cancel_all(self, reason: str = "cancelled") -> int:
        """Signal every registered token. Returns how many were signalled.

        Handles stay registered until their dispatch unwinds and releases them.
        """
        handles = list(self._handles.values())
        for handle in handles:
            handle.token.cancel(reason)
        if handles:
            logger.info("Cancelled %d in-flight dispatches", len(handles))
        return len(handles)

    @property
    def active(self) -> list[str]:
        return list(self._handles)

    def __len__(self) -> int:
        return len(self._handles)
