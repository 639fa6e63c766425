"""Batch Coordinator — bounded worker pool over the dispatcher.

Workers pull indices from one shared queue, so at most ``concurrency``
requests are in flight and a slow request never holds up the others.
Each result lands in the slot of its request; a failed request becomes
an error result in its own slot and never aborts its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, cast

from llm_relay.gateway.dispatcher import Dispatcher
from llm_relay.gateway.types import BaseRequest, BatchResult

logger = logging.getLogger(__name__)


class BatchCoordinator:
    """Runs many requests through one dispatcher with a concurrency cap.

    Usage:
        results = await BatchCoordinator(dispatcher).run(requests, concurrency=3)
        for result in results:
            if result.ok:
                print(result.response.text)
    """

    def __init__(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher

    async def run(
        self,
        requests: list[BaseRequest | dict[str, Any]],
        concurrency: int = 3,
    ) -> list[BatchResult]:
        if concurrency <= 0 or not requests:
            return []

        results: list[BatchResult | None] = [None] * len(requests)
        pending: deque[int] = deque(range(len(requests)))
        worker_count = min(concurrency, len(requests))

        logger.info(
            "Processing batch of %d requests with concurrency %d",
            len(requests),
            worker_count,
        )

        async def _worker() -> None:
            # popleft never suspends, so claiming an index is atomic
            while pending:
                index = pending.popleft()
                try:
                    response = await self.dispatcher.execute(requests[index])
                    results[index] = BatchResult(index=index, response=response)
                except Exception as e:
                    logger.warning("Batch request %d failed: %r", index, e)
                    results[index] = BatchResult(index=index, error=e)

        await asyncio.gather(*(_worker() for _ in range(worker_count)))

        failed = sum(1 for r in results if r is not None and not r.ok)
        logger.info("Batch finished: %d succeeded, %d failed", len(requests) - failed, failed)
        return cast(list[BatchResult], results)
