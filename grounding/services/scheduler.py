"""
Bounded concurrency for per-candidate pipelines.

Tasks are created in input order and gated by a semaphore, so admission is
FIFO and at most ``limit`` workers are in flight. Results come back in input
order whatever the completion order.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

import structlog

from grounding.utils.async_utils import Deadline
from grounding.utils.error_handling import PipelineTimeoutError, log_exception

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class BoundedScheduler:
    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.active = 0
        self.peak_concurrency = 0

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        *,
        deadline: Deadline,
        on_timeout: Callable[[T], R],
        on_error: Optional[Callable[[T, BaseException], R]] = None,
    ) -> List[R]:
        """Run ``worker`` over *items* and return one result per item.

        ``on_timeout`` supplies the result for items cancelled by, or never
        admitted before, the deadline. ``on_error`` converts any other
        exception escaping a worker.
        """
        if not items:
            return []
        sem = asyncio.Semaphore(self.limit)

        async def _run_one(item: T) -> R:
            async with sem:
                if deadline.expired:
                    return on_timeout(item)
                self.active += 1
                self.peak_concurrency = max(self.peak_concurrency, self.active)
                try:
                    return await worker(item)
                except PipelineTimeoutError:
                    return on_timeout(item)
                except Exception as exc:
                    if on_error is None:
                        raise
                    log_exception("Worker failed", exc)
                    return on_error(item, exc)
                finally:
                    self.active -= 1

        tasks = [asyncio.create_task(_run_one(item)) for item in items]
        try:
            _done, pending = await asyncio.wait(tasks, timeout=deadline.remaining())
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            raise
        if pending:
            logger.info("Deadline reached; cancelling in-flight work", pending=len(pending))
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        results: List[R] = []
        for item, task in zip(items, tasks):
            if task.cancelled():
                results.append(on_timeout(item))
            else:
                # Re-raises a worker error only when no on_error hook was given
                results.append(task.result())
        return results
