"""Deadline helper shared by the scheduler and the retry executor.

A single :class:`Deadline` is created per ``run_pipeline`` call and passed to
every in-flight operation; it is the run's cancellation signal.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .error_handling import PipelineTimeoutError, TransientError

T = TypeVar("T")


class Deadline:
    """Monotonic request deadline. ``timeout=None`` never expires."""

    def __init__(
        self,
        timeout: Optional[float],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self.timeout = timeout
        self.started_at = clock()
        self.expires_at = None if timeout is None else self.started_at + max(0.0, timeout)

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self._clock() >= self.expires_at

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def check(self, url: Optional[str] = None) -> None:
        if self.expired:
            raise PipelineTimeoutError(url=url)

    async def run(self, awaitable: Awaitable[T], *, url: Optional[str] = None) -> T:
        """Await *awaitable* bounded by the remaining time.

        A timeout caused by the deadline surfaces as PipelineTimeoutError;
        a timeout raised by the operation itself becomes a TransientError.
        """

        async def _guarded() -> T:
            try:
                return await awaitable
            except asyncio.TimeoutError as exc:
                raise TransientError("operation timed out", reason="timeout", url=url) from exc

        remaining = self.remaining()
        if remaining is None:
            return await _guarded()
        if remaining <= 0:
            # Close the coroutine so it is not reported as never awaited
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise PipelineTimeoutError(url=url)
        try:
            return await asyncio.wait_for(_guarded(), timeout=remaining)
        except asyncio.TimeoutError:
            raise PipelineTimeoutError(url=url) from None

    async def sleep(self, seconds: float, *, url: Optional[str] = None) -> None:
        """Sleep for *seconds* unless the deadline elapses first."""
        self.check(url)
        remaining = self.remaining()
        if remaining is not None and seconds >= remaining:
            await asyncio.sleep(remaining)
            raise PipelineTimeoutError(url=url)
        await asyncio.sleep(max(0.0, seconds))
        self.check(url)
