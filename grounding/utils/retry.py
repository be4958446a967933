"""
Retry and backoff for per-candidate validation stages.

Wraps tenacity's ``AsyncRetrying`` so that every attempt and every backoff
sleep is bounded by the run's :class:`~grounding.utils.async_utils.Deadline`,
and every re-attempt is charged to a per-candidate :class:`RetryBudget`.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
)

from .async_utils import Deadline
from .error_handling import is_transient

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    ``max_attempts`` counts the first try, so ``max_attempts=4`` allows three
    retries.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be >= 0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")

    @classmethod
    def from_retry_count(
        cls, retry_count: int, base_delay: float, max_delay: float = 30.0
    ) -> "RetryPolicy":
        return cls(max_attempts=retry_count + 1, base_delay=base_delay, max_delay=max_delay)


class RetryBudget:
    """Re-attempt allowance shared by all stages of one candidate."""

    def __init__(self, limit: int) -> None:
        self.limit = max(0, int(limit))
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def consume(self) -> bool:
        if self.exhausted:
            return False
        self.used += 1
        return True


class RetryRecorder(Protocol):
    def record_retry(self) -> None: ...


def calculate_backoff(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Delay before re-attempt number ``attempt`` (1-based count of failures so far).

    ``min(max_delay, base_delay * 2**(attempt-1))`` scaled by a uniform
    factor in ``[1 - jitter, 1 + jitter]``.
    """
    delay = min(policy.max_delay, policy.base_delay * (2 ** max(0, attempt - 1)))
    if policy.jitter:
        delay *= 1.0 + rand(-policy.jitter, policy.jitter)
    return max(0.0, delay)


class RetryExecutor:
    """Runs a fallible async operation under a :class:`RetryPolicy`.

    Only transient errors are retried. Rejections and unknown errors are
    re-raised on the first occurrence without touching the budget; deadline
    expiry surfaces as ``PipelineTimeoutError``.
    """

    def __init__(self, rand: Callable[[float, float], float] = random.uniform) -> None:
        self._rand = rand

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        policy: RetryPolicy,
        *,
        deadline: Deadline,
        budget: Optional[RetryBudget] = None,
        metrics: Optional[RetryRecorder] = None,
        url: Optional[str] = None,
        stage: str = "operation",
    ) -> T:
        """Call ``operation(attempt)`` until it succeeds or retrying stops.

        ``attempt`` is 1 for the first call. The last error is re-raised
        unchanged when attempts or the budget run out.
        """

        def _wait(retry_state: RetryCallState) -> float:
            return calculate_backoff(retry_state.attempt_number, policy, self._rand)

        def _budget_exhausted(retry_state: RetryCallState) -> bool:
            return budget is not None and budget.exhausted

        async def _sleep(seconds: float) -> None:
            await deadline.sleep(seconds, url=url)

        def _before_sleep(retry_state: RetryCallState) -> None:
            if budget is not None:
                budget.consume()
            if metrics is not None:
                metrics.record_retry()
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.info(
                "Retrying after transient failure",
                stage=stage,
                url=url,
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
                delay=round(retry_state.upcoming_sleep, 3),
                error=str(exc) if exc else None,
                reason=getattr(exc, "reason", None),
            )

        retrying = AsyncRetrying(
            stop=stop_any(stop_after_attempt(policy.max_attempts), _budget_exhausted),
            wait=_wait,
            retry=retry_if_exception(is_transient),
            sleep=_sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )

        attempts = 0

        async def _attempt() -> Any:
            nonlocal attempts
            attempts += 1
            deadline.check(url)
            return await deadline.run(operation(attempts), url=url)

        try:
            return await retrying(_attempt)
        except Exception as exc:
            if is_transient(exc):
                logger.warning(
                    "Max retries exhausted",
                    stage=stage,
                    url=url,
                    max_attempts=policy.max_attempts,
                    budget_remaining=budget.remaining if budget is not None else None,
                    error=str(exc),
                )
            raise
