"""Retry and task-supervision helpers.

Provides:
- ``RetryPolicy``    : exponential backoff with optional jitter
- ``retry_call``     : retry an async callable, re-raising the last error
- ``supervised_task``: create_task wrapper with error logging
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Exponential backoff schedule shared by publish retries and reconnects.

    Attempt ``n`` (0-based) waits ``base_delay * backoff_factor ** n``
    seconds, capped at ``max_delay``.  ``jitter`` shaves a random fraction
    off each wait: with ``jitter=0.5`` a 2s wait lands anywhere in [1s, 2s].

    ``max_retries`` counts retries after the first try, so 0 means a single
    attempt.  A negative value never gives up.
    """

    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to sleep before retry number *attempt*."""
        d = min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
        if self.jitter > 0:
            d -= d * self.jitter * random.random()
        return d

    def allows(self, attempt: int) -> bool:
        """Return True if retry *attempt* (0-based) is within budget."""
        return self.max_retries < 0 or attempt < self.max_retries


NO_RETRY = RetryPolicy(max_retries=0)


async def retry_call(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy = NO_RETRY,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "call",
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)`` with exponential-backoff retries.

    Only exceptions in *retry_on* are retried; the last one is re-raised once
    the policy is exhausted.  Anything else propagates immediately.
    """
    attempt = 0
    while True:
        try:
            result = await fn(*args, **kwargs)
        except retry_on as exc:
            if not policy.allows(attempt):
                logger.warning(
                    "[Resilience] {} failed after {} attempt(s): {}",
                    label, attempt + 1, exc,
                )
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                "[Resilience] {} attempt {} raised {!r}, retrying in {:.2f}s",
                label, attempt + 1, exc, delay,
            )
            attempt += 1
            await asyncio.sleep(delay)
            continue
        if attempt > 0:
            logger.info("[Resilience] {} succeeded on attempt {}", label, attempt + 1)
        return result


# ---------------------------------------------------------------------------
# Supervised task
# ---------------------------------------------------------------------------

def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled() or task.exception() is None:
        return
    logger.error(
        "[Resilience] background task {!r} crashed: {!r}",
        task.get_name(), task.exception(),
    )


def supervised_task(coro: Awaitable[Any], *, name: str = "") -> asyncio.Task:
    """Start *coro* as a task whose crash is logged rather than lost.

    Cancellation is not logged.
    """
    task = asyncio.create_task(coro, name=name or None)
    task.add_done_callback(_log_task_failure)
    return task
