"""Bounded retry combinator parameterised by error kind.

Each :class:`ErrorKind` gets its own attempt budget, so rate limiting
does not eat into the transient-network budget and vice versa.  Waiting
happens through an injectable ``sleep`` coroutine so that callers (and
tests) control the clock.

Usage::

    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=60.0)
    result = await retry_async(lambda: client.post(url), policy)
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from acmerecon.core.errors import RateLimited, ReconcileError
from acmerecon.core.types import ErrorKind

log = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff curve.

    Attributes
    ----------
    max_attempts:
        Default total attempts (first call included) for any retryable
        kind not listed in ``attempts_by_kind``.
    base_delay:
        Delay before the second attempt, doubled after every failure.
    max_delay:
        Upper bound for a single computed backoff delay.
    jitter:
        Fraction of the delay added as random jitter (0 disables).
    attempts_by_kind:
        Per-kind attempt budgets overriding ``max_attempts``.

    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.1
    attempts_by_kind: dict[ErrorKind, int] = field(default_factory=dict)

    def budget_for(self, kind: ErrorKind) -> int:
        return self.attempts_by_kind.get(kind, self.max_attempts)

    def backoff(self, failures: int) -> float:
        """Exponential delay for the *failures*-th consecutive failure."""
        delay = min(self.base_delay * (2 ** max(failures - 1, 0)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)  # noqa: S311
        return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run *operation* until it succeeds or a budget is exhausted.

    Non-:class:`ReconcileError` exceptions and non-retryable errors
    propagate immediately.  A :class:`RateLimited` error waits for at
    least its ``retry_after`` hint.

    Raises
    ------
    ReconcileError
        The last error once the budget for its kind is spent.

    """
    failures: dict[ErrorKind, int] = {}

    while True:
        try:
            return await operation()
        except ReconcileError as exc:
            if not exc.retryable:
                raise
            count = failures.get(exc.kind, 0) + 1
            failures[exc.kind] = count
            budget = policy.budget_for(exc.kind)
            if count >= budget:
                log.warning(
                    "%s failed after %d attempt(s) (%s): %s",
                    description,
                    count,
                    exc.kind.value,
                    exc.detail,
                )
                raise

            delay = policy.backoff(count)
            if isinstance(exc, RateLimited) and exc.retry_after is not None:
                delay = max(delay, exc.retry_after)

            log.info(
                "%s attempt %d/%d failed (%s), retrying in %.1fs: %s",
                description,
                count,
                budget,
                exc.kind.value,
                delay,
                exc.detail,
            )
            await sleep(delay)
