"""Retry-with-backoff combinator shared by every retry site in the pipeline.

The ingestion path retries at two granularities -- each chunk's
embed+upsert, and the whole ingestion attempt -- with the same shape of
policy: a bounded number of attempts, exponential delay doubling from a
base value up to a cap, and a predicate deciding which exceptions are
worth another try.  Both call sites go through :func:`retry_async`.

Delay before attempt ``n + 1`` (after ``n`` failures)::

    min(base_delay * 2 ** (n - 1), max_delay)

so a policy of ``base_delay=1, max_delay=5`` sleeps 1s, 2s, 4s, 5s, ...
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from src.utils.errors import StructuralError

logger = structlog.get_logger(logger_name=__name__)

_T = TypeVar("_T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff curve for one retry site."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retrying after failed *attempt* (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def is_transient(exc: BaseException) -> bool:
    """Default predicate: everything except structural failures is retryable."""
    return not isinstance(exc, StructuralError)


async def retry_async(
    fn: Callable[[int], Awaitable[_T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] = is_transient,
    on_retry: Callable[[int, float, BaseException], Awaitable[None] | None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> _T:
    """Call ``fn(attempt)`` until it succeeds or the policy is exhausted.

    Parameters
    ----------
    fn:
        Coroutine factory receiving the 1-based attempt number.
    policy:
        Attempt count and backoff curve.
    is_retryable:
        Exceptions for which this returns ``False`` are re-raised
        immediately without consuming further attempts.
    on_retry:
        Optional hook called as ``on_retry(failed_attempt, delay, exc)``
        before sleeping.  May be sync or async.
    sleep:
        Injectable sleep, primarily for tests.

    Returns
    -------
    _T
        Whatever the first successful call returned.

    Raises
    ------
    Exception
        The last exception raised by *fn* once attempts run out, or the
        first non-retryable one.
    """
    attempt = 1
    while True:
        try:
            return await fn(attempt)
        except Exception as exc:
            if attempt >= policy.max_attempts or not is_retryable(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                "retry_scheduled",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=str(exc),
            )
            if on_retry is not None:
                result = on_retry(attempt, delay, exc)
                if asyncio.iscoroutine(result):
                    await result
            if delay > 0:
                await sleep(delay)
            attempt += 1
