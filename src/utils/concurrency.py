"""Shared concurrency primitives for batched calls to rate-limited services.

**batched_gather** is the fan-out used for chunk storage: split the work
list into fixed-size batches, run each batch concurrently, pause between
batches, and report progress after every batch.  Results come back in
input order even though completion order inside a batch is unordered.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

import structlog

_T = TypeVar("_T")
_R = TypeVar("_R")

logger = structlog.get_logger(logger_name=__name__)


async def batched_gather(
    items: Sequence[_T],
    worker: Callable[[_T], Awaitable[_R]],
    batch_size: int,
    delay: float = 0.0,
    on_batch: Callable[[int, int], Awaitable[None] | None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[_R | BaseException]:
    """Apply *worker* to *items* batch by batch.

    Parameters
    ----------
    items:
        Work items, processed in order of their batches.
    worker:
        Coroutine function called once per item.
    batch_size:
        Number of items run concurrently per batch.
    delay:
        Seconds to sleep between consecutive batches (not after the last).
    on_batch:
        Optional hook ``on_batch(done, total)`` invoked after each batch.
    sleep:
        Injectable sleep used for the inter-batch pause.

    Returns
    -------
    list[_R | BaseException]
        One entry per item, positionally aligned with *items*.  A worker
        that raised contributes its exception instead of a result.
    """
    if batch_size < 1:
        msg = f"batch_size must be >= 1, got {batch_size}"
        raise ValueError(msg)

    results: list[_R | BaseException] = []
    total = len(items)
    for start in range(0, total, batch_size):
        batch = items[start : start + batch_size]
        batch_results = await asyncio.gather(
            *(worker(item) for item in batch),
            return_exceptions=True,
        )
        results.extend(batch_results)

        done = start + len(batch)
        logger.debug("batch_complete", done=done, total=total)
        if on_batch is not None:
            hook_result = on_batch(done, total)
            if asyncio.iscoroutine(hook_result):
                await hook_result

        if delay > 0 and done < total:
            await sleep(delay)

    return results
