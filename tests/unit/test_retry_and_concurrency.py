"""Unit tests for the retry combinator and batched concurrency helpers."""

from __future__ import annotations

import asyncio

import pytest

from src.utils.concurrency import batched_gather
from src.utils.errors import EmptyContentError, IndexServiceError
from src.utils.retry import RetryPolicy, is_transient, retry_async


class TestRetryPolicy:
    def test_delay_doubles_up_to_cap(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_structural_errors_are_not_transient(self) -> None:
        assert is_transient(IndexServiceError()) is True
        assert is_transient(EmptyContentError()) is False


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self) -> None:
        calls: list[int] = []
        sleeps: list[float] = []

        async def _fn(attempt: int) -> str:
            calls.append(attempt)
            if attempt < 3:
                raise IndexServiceError()
            return "ok"

        async def _sleep(delay: float) -> None:
            sleeps.append(delay)

        result = await retry_async(_fn, RetryPolicy(3, 1.0, 5.0), sleep=_sleep)
        assert result == "ok"
        assert calls == [1, 2, 3]
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        async def _fn(attempt: int) -> None:
            raise IndexServiceError(message=f"fail {attempt}")

        async def _sleep(delay: float) -> None:
            return None

        with pytest.raises(IndexServiceError, match="fail 3"):
            await retry_async(_fn, RetryPolicy(3, 1.0, 5.0), sleep=_sleep)

    @pytest.mark.asyncio
    async def test_structural_error_is_not_retried(self) -> None:
        calls = 0

        async def _fn(attempt: int) -> None:
            nonlocal calls
            calls += 1
            raise EmptyContentError()

        with pytest.raises(EmptyContentError):
            await retry_async(_fn, RetryPolicy(3, 0.0, 0.0))
        assert calls == 1

    @pytest.mark.asyncio
    async def test_on_retry_hook_receives_attempt_and_delay(self) -> None:
        seen: list[tuple[int, float]] = []

        async def _fn(attempt: int) -> int:
            if attempt == 1:
                raise IndexServiceError()
            return attempt

        def _hook(attempt: int, delay: float, exc: BaseException) -> None:
            seen.append((attempt, delay))

        async def _sleep(delay: float) -> None:
            return None

        assert await retry_async(_fn, RetryPolicy(3, 1.0, 30.0), on_retry=_hook, sleep=_sleep) == 2
        assert seen == [(1, 1.0)]


class TestBatchedGather:
    @pytest.mark.asyncio
    async def test_results_align_with_input_and_keep_exceptions(self) -> None:
        async def _worker(n: int) -> int:
            if n == 3:
                raise ValueError("three")
            return n * 10

        results = await batched_gather([1, 2, 3, 4, 5], _worker, batch_size=2)
        assert results[:2] == [10, 20]
        assert isinstance(results[2], ValueError)
        assert results[3:] == [40, 50]

    @pytest.mark.asyncio
    async def test_progress_and_delay_between_batches_only(self) -> None:
        progress: list[tuple[int, int]] = []
        sleeps: list[float] = []

        async def _worker(n: int) -> int:
            return n

        async def _on_batch(done: int, total: int) -> None:
            progress.append((done, total))

        async def _sleep(delay: float) -> None:
            sleeps.append(delay)

        await batched_gather(
            list(range(5)), _worker, batch_size=2, delay=1.0, on_batch=_on_batch, sleep=_sleep
        )
        assert progress == [(2, 5), (4, 5), (5, 5)]
        assert sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_concurrency_bounded_by_batch_size(self) -> None:
        active = 0
        peak = 0

        async def _worker(n: int) -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            active -= 1
            return n

        await batched_gather(list(range(12)), _worker, batch_size=5)
        assert peak <= 5

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self) -> None:
        async def _worker(n: int) -> int:
            return n

        with pytest.raises(ValueError):
            await batched_gather([1], _worker, batch_size=0)

