"""Tests for homehub.engine.resilience.

Covers: RetryPolicy, retry_call, supervised_task.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from homehub.engine.errors import PublishError
from homehub.engine.resilience import NO_RETRY, RetryPolicy, retry_call, supervised_task


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------

class TestRetryPolicy:
    def test_defaults(self):
        p = RetryPolicy()
        assert p.max_retries == 2
        assert p.base_delay == 0.5
        assert p.max_delay == 10.0
        assert p.backoff_factor == 2.0
        assert p.jitter == 0.0

    def test_delay_for(self):
        p = RetryPolicy(base_delay=1.0, backoff_factor=2.0, max_delay=10.0)
        assert p.delay_for(0) == 1.0
        assert p.delay_for(1) == 2.0
        assert p.delay_for(2) == 4.0
        assert p.delay_for(3) == 8.0
        assert p.delay_for(4) == 10.0  # capped

    def test_jitter_stays_in_range(self):
        p = RetryPolicy(base_delay=2.0, max_delay=2.0, jitter=0.5)
        for _ in range(100):
            assert 1.0 <= p.delay_for(0) <= 2.0

    def test_jitter_uses_random(self):
        p = RetryPolicy(base_delay=2.0, jitter=0.5)
        with patch("homehub.engine.resilience.random.random", return_value=1.0):
            assert p.delay_for(0) == 1.0

    def test_allows(self):
        p = RetryPolicy(max_retries=2)
        assert p.allows(0)
        assert p.allows(1)
        assert not p.allows(2)

    def test_no_retry(self):
        assert not NO_RETRY.allows(0)

    def test_negative_retries_forever(self):
        p = RetryPolicy(max_retries=-1)
        assert p.allows(0)
        assert p.allows(10_000)


# ---------------------------------------------------------------------------
# retry_call
# ---------------------------------------------------------------------------

class TestRetryCall:
    FAST = RetryPolicy(max_retries=2, base_delay=0.0)

    @pytest.mark.asyncio
    async def test_success_on_first_try(self):
        fn = AsyncMock(return_value="ok")
        assert await retry_call(fn, policy=self.FAST) == "ok"
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_success_after_retry(self):
        fn = AsyncMock(side_effect=[PublishError("a"), PublishError("b"), "ok"])
        assert await retry_call(fn, policy=self.FAST) == "ok"
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_last_error_reraised(self):
        fn = AsyncMock(side_effect=[PublishError("a"), PublishError("b"), PublishError("c")])
        with pytest.raises(PublishError, match="c"):
            await retry_call(fn, policy=self.FAST)
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_unlisted_errors_propagate_immediately(self):
        fn = AsyncMock(side_effect=KeyError("nope"))
        with pytest.raises(KeyError):
            await retry_call(fn, policy=self.FAST, retry_on=(PublishError,))
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_passes_args_through(self):
        fn = AsyncMock(return_value=None)
        await retry_call(fn, "topic", b"body", policy=self.FAST, extra=1)
        fn.assert_awaited_once_with("topic", b"body", extra=1)

    @pytest.mark.asyncio
    async def test_no_retries_by_default(self):
        fn = AsyncMock(side_effect=PublishError("down"))
        with pytest.raises(PublishError):
            await retry_call(fn)
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_sleeps_between_attempts(self):
        fn = AsyncMock(side_effect=[PublishError("a"), PublishError("b"), "ok"])
        policy = RetryPolicy(max_retries=2, base_delay=0.5, backoff_factor=2.0)
        with patch("homehub.engine.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            await retry_call(fn, policy=policy)
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]


# ---------------------------------------------------------------------------
# supervised_task
# ---------------------------------------------------------------------------

class TestSupervisedTask:
    @pytest.mark.asyncio
    async def test_normal_completion(self):
        async def good():
            return 42

        task = supervised_task(good(), name="test-good")
        assert await task == 42
        assert task.get_name() == "test-good"

    @pytest.mark.asyncio
    async def test_exception_logged(self):
        async def bad():
            raise RuntimeError("oops")

        with patch("homehub.engine.resilience.logger") as log:
            task = supervised_task(bad(), name="test-bad")
            with pytest.raises(RuntimeError):
                await task
            await asyncio.sleep(0)
        log.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancelled_no_error(self):
        async def slow():
            await asyncio.sleep(100)

        with patch("homehub.engine.resilience.logger") as log:
            task = supervised_task(slow(), name="test-cancel")
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await asyncio.sleep(0)
        log.error.assert_not_called()
