"""Tests for RetryPolicy: backoff schedule, retryability, exhaustion and deadlines."""

import time
from unittest.mock import AsyncMock, patch

import pytest

from atelier.utils import retry
from atelier.utils.retry import NonRetryableError, RetryExhaustedError, RetryPolicy


class _Flaky(Exception):
    pass


class _Fatal(Exception):
    retryable = False


class TestBackoffSchedule:
    """Tests for delay_for()."""

    def test_default_schedule(self):
        """Defaults give 1s, 2s, 4s."""
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_max_delay_caps(self):
        """max_delay bounds the exponential growth."""
        policy = RetryPolicy(base_delay=1.0, max_delay=3.0)
        assert policy.delay_for(5) == 3.0

    @pytest.mark.parametrize(("kwargs"), [{"max_attempts": 0}, {"base_delay": -1}])
    def test_rejects_bad_config(self, kwargs):
        """Zero attempts or negative delays are configuration errors."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRun:
    """Tests for RetryPolicy.run()."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        """A succeeding operation runs once and returns its value."""
        op = AsyncMock(return_value="ok")
        assert await RetryPolicy(base_delay=0).run(op) == "ok"
        op.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        """Transient failures are retried until success."""
        op = AsyncMock(side_effect=[_Flaky("1"), _Flaky("2"), "ok"])
        attempts: list[int] = []

        result = await RetryPolicy(base_delay=0).run(op, on_attempt=attempts.append)

        assert result == "ok"
        assert attempts == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_sleeps_follow_schedule(self):
        """Backoff sleeps are 1s then 2s between three attempts."""
        op = AsyncMock(side_effect=[_Flaky(), _Flaky(), _Flaky()])
        with patch.object(retry.asyncio, "sleep", new=AsyncMock()) as mock_sleep:
            with pytest.raises(RetryExhaustedError):
                await RetryPolicy().run(op)
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_carries_last_error(self):
        """After max_attempts the last error is attached."""
        last = _Flaky("third")
        op = AsyncMock(side_effect=[_Flaky("first"), _Flaky("second"), last])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await RetryPolicy(base_delay=0).run(op)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is last
        assert not exc_info.value.deadline_hit

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [NonRetryableError("no"), _Fatal("no")])
    async def test_non_retryable_propagates_immediately(self, error):
        """NonRetryableError (or retryable=False) stops after one attempt, unchanged."""
        op = AsyncMock(side_effect=error)
        with pytest.raises(type(error)):
            await RetryPolicy(base_delay=0).run(op)
        op.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_on_filters_exceptions(self):
        """Exceptions outside retry_on escape without retrying."""
        op = AsyncMock(side_effect=KeyError("bug"))
        with pytest.raises(KeyError):
            await RetryPolicy(base_delay=0).run(op, retry_on=(_Flaky,))
        op.assert_awaited_once()


class TestDeadline:
    """Tests for the optional absolute deadline."""

    @pytest.mark.asyncio
    async def test_expired_deadline_skips_first_attempt(self):
        """A deadline already in the past means zero attempts."""
        op = AsyncMock(return_value="ok")
        with pytest.raises(RetryExhaustedError) as exc_info:
            await RetryPolicy().run(op, deadline=time.monotonic() - 1)
        assert exc_info.value.attempts == 0
        assert exc_info.value.deadline_hit
        op.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backoff_crossing_deadline_is_not_taken(self):
        """If the next sleep would cross the deadline, give up instead of sleeping."""
        op = AsyncMock(side_effect=_Flaky("slow"))
        with patch.object(retry.asyncio, "sleep", new=AsyncMock()) as mock_sleep:
            with pytest.raises(RetryExhaustedError) as exc_info:
                await RetryPolicy(base_delay=10).run(op, deadline=time.monotonic() + 5)
        assert exc_info.value.attempts == 1
        assert exc_info.value.deadline_hit
        mock_sleep.assert_not_awaited()
