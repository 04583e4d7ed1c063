"""
Retry Service Tests
"""

import asyncio

import pytest

from services.retry_service import MAX_ATTEMPTS_CAP, RetryService
from services.settlement_client import PermanentSettlementError, TransientSettlementError


class Flaky:
    def __init__(self, failures, error=None, result="ok"):
        self.failures = failures
        self.error = error or TransientSettlementError("blip")
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestRetryService:

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        """TEST 1: two failures then success"""
        func = Flaky(failures=2)
        result = await RetryService.retry_async(func, max_attempts=3, initial_delay=0, jitter=False,
                                                exceptions=(TransientSettlementError,))
        assert result == "ok" and func.calls == 3, f"❌ Expected success on attempt 3, got {func.calls}"

    @pytest.mark.asyncio
    async def test_attempts_are_capped(self):
        """TEST 2: max_attempts above the cap is clamped"""
        func = Flaky(failures=100)
        with pytest.raises(TransientSettlementError):
            await RetryService.retry_async(func, max_attempts=50, initial_delay=0, jitter=False,
                                           exceptions=(TransientSettlementError,))
        assert func.calls == MAX_ATTEMPTS_CAP, f"❌ Expected {MAX_ATTEMPTS_CAP} attempts, got {func.calls}"

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self):
        """TEST 3: errors outside the retry set propagate immediately"""
        func = Flaky(failures=1, error=PermanentSettlementError("rejected"))
        with pytest.raises(PermanentSettlementError):
            await RetryService.retry_async(func, max_attempts=3, initial_delay=0,
                                           exceptions=(TransientSettlementError,))
        assert func.calls == 1, "❌ Permanent failure must not be retried"

    @pytest.mark.asyncio
    async def test_attempt_timeout_counts_as_failure(self):
        """TEST 4: a slow attempt times out and is retried"""
        calls = []

        async def slow_then_fast():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return "done"

        result = await RetryService.retry_async(
            slow_then_fast, max_attempts=2, initial_delay=0, jitter=False,
            exceptions=(asyncio.TimeoutError,), attempt_timeout=0.05,
        )
        assert result == "done" and len(calls) == 2, "❌ Timed-out attempt should be retried"
