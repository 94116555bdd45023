"""Tests for the retry policy."""

import pytest

from hackprogress.config import EngineSettings
from hackprogress.engine.errors import RemoteSyncError
from hackprogress.engine.retry import RetryPolicy


class Flaky:
    def __init__(self, failures: int, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("boom")
        return value


class TestRetryPolicy:
    """Test bounded retries."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, recording_sleep):
        policy = RetryPolicy(sleep=recording_sleep)
        fn = Flaky(0)
        assert await policy.run("op", fn, 42) == 42
        assert fn.calls == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_one_retry_after_fixed_delay(self, recording_sleep):
        policy = RetryPolicy(max_attempts=2, delay_seconds=1.0, sleep=recording_sleep)
        fn = Flaky(1)
        assert await policy.run("op", fn, "ok") == "ok"
        assert fn.calls == 2
        assert recording_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_remote_sync_error(self, recording_sleep):
        policy = RetryPolicy(max_attempts=2, delay_seconds=0.5, sleep=recording_sleep)
        fn = Flaky(5, error=TimeoutError)
        with pytest.raises(RemoteSyncError) as exc_info:
            await policy.run("upsert_completion", fn, 1)
        assert exc_info.value.operation == "upsert_completion"
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.__cause__, TimeoutError)
        assert fn.calls == 2
        assert recording_sleep.delays == [0.5]

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates(self, recording_sleep):
        policy = RetryPolicy(sleep=recording_sleep)
        fn = Flaky(1, error=ValueError)
        with pytest.raises(ValueError):
            await policy.run("op", fn, 1)
        assert fn.calls == 1

    def test_backoff_delays(self):
        policy = RetryPolicy(max_attempts=4, delay_seconds=1.0, backoff=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_from_settings(self, recording_sleep):
        settings = EngineSettings(retry_max_attempts=3, retry_delay_seconds=0.25, retry_backoff=1.5)
        policy = RetryPolicy.from_settings(settings, sleep=recording_sleep)
        assert policy.max_attempts == 3
        assert policy.delay_seconds == 0.25
        assert policy.backoff == 1.5
        assert policy.sleep is recording_sleep
