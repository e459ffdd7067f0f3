"""
Unit tests for the retry policy
"""

import asyncio

import pytest

from core.exceptions import (
    BatchWriteError,
    QueryError,
    SchemaIntrospectionError,
    WarehouseConnectionError,
)
from core.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_async


class TestRetryPolicy:

    def test_default_shape(self):
        assert DEFAULT_RETRY_POLICY.max_attempts == 3
        assert DEFAULT_RETRY_POLICY.base_delay(1) == 1.0
        assert DEFAULT_RETRY_POLICY.base_delay(2) == 2.0
        assert DEFAULT_RETRY_POLICY.base_delay(3) == 4.0

    def test_delay_capped(self):
        assert RetryPolicy().base_delay(10) == 10.0

    def test_jitter_bounds(self):
        policy = RetryPolicy()
        assert policy.delay_for(1, lambda: 0.0) == pytest.approx(0.9)
        assert policy.delay_for(1, lambda: 0.5) == pytest.approx(1.0)
        assert policy.delay_for(1, lambda: 0.999999) == pytest.approx(1.1, rel=1e-4)

    def test_jitter_never_exceeds_cap(self):
        assert RetryPolicy().delay_for(8, lambda: 0.999999) <= 10.0

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(jitter=1.5)

    def test_with_attempts(self):
        policy = RetryPolicy().with_attempts(5)
        assert policy.max_attempts == 5
        assert policy.initial_delay == 1.0


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, sleep_recorder):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise WarehouseConnectionError("unreachable")
            return "ok"

        result = await retry_async(flaky, description="connect", sleep=sleep_recorder, rng=lambda: 0.5)

        assert result == "ok"
        assert len(calls) == 3
        assert sleep_recorder.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self, sleep_recorder):
        calls = []

        async def always_fails():
            calls.append(1)
            raise BatchWriteError(f"rejected {len(calls)}")

        with pytest.raises(BatchWriteError) as exc_info:
            await retry_async(always_fails, description="write", sleep=sleep_recorder, rng=lambda: 0.5)

        assert len(calls) == 3
        assert exc_info.value.message == "rejected 3"
        assert len(sleep_recorder.delays) == 2
        assert sleep_recorder.delays[1] > sleep_recorder.delays[0]

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self, sleep_recorder):
        calls = []

        async def missing_table():
            calls.append(1)
            raise SchemaIntrospectionError("no columns")

        with pytest.raises(SchemaIntrospectionError):
            await retry_async(missing_table, description="introspect", sleep=sleep_recorder)

        assert len(calls) == 1
        assert sleep_recorder.delays == []

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_propagate(self, sleep_recorder):
        async def broken():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await retry_async(broken, description="broken", sleep=sleep_recorder)
        assert sleep_recorder.delays == []

    @pytest.mark.asyncio
    async def test_timeout_becomes_phase_error(self, sleep_recorder):
        calls = []

        async def hangs():
            calls.append(1)
            await asyncio.sleep(10)

        with pytest.raises(QueryError) as exc_info:
            await retry_async(
                hangs,
                RetryPolicy(max_attempts=2),
                description="query start",
                timeout=0.01,
                timeout_error=QueryError,
                sleep=sleep_recorder,
            )

        assert len(calls) == 2
        assert exc_info.value.retryable
        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_custom_attempt_count(self, sleep_recorder):
        calls = []

        async def always_fails():
            calls.append(1)
            raise QueryError("broken stream")

        with pytest.raises(QueryError):
            await retry_async(
                always_fails, RetryPolicy().with_attempts(5),
                description="stream", sleep=sleep_recorder, rng=lambda: 0.5
            )

        assert len(calls) == 5
        assert sleep_recorder.delays == [1.0, 2.0, 4.0, 8.0]
