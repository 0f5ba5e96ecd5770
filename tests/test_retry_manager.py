"""
Unit tests for RetryManager.

Tests cover:
- Success, retry-then-success, exhaustion
- Error classification (transport, non-retryable, pattern match)
- Consistency errors and the reconcile hook
- Backoff delays and config overrides
- Event emission and per-instance serialization of mutating calls
"""

import asyncio

import pytest

from lpbot.core.errors import (
    AmbiguousSubmissionError,
    NonRetryableExecutionError,
    RetryableTransportError,
    RetryExhaustedError,
)
from lpbot.execution.retry_manager import (
    OperationClass,
    RetryConfig,
    RetryManager,
)


def flaky(failures, result="ok"):
    """Coroutine factory failing with the given errors before returning result."""
    calls = {"n": 0}
    errors = list(failures)

    async def op():
        calls["n"] += 1
        if errors:
            raise errors.pop(0)
        return result

    return op, calls


@pytest.fixture
def retry(sink, no_sleep):
    return RetryManager(event_sink=sink, sleep=no_sleep)


# ─────────────────────────────────────────────────────────────────────────────
# Outcomes
# ─────────────────────────────────────────────────────────────────────────────


class TestOutcomes:

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, retry, sink):
        op, calls = flaky([])
        assert await retry.run(op, OperationClass.POSITION_CREATE, "i1") == "ok"
        assert calls["n"] == 1
        assert sink.names() == ["retry.started", "retry.success"]

    @pytest.mark.asyncio
    async def test_retry_then_success_emits_one_attempt_event_per_failure(self, retry, sink):
        op, calls = flaky([RetryableTransportError("rpc error"), RetryableTransportError("503")])
        assert await retry.run(op, OperationClass.POSITION_CREATE, "i1") == "ok"
        assert calls["n"] == 3
        assert sink.names() == ["retry.started", "retry.attempt", "retry.attempt", "retry.success"]
        assert [p["attempt"] for p in sink.of("retry.attempt")] == [1, 2]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_and_publishes_failed(self, retry, sink):
        op, calls = flaky([RetryableTransportError("timeout")] * 5)
        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry.run(op, OperationClass.POSITION_CLOSE, "i1")
        assert calls["n"] == 3
        assert exc_info.value.attempts == 3
        assert sink.names()[-1] == "retry.failed"
        assert len(sink.of("retry.attempt")) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self, retry, sink):
        op, calls = flaky([NonRetryableExecutionError("insufficient balance")])
        with pytest.raises(NonRetryableExecutionError):
            await retry.run(op, OperationClass.TOKEN_SWAP, "i1")
        assert calls["n"] == 1
        assert sink.names() == ["retry.started", "retry.failed"]

    @pytest.mark.asyncio
    async def test_unknown_error_retried_only_on_pattern_match(self, retry):
        op, calls = flaky([RuntimeError("Slippage tolerance exceeded")])
        assert await retry.run(op, OperationClass.TOKEN_SWAP, "i1") == "ok"
        assert calls["n"] == 2

        op, calls = flaky([RuntimeError("account frozen")])
        with pytest.raises(RuntimeError):
            await retry.run(op, OperationClass.TOKEN_SWAP, "i1")
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_validation_failure_is_not_retried(self, retry):
        op, calls = flaky([], result=None)
        with pytest.raises(NonRetryableExecutionError):
            await retry.run(op, OperationClass.POSITION_CREATE, "i1", validate=lambda r: r is not None)
        assert calls["n"] == 1


# ─────────────────────────────────────────────────────────────────────────────
# Consistency errors
# ─────────────────────────────────────────────────────────────────────────────


class TestReconcile:

    @pytest.mark.asyncio
    async def test_ambiguous_without_hook_is_raised(self, retry):
        op, calls = flaky([AmbiguousSubmissionError("no confirmation", tx_ref="tx1")])
        with pytest.raises(AmbiguousSubmissionError):
            await retry.run(op, OperationClass.POSITION_CLOSE, "i1")
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_landed_result_finishes_without_resubmitting(self, retry, sink):
        op, calls = flaky([AmbiguousSubmissionError("no confirmation")])

        async def reconcile(error, ctx):
            return "landed"

        assert await retry.run(op, OperationClass.POSITION_CLOSE, "i1", reconcile=reconcile) == "landed"
        assert calls["n"] == 1
        assert retry.get_stats()["reconciled"] == 1
        assert sink.names()[-1] == "retry.success"

    @pytest.mark.asyncio
    async def test_nothing_landed_allows_retry(self, retry):
        op, calls = flaky([AmbiguousSubmissionError("no confirmation")])
        seen = []

        async def reconcile(error, ctx):
            seen.append(ctx.attempt)
            return None

        assert await retry.run(op, OperationClass.POSITION_CLOSE, "i1", reconcile=reconcile) == "ok"
        assert calls["n"] == 2
        assert seen == [1]


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────


class TestConfiguration:

    def test_backoff_is_capped(self):
        cfg = RetryConfig(max_attempts=10, delay_ms=1000, backoff_factor=2.0, max_delay_ms=5000)
        assert [cfg.delay_for(a) for a in range(1, 6)] == [1000, 2000, 4000, 5000, 5000]

    @pytest.mark.asyncio
    async def test_delays_follow_backoff(self, retry, no_sleep):
        op, _ = flaky([RetryableTransportError("timeout")] * 2)
        await retry.run(op, OperationClass.POSITION_CREATE, "i1")
        assert no_sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_per_call_override(self, retry):
        op, calls = flaky([RetryableTransportError("timeout")] * 3)
        with pytest.raises(RetryExhaustedError):
            await retry.run(op, OperationClass.TOKEN_SWAP, "i1", {"max_attempts": 2})
        assert calls["n"] == 2

    def test_update_default_config(self, retry):
        updated = retry.update_default_config(OperationClass.READ_QUERY, max_attempts=4, delay_ms=10)
        assert updated.max_attempts == 4
        assert retry.get_default_config(OperationClass.READ_QUERY).delay_ms == 10
        assert retry.get_default_config("read-query").max_attempts == 4

    def test_unknown_class_gets_single_attempt(self, retry):
        assert retry.get_default_config("mystery").max_attempts == 1

    def test_process_backoff_settings_apply_to_defaults(self, no_sleep):
        retry = RetryManager(backoff_factor=3.0, max_delay_ms=7000, sleep=no_sleep)
        cfg = retry.get_default_config(OperationClass.POSITION_CREATE)
        assert cfg.backoff_factor == 3.0
        assert cfg.max_delay_ms == 7000


# ─────────────────────────────────────────────────────────────────────────────
# Events and serialization
# ─────────────────────────────────────────────────────────────────────────────


class TestEventsAndLocking:

    @pytest.mark.asyncio
    async def test_failing_sink_never_changes_outcome(self, no_sleep):
        class BrokenSink:
            def publish(self, name, payload):
                raise RuntimeError("sink down")

        retry = RetryManager(event_sink=BrokenSink(), sleep=no_sleep)
        op, _ = flaky([RetryableTransportError("timeout")])
        assert await retry.run(op, OperationClass.POSITION_CREATE, "i1") == "ok"

    @pytest.mark.asyncio
    async def test_async_sink_failure_is_contained(self, no_sleep):
        class AsyncBrokenSink:
            async def publish(self, name, payload):
                raise RuntimeError("sink down")

        retry = RetryManager(event_sink=AsyncBrokenSink(), sleep=no_sleep)
        op, _ = flaky([])
        assert await retry.run(op, OperationClass.POSITION_CREATE, "i1") == "ok"
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_mutating_calls_of_one_instance_do_not_interleave(self, retry):
        active = {"n": 0, "max": 0}

        async def op():
            active["n"] += 1
            active["max"] = max(active["max"], active["n"])
            await asyncio.sleep(0.01)
            active["n"] -= 1
            return True

        await asyncio.gather(
            retry.run(op, OperationClass.POSITION_CREATE, "i1"),
            retry.run(op, OperationClass.POSITION_CLOSE, "i1"),
            retry.run(op, OperationClass.TOKEN_SWAP, "i1"),
        )
        assert active["max"] == 1

    @pytest.mark.asyncio
    async def test_reads_and_other_instances_run_concurrently(self, retry):
        active = {"n": 0, "max": 0}

        async def op():
            active["n"] += 1
            active["max"] = max(active["max"], active["n"])
            await asyncio.sleep(0.01)
            active["n"] -= 1
            return True

        await asyncio.gather(
            retry.run(op, OperationClass.POSITION_CREATE, "i1"),
            retry.run(op, OperationClass.POSITION_CREATE, "i2"),
            retry.run(op, OperationClass.READ_QUERY, "i1"),
        )
        assert active["max"] == 3

    @pytest.mark.asyncio
    async def test_payload_shape(self, retry, sink):
        op, _ = flaky([])
        await retry.run(op, OperationClass.READ_QUERY, "i9")
        started = sink.of("retry.started")[0]
        assert started["instance_id"] == "i9"
        assert started["operation_class"] == "read-query"
        assert started["max_attempts"] == 2
        assert sink.of("retry.success")[0]["operation_id"] == started["operation_id"]
