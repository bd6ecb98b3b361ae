"""Tests for workflow retry strategies."""

import pytest

from core.exceptions import RetryExhausted
from workflow.context import ExecutionContext
from workflow.retry_strategies import (
    DelayStrategy,
    RetryPolicy,
    RetryStrategyType,
    UntilCondition,
    execute_with_retry,
)


class _Flaky:
    """Fails `failures` times, then returns `value`."""

    def __init__(self, failures, value="ok"):
        self.failures = failures
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"attempt {self.calls} failed")
        return self.value


# ─── Policy creation ───

@pytest.mark.unit
class TestRetryPolicyCreation:
    def test_none_config_is_disabled(self):
        policy = RetryPolicy.from_dict(None)
        assert policy.enabled is False
        assert policy.count == 0

    def test_from_dict(self):
        policy = RetryPolicy.from_dict({
            "enabled": True,
            "count": 5,
            "delay": 200,
            "delayStrategy": "exponential",
            "maxDelay": 1000,
        })
        assert policy.enabled is True
        assert policy.strategy == RetryStrategyType.COUNT
        assert policy.count == 5
        assert policy.delay == 200
        assert policy.delay_strategy == DelayStrategy.EXPONENTIAL
        assert policy.max_delay == 1000

    def test_defaults_from_settings(self):
        policy = RetryPolicy.from_dict({"enabled": True})
        assert policy.count == 3
        assert policy.delay == 10

    def test_templated_numbers(self):
        ctx = ExecutionContext(variables={"retries": "4"})
        policy = RetryPolicy.from_dict({"enabled": True, "count": "{{ variables.retries }}"}, ctx)
        assert policy.count == 4

    def test_from_node_data_flat_fields(self):
        policy = RetryPolicy.from_node_data({
            "retryEnabled": True,
            "retryStrategy": "untilCondition",
            "retryUntilCondition": {"type": "expression", "value": "True", "timeout": 100},
            "retryDelay": 5,
        })
        assert policy.strategy == RetryStrategyType.UNTIL_CONDITION
        assert policy.until_condition.type == "expression"
        assert policy.until_condition.timeout == 100

    def test_from_node_data_without_retry(self):
        assert RetryPolicy.from_node_data({"url": "x"}).enabled is False

    def test_to_dict_roundtrip(self):
        original = RetryPolicy.from_dict({
            "enabled": True, "count": 2, "delay": 50,
            "untilCondition": {"type": "selector", "value": "#done"},
        })
        restored = RetryPolicy.from_dict(original.to_dict())
        assert restored == original

    def test_until_condition_defaults(self):
        until = UntilCondition.from_dict({"type": "selector", "value": "#x"})
        assert until.timeout == 500
        assert until.visibility == "visible"


# ─── Delay computation ───

@pytest.mark.unit
class TestComputeDelay:
    def test_fixed(self):
        policy = RetryPolicy(enabled=True, delay=100)
        assert [policy.compute_delay(n) for n in (1, 2, 3)] == [100, 100, 100]

    def test_exponential(self):
        policy = RetryPolicy(enabled=True, delay=100, delay_strategy=DelayStrategy.EXPONENTIAL)
        assert [policy.compute_delay(n) for n in (1, 2, 3, 4)] == [100, 200, 400, 800]

    def test_exponential_capped(self):
        policy = RetryPolicy(
            enabled=True, delay=100, delay_strategy=DelayStrategy.EXPONENTIAL, max_delay=250,
        )
        assert policy.compute_delay(5) == 250


# ─── Execution ───

@pytest.mark.unit
class TestExecuteWithRetry:
    async def test_disabled_runs_once(self):
        op = _Flaky(failures=1)
        with pytest.raises(ConnectionError):
            await execute_with_retry(op, RetryPolicy.disabled())
        assert op.calls == 1

    async def test_count_succeeds_after_failures(self):
        op = _Flaky(failures=2)
        policy = RetryPolicy(enabled=True, count=3, delay=1)
        assert await execute_with_retry(op, policy) == "ok"
        assert op.calls == 3

    async def test_count_exhausted(self):
        op = _Flaky(failures=10)
        policy = RetryPolicy(enabled=True, count=2, delay=1)
        with pytest.raises(RetryExhausted) as exc:
            await execute_with_retry(op, policy)
        assert op.calls == 3
        assert exc.value.attempts == 3
        assert isinstance(exc.value.last_error, ConnectionError)
        assert exc.value.__cause__ is exc.value.last_error

    async def test_on_retry_called_between_attempts(self):
        seen = []
        op = _Flaky(failures=2)
        policy = RetryPolicy(enabled=True, count=3, delay=2, delay_strategy=DelayStrategy.EXPONENTIAL)
        await execute_with_retry(op, policy, on_retry=lambda a, e, d: seen.append((a, d)))
        assert seen == [(1, 2.0), (2, 4.0)]

    async def test_async_on_retry_failure_ignored(self):
        async def broken(attempt, error, delay):
            raise RuntimeError("callback")

        op = _Flaky(failures=1)
        policy = RetryPolicy(enabled=True, count=1, delay=1)
        assert await execute_with_retry(op, policy, on_retry=broken) == "ok"

    async def test_until_condition_met(self):
        ctx = ExecutionContext(variables={"done": False})

        async def op():
            calls = ctx.get_variable("calls", 0) + 1
            ctx.set_variable("calls", calls)
            if calls == 3:
                ctx.set_variable("done", True)
            return calls

        policy = RetryPolicy(
            enabled=True,
            strategy=RetryStrategyType.UNTIL_CONDITION,
            delay=1,
            until_condition=UntilCondition(type="expression", value="variables.done", timeout=2000),
        )
        assert await execute_with_retry(op, policy, ctx) == 3

    async def test_until_condition_times_out(self):
        ctx = ExecutionContext()
        op = _Flaky(failures=100)
        policy = RetryPolicy(
            enabled=True,
            strategy=RetryStrategyType.UNTIL_CONDITION,
            delay=10,
            until_condition=UntilCondition(type="expression", value="False", timeout=50),
        )
        with pytest.raises(RetryExhausted, match="not met within 50ms") as exc:
            await execute_with_retry(op, policy, ctx)
        assert isinstance(exc.value.last_error, ConnectionError)

    async def test_until_requires_context(self):
        policy = RetryPolicy(
            enabled=True,
            strategy=RetryStrategyType.UNTIL_CONDITION,
            until_condition=UntilCondition(type="expression", value="True"),
        )
        with pytest.raises(ValueError):
            await execute_with_retry(_Flaky(0), policy)
