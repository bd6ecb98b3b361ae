"""Retry policies for retry-capable node handlers.

A node's `retry` config (camelCase, as authored in the editor):

    {
        "enabled": true,
        "strategy": "count",              # or "untilCondition"
        "count": 3,
        "delay": 1000,                    # ms
        "delayStrategy": "exponential",   # or "fixed"
        "maxDelay": 10000,
        "untilCondition": {"type": "selector", "value": "#done", "timeout": 30000}
    }

Numeric fields may be templates ("{{ variables.retries }}").

Usage:
    policy = RetryPolicy.from_dict(node.data.get("retry"), context)
    result = await execute_with_retry(lambda: client.get(url), policy, context)
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from app.config import get_settings
from core.exceptions import RetryExhausted
from workflow.conditions import ConditionEvaluator
from workflow.context import ExecutionContext
from workflow.expressions import ExpressionEvaluator, to_number

logger = structlog.get_logger(__name__)


class RetryStrategyType(str, Enum):
    """What ends a retry sequence."""
    COUNT = "count"
    UNTIL_CONDITION = "untilCondition"


class DelayStrategy(str, Enum):
    """How the wait between attempts grows."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


def _resolve_number(value: Any, context: Optional[ExecutionContext], default: float) -> float:
    if value is None or value == "":
        return default
    if context is not None:
        value = ExpressionEvaluator.evaluate(value, context)
    return to_number(value, default)


@dataclass
class UntilCondition:
    """External condition that ends an untilCondition retry."""
    type: str
    value: Any = None
    timeout: int = 30000
    visibility: str = "visible"
    selector_type: str = "css"
    expected_status: Optional[int] = None
    json_path: Optional[str] = None
    expected_value: Any = None
    match_type: str = "equals"
    context_key: Optional[str] = None

    @classmethod
    def from_dict(
        cls, config: dict, context: Optional[ExecutionContext] = None
    ) -> 'UntilCondition':
        settings = get_settings()
        expected_status = config.get("expectedStatus")
        return cls(
            type=config.get("type", "selector"),
            value=config.get("value"),
            timeout=int(_resolve_number(
                config.get("timeout"), context, settings.RETRY_UNTIL_TIMEOUT_MS
            )),
            visibility=config.get("visibility") or "visible",
            selector_type=config.get("selectorType") or "css",
            expected_status=(
                int(_resolve_number(expected_status, context, 0))
                if expected_status is not None else None
            ),
            json_path=config.get("jsonPath"),
            expected_value=config.get("expectedValue"),
            match_type=config.get("matchType") or "equals",
            context_key=config.get("contextKey"),
        )

    def to_dict(self) -> dict:
        """Shape understood by ConditionEvaluator.check_until."""
        result = {
            "type": self.type,
            "value": self.value,
            "timeout": self.timeout,
            "visibility": self.visibility,
            "selectorType": self.selector_type,
            "matchType": self.match_type,
        }
        optional = {
            "expectedStatus": self.expected_status,
            "jsonPath": self.json_path,
            "expectedValue": self.expected_value,
            "contextKey": self.context_key,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        return result


@dataclass
class RetryPolicy:
    """Retry configuration attached to a node."""
    enabled: bool = False
    strategy: RetryStrategyType = RetryStrategyType.COUNT
    count: int = 3
    delay: float = 1000
    delay_strategy: DelayStrategy = DelayStrategy.FIXED
    max_delay: Optional[float] = None
    until_condition: Optional[UntilCondition] = None

    @classmethod
    def disabled(cls) -> 'RetryPolicy':
        """Run the operation exactly once."""
        return cls(enabled=False, count=0)

    @classmethod
    def from_dict(
        cls, config: Optional[dict], context: Optional[ExecutionContext] = None
    ) -> 'RetryPolicy':
        """Create a policy from a node's `retry` config; None gives a disabled policy."""
        if not config:
            return cls.disabled()

        settings = get_settings()
        until = config.get("untilCondition")
        max_delay = config.get("maxDelay")
        return cls(
            enabled=bool(config.get("enabled", False)),
            strategy=RetryStrategyType(config.get("strategy") or "count"),
            count=max(0, int(_resolve_number(
                config.get("count"), context, settings.RETRY_DEFAULT_COUNT
            ))),
            delay=max(0, _resolve_number(
                config.get("delay"), context, settings.RETRY_DEFAULT_DELAY_MS
            )),
            delay_strategy=DelayStrategy(config.get("delayStrategy") or "fixed"),
            max_delay=(
                _resolve_number(max_delay, context, 0) if max_delay is not None else None
            ),
            until_condition=UntilCondition.from_dict(until, context) if until else None,
        )

    @classmethod
    def from_node_data(
        cls, data: dict, context: Optional[ExecutionContext] = None
    ) -> 'RetryPolicy':
        """Read a policy from node data: a nested `retry` dict or flat `retry*` fields."""
        if isinstance(data.get("retry"), dict):
            return cls.from_dict(data["retry"], context)
        if "retryEnabled" not in data:
            return cls.disabled()
        return cls.from_dict({
            "enabled": data.get("retryEnabled"),
            "strategy": data.get("retryStrategy"),
            "count": data.get("retryCount"),
            "untilCondition": data.get("retryUntilCondition"),
            "delay": data.get("retryDelay"),
            "delayStrategy": data.get("retryDelayStrategy"),
            "maxDelay": data.get("retryMaxDelay"),
        }, context)

    def to_dict(self) -> dict:
        """Serialize back to the camelCase node config shape."""
        result = {
            "enabled": self.enabled,
            "strategy": self.strategy.value,
            "count": self.count,
            "delay": self.delay,
            "delayStrategy": self.delay_strategy.value,
        }
        if self.max_delay is not None:
            result["maxDelay"] = self.max_delay
        if self.until_condition is not None:
            result["untilCondition"] = self.until_condition.to_dict()
        return result

    def compute_delay(self, attempt: int) -> float:
        """Delay in milliseconds after a given attempt number (1-based)."""
        if self.delay_strategy == DelayStrategy.EXPONENTIAL:
            delay = self.delay * (2 ** (attempt - 1))
        else:
            delay = self.delay

        if self.max_delay is not None and self.max_delay > 0:
            delay = min(delay, self.max_delay)

        return max(0.0, float(delay))


async def _notify(on_retry: Optional[Callable], attempt: int, error: Optional[BaseException], delay: float):
    if on_retry is None:
        return
    try:
        outcome = on_retry(attempt, error, delay)
        if asyncio.iscoroutine(outcome):
            await outcome
    except Exception as e:
        logger.warning("Retry callback failed", attempt=attempt, error=str(e))


async def execute_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy],
    context: Optional[ExecutionContext] = None,
    on_retry: Optional[Callable] = None,
) -> Any:
    """Run an async operation under a retry policy.

    Args:
        operation: Zero-argument async callable.
        policy: RetryPolicy; None or disabled runs the operation once.
        context: Needed by untilCondition policies.
        on_retry: Optional callback(attempt, error, delay_ms) before each wait.

    Returns:
        The operation's result.

    Raises:
        RetryExhausted: attempts ran out or the until-condition timed out.
    """
    if policy is None or not policy.enabled:
        return await operation()

    if policy.strategy == RetryStrategyType.UNTIL_CONDITION:
        return await _retry_until(operation, policy, context, on_retry)
    return await _retry_count(operation, policy, on_retry)


async def _retry_count(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    on_retry: Optional[Callable],
) -> Any:
    max_attempts = 1 + policy.count
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if attempt >= max_attempts:
                break
            delay = policy.compute_delay(attempt)
            logger.info(
                "Retrying after failure",
                attempt=attempt,
                max_attempts=max_attempts,
                delay_ms=delay,
                error=str(e),
            )
            await _notify(on_retry, attempt, e, delay)
            await asyncio.sleep(delay / 1000)

    raise RetryExhausted(
        f"Operation failed after {max_attempts} attempts: {last_error}",
        attempts=max_attempts,
        last_error=last_error,
    ) from last_error


async def _retry_until(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    context: Optional[ExecutionContext],
    on_retry: Optional[Callable],
) -> Any:
    if policy.until_condition is None:
        raise ValueError("untilCondition strategy requires an untilCondition")
    if context is None:
        raise ValueError("untilCondition strategy requires an execution context")

    until = policy.until_condition
    started = time.monotonic()
    attempt = 0
    last_error: Optional[Exception] = None
    result: Any = None

    while True:
        attempt += 1
        try:
            result = await operation()
            last_error = None
        except Exception as e:
            last_error = e

        check = await ConditionEvaluator.check_until(until.to_dict(), context)
        if check.passed:
            return result

        delay = policy.compute_delay(attempt)
        elapsed = (time.monotonic() - started) * 1000
        if elapsed + delay >= until.timeout:
            message = f"Retry condition not met within {until.timeout}ms ({check.message})"
            if last_error is not None:
                raise RetryExhausted(message, attempts=attempt, last_error=last_error) from last_error
            raise RetryExhausted(message, attempts=attempt)

        await _notify(on_retry, attempt, last_error, delay)
        await asyncio.sleep(delay / 1000)
