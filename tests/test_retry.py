from __future__ import annotations

import random

import pytest

from deploy_engine.config import RetrySettings
from deploy_engine.ports.step_executor import ExecutionContext, StepOutcome
from deploy_engine.primitives import (
    CancellationToken,
    StepExecutionError,
    TransientProviderError,
)
from deploy_engine.retry import RetryingStepExecutor, RetryPolicy
from deploy_engine.retry import _wait_or_cancel as real_wait_or_cancel

from .conftest import ScriptedStep, fail, ok, transient


class TestRetryPolicy:
    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"max_attempts": 0}, "max_attempts must be >= 1"),
            ({"base_delay": -1.0}, "must be >= 0"),
            ({"base_delay": 10.0, "max_delay": 1.0}, "base_delay must be <= max_delay"),
        ],
    )
    def test_rejects_invalid_configuration(
        self, kwargs: dict[str, float], message: str
    ) -> None:
        with pytest.raises(ValueError, match=message):
            RetryPolicy(**kwargs)  # type: ignore[arg-type]

    def test_exponential_backoff_is_capped(self) -> None:
        policy = RetryPolicy(
            max_attempts=6, base_delay=1.0, max_delay=10.0, jitter=False
        )
        delays = [policy.delay_for_attempt(n) for n in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0]
        assert policy.delay_for_attempt(0) == 0.0

    def test_jitter_never_exceeds_max_delay(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=4.0, max_delay=10.0)

        monkeypatch.setattr(random, "random", lambda: 0.999)
        assert policy.delay_for_attempt(1) == pytest.approx(4.0 * 1.499)
        assert policy.delay_for_attempt(3) == 10.0

        monkeypatch.setattr(random, "random", lambda: 0.0)
        assert policy.delay_for_attempt(1) == pytest.approx(2.0)

    def test_should_retry(self) -> None:
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)
        assert not policy.should_retry(0)

    def test_worst_case_delay(self) -> None:
        policy = RetryPolicy(max_attempts=4, base_delay=1.0, max_delay=30.0)
        assert policy.worst_case_delay() == 90.0
        assert RetryPolicy.no_retry().worst_case_delay() == 0.0

    def test_from_settings(self) -> None:
        policy = RetryPolicy.from_settings(
            RetrySettings(max_attempts=7, base_delay=2.0, max_delay=20.0, jitter=False)
        )
        assert policy.max_attempts == 7
        assert (policy.base_delay, policy.max_delay) == (2.0, 20.0)
        assert policy.jitter is False


class TestRetryingStepExecutor:
    async def test_retries_transient_until_success(
        self, ctx: ExecutionContext, backoff_delays: list[float]
    ) -> None:
        step = ScriptedStep("apply", [transient(), transient(), ok()])
        executor = RetryingStepExecutor(step, RetryPolicy(max_attempts=3, jitter=False))

        outcome = await executor.execute(ctx)

        assert outcome.success
        assert step.calls == 3
        assert [c.attempt for c in step.contexts] == [1, 2, 3]
        assert backoff_delays == [1.0, 2.0]

    async def test_at_most_max_attempts(
        self, ctx: ExecutionContext, backoff_delays: list[float]
    ) -> None:
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0)
        step = ScriptedStep("apply", [transient()])

        outcome = await RetryingStepExecutor(step, policy).execute(ctx)

        assert not outcome.success
        assert outcome.retryable
        assert step.calls == 3
        assert len(backoff_delays) == 2
        assert sum(backoff_delays) <= policy.worst_case_delay()

    async def test_non_retryable_passes_through(
        self, ctx: ExecutionContext, backoff_delays: list[float]
    ) -> None:
        step = ScriptedStep("apply", [fail("plan rejected")])

        outcome = await RetryingStepExecutor(step, RetryPolicy(max_attempts=5)).execute(
            ctx
        )

        assert step.calls == 1
        assert isinstance(outcome.error, StepExecutionError)
        assert backoff_delays == []

    async def test_raised_exceptions_become_outcomes(
        self, ctx: ExecutionContext
    ) -> None:
        step = ScriptedStep(
            "apply", [TransientProviderError("connection reset"), RuntimeError("bug")]
        )

        outcome = await RetryingStepExecutor(step, RetryPolicy(max_attempts=3)).execute(
            ctx
        )

        assert step.calls == 2
        assert isinstance(outcome.error, RuntimeError)
        assert not outcome.retryable

    async def test_cancelled_token_stops_retrying(self) -> None:
        token = CancellationToken()
        token.cancel("request aborted")
        step = ScriptedStep("apply", [transient()])

        outcome = await RetryingStepExecutor(step, RetryPolicy(max_attempts=5)).execute(
            ExecutionContext(token=token)
        )

        assert step.calls == 1
        assert isinstance(outcome.error, TransientProviderError)

    async def test_cancellation_during_backoff_returns_last_outcome(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        token = CancellationToken()

        async def _cancelled_while_sleeping(_: CancellationToken, __: float) -> bool:
            token.cancel("shutdown")
            return True

        monkeypatch.setattr(
            "deploy_engine.retry._wait_or_cancel", _cancelled_while_sleeping
        )
        last = transient("rate exceeded")
        step = ScriptedStep("apply", [last])

        outcome = await RetryingStepExecutor(step, RetryPolicy(max_attempts=5)).execute(
            ExecutionContext(token=token)
        )

        assert outcome is last
        assert step.calls == 1

    async def test_name_and_repr(self) -> None:
        executor = RetryingStepExecutor(ScriptedStep("helm"), RetryPolicy.no_retry())
        assert executor.name == "helm"
        assert "max_attempts=1" in repr(executor)


class TestWaitOrCancel:
    async def test_returns_false_after_delay(self) -> None:
        assert await real_wait_or_cancel(CancellationToken(), 0.01) is False

    async def test_returns_true_when_cancelled(self) -> None:
        token = CancellationToken()
        token.cancel()
        assert await real_wait_or_cancel(token, 10.0) is True


def test_outcome_from_exception_classification() -> None:
    assert StepOutcome.from_exception(TransientProviderError("x")).retryable
    assert not StepOutcome.from_exception(StepExecutionError("x")).retryable
    assert StepOutcome.cancelled("stop").is_cancelled
