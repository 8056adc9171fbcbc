"""Backoff policy and the executor wrapper that applies it.

Only outcomes flagged ``retryable`` (throttling, transient provider errors,
lease timeouts) are attempted again. A cancelled token cuts the backoff
short and the last outcome is returned as is.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .ports.step_executor import StepOutcome

if TYPE_CHECKING:
    from .config import RetrySettings
    from .ports.step_executor import ExecutionContext, IStepExecutor
    from .primitives.cancellation import CancellationToken

logger = logging.getLogger("deploy_engine.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how long apart, a failing step is attempted.

    Attributes:
        max_attempts: Attempts in total, the first one included.
        base_delay: Seconds to wait after the first failure; doubles after
            each further failure.
        max_delay: Ceiling on a single wait, jitter included.
        jitter: Scale each wait by a random factor in [0.5, 1.5) so parallel
            actions throttled by the same provider spread out.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if min(self.base_delay, self.max_delay) < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must be <= max_delay")

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
        )

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=False)

    def should_retry(self, attempt: int) -> bool:
        """Whether failed ``attempt`` (counted from 1) may be followed up."""
        return 0 < attempt < self.max_attempts

    def delay_for_attempt(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        wait = self.base_delay * 2 ** (attempt - 1)
        if self.jitter:
            wait *= 0.5 + random.random()  # noqa: S311
        return float(min(wait, self.max_delay))

    def worst_case_delay(self) -> float:
        return (self.max_attempts - 1) * self.max_delay


class RetryingStepExecutor:
    """Runs ``inner`` until it succeeds or ``policy`` runs out."""

    def __init__(self, inner: IStepExecutor, policy: RetryPolicy) -> None:
        self.inner = inner
        self.policy = policy

    @property
    def name(self) -> str:
        return self.inner.name

    async def execute(self, ctx: ExecutionContext) -> StepOutcome:
        attempt = 0
        while True:
            attempt += 1
            outcome = await self._attempt(ctx.with_attempt(attempt))
            if outcome.success or not outcome.retryable:
                return outcome
            if not self.policy.should_retry(attempt):
                logger.warning(
                    "%s: no attempts left after %d: %s",
                    self.name,
                    attempt,
                    outcome.error,
                )
                return outcome
            if ctx.token.is_cancelled:
                return outcome

            delay = self.policy.delay_for_attempt(attempt)
            logger.info(
                "%s: retrying in %.1fs after attempt %d/%d: %s",
                self.name,
                delay,
                attempt,
                self.policy.max_attempts,
                outcome.error,
                extra={"attempt": attempt, "delay": delay},
            )
            if await _wait_or_cancel(ctx.token, delay):
                logger.info("%s: backoff interrupted by cancellation", self.name)
                return outcome

    async def _attempt(self, ctx: ExecutionContext) -> StepOutcome:
        try:
            return await self.inner.execute(ctx)
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s raised %r", self.name, exc)
            return StepOutcome.from_exception(exc)

    def __repr__(self) -> str:
        return f"RetryingStepExecutor({self.inner!r}, {self.policy!r})"


async def _wait_or_cancel(token: CancellationToken, delay: float) -> bool:
    """Sleep ``delay`` seconds; True when ``token`` fired first."""
    return await token.wait(timeout=delay)
