"""Step executor decorator holding a cluster's IaC state lease."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..concurrency import CriticalSection
from ..instrumentation import LOCK_ACQUIRE, instrument
from ..ports.step_executor import StepOutcome
from ..primitives.exceptions import LockAcquisitionError, OperationCancelledError

if TYPE_CHECKING:
    from ..instrumentation import HookRegistry
    from ..ports.locking import ILockStrategy
    from ..ports.step_executor import ExecutionContext, IStepExecutor
    from ..primitives.locking import ResourceIdentifier

logger = logging.getLogger("deploy_engine.locking")


class LeasedStep:
    """Run ``inner`` while holding the lease on ``resource``.

    The lease is taken per invocation, so every retry attempt queues again
    and parallel actions on the same cluster take turns. A lease timeout is
    a retryable outcome; cancellation while waiting is a cancelled outcome.
    """

    def __init__(
        self,
        inner: IStepExecutor,
        lock_strategy: ILockStrategy,
        resource: ResourceIdentifier,
        *,
        timeout: float = 600.0,
        ttl: float = 7200.0,
        hooks: HookRegistry | None = None,
    ) -> None:
        self.inner = inner
        self.lock_strategy = lock_strategy
        self.resource = resource
        self.timeout = timeout
        self.ttl = ttl
        self._hooks = hooks

    @property
    def name(self) -> str:
        return self.inner.name

    async def execute(self, ctx: ExecutionContext) -> StepOutcome:
        section = CriticalSection(
            [self.resource],
            self.lock_strategy,
            timeout=self.timeout,
            ttl=self.ttl,
            token=ctx.token,
        )
        try:
            await instrument(
                LOCK_ACQUIRE,
                {"resource": str(self.resource), "step": self.inner.name},
                section.acquire,
                hooks=self._hooks,
            )
        except LockAcquisitionError as exc:
            logger.warning("%s: %s", self.inner.name, exc)
            return StepOutcome.failed(exc, retryable=True)
        except OperationCancelledError as exc:
            return StepOutcome.failed(exc)

        try:
            return await self.inner.execute(ctx)
        finally:
            await section.release()

    def __repr__(self) -> str:
        return f"LeasedStep({self.inner!r}, {self.resource})"
