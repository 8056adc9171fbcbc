"""In-process step executors."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..ports.step_executor import StepOutcome

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..ports.step_executor import ExecutionContext

logger = logging.getLogger("deploy_engine.execution")


class FunctionStep:
    """Adapt an async callable into a step executor.

    The callable may return a :class:`StepOutcome`, or any other value which
    becomes the output of a successful outcome. Exceptions become failed
    outcomes; only ``TransientProviderError`` is marked retryable.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[ExecutionContext], Awaitable[Any]],
    ) -> None:
        self.name = name
        self._fn = fn

    async def execute(self, ctx: ExecutionContext) -> StepOutcome:
        if ctx.token.is_cancelled:
            return StepOutcome.cancelled(ctx.token.reason)
        try:
            result = await self._fn(ctx)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Step %s raised %s", self.name, exc)
            return StepOutcome.from_exception(exc)
        if isinstance(result, StepOutcome):
            return result
        return StepOutcome.succeeded(result)

    def __repr__(self) -> str:
        return f"FunctionStep({self.name!r})"


class NoopStep:
    """Explicit "nothing to undo" rollback, e.g. for a pushed image."""

    def __init__(self, name: str = "noop", reason: str = "") -> None:
        self.name = name
        self.reason = reason

    async def execute(self, ctx: ExecutionContext) -> StepOutcome:
        if self.reason:
            logger.debug("%s: %s", self.name, self.reason)
        return StepOutcome.succeeded()
