"""Shared plumbing for executors that drive a command-line tool."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from ..ports.step_executor import StepOutcome
from ..primitives.exceptions import DeployEngineError, TransientProviderError
from .classification import classify_failure
from .process import DEFAULT_KILL_GRACE_PERIOD, CommandResult, run_command

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from ..ports.step_executor import ExecutionContext

logger = logging.getLogger("deploy_engine.execution")


class CommandRunner(Protocol):
    async def __call__(
        self, command: Sequence[str], **kwargs: Any
    ) -> CommandResult: ...


class ToolStep(ABC):
    """
    Base for terraform, helm and kubectl executors.

    Subclasses implement :meth:`_execute` and report command failures with
    :meth:`failure`. Errors raised from the engine's taxonomy (for example a
    missing binary) are converted into outcomes here, so ``execute`` never
    raises for an expected failure.
    """

    tool: ClassVar[str] = ""

    def __init__(
        self,
        *,
        binary: str | None = None,
        timeout: float | None = None,
        kill_grace_period: float = DEFAULT_KILL_GRACE_PERIOD,
        extra_env: Mapping[str, str] | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.binary = binary or self.tool
        self.timeout = timeout
        self.kill_grace_period = kill_grace_period
        self.extra_env = dict(extra_env or {})
        self._runner: CommandRunner = runner or run_command

    @property
    def name(self) -> str:
        return self.tool

    async def execute(self, ctx: ExecutionContext) -> StepOutcome:
        if ctx.token.is_cancelled:
            return StepOutcome.cancelled(ctx.token.reason)
        try:
            return await self._execute(ctx)
        except DeployEngineError as exc:
            logger.warning("%s failed: %s", self.name, exc)
            return StepOutcome.from_exception(exc)

    @abstractmethod
    async def _execute(self, ctx: ExecutionContext) -> StepOutcome:
        """Run the tool; failures are returned, not raised."""

    async def run(
        self,
        ctx: ExecutionContext,
        *args: str,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        env = {**ctx.tool_env(), **self.extra_env}
        return await self._runner(
            [self.binary, *args],
            cwd=cwd or ctx.working_dir,
            env=env,
            token=ctx.token,
            timeout=timeout or self.timeout,
            kill_grace_period=self.kill_grace_period,
        )

    def failure(self, result: CommandResult) -> StepOutcome:
        error = classify_failure(self.tool, result)
        logger.warning(
            "%s failed: %s",
            self.name,
            error,
            extra={"tool": self.tool, "returncode": result.returncode},
        )
        return StepOutcome.failed(
            error,
            retryable=isinstance(error, TransientProviderError),
            output=list(result.stderr),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
