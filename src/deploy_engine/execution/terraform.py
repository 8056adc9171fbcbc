"""Terraform step executors.

Success for an apply is exit code 0 *and* no pending diff afterwards, checked
with ``terraform plan -detailed-exitcode`` (0 = clean, 2 = diff remains).
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..ports.step_executor import StepOutcome
from ..primitives.exceptions import StepExecutionError
from .base import ToolStep

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from ..ports.step_executor import ExecutionContext
    from .process import CommandResult

logger = logging.getLogger("deploy_engine.terraform")

PLAN_NO_CHANGES = 0
PLAN_PENDING_CHANGES = 2

# Corrupted provider cache: wipe .terraform and init again.
_REINIT_MARKERS = (
    "Failed to install provider from shared cache",
    "Failed to install provider",
    "Plugin reinitialization required",
)
_INIT_ATTEMPTS = 2


class _TerraformStep(ToolStep):
    tool = "terraform"

    def __init__(
        self,
        plan_dir: Path,
        *,
        var_files: Sequence[Path] = (),
        variables: Mapping[str, str] | None = None,
        plugin_cache_dir: Path | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.plan_dir = Path(plan_dir)
        self.var_files = tuple(var_files)
        self.variables = dict(variables or {})
        self.extra_env.setdefault("TF_IN_AUTOMATION", "1")
        if plugin_cache_dir is not None:
            self.extra_env.setdefault("TF_PLUGIN_CACHE_DIR", str(plugin_cache_dir))

    def _var_args(self) -> list[str]:
        args = [f"-var-file={path}" for path in self.var_files]
        args.extend(f"-var={key}={value}" for key, value in self.variables.items())
        return args

    async def _tf(self, ctx: ExecutionContext, *args: str) -> CommandResult:
        return await self.run(ctx, *args, cwd=self.plan_dir)

    async def _init(self, ctx: ExecutionContext) -> CommandResult:
        result = await self._tf(ctx, "init", "-input=false", "-no-color")
        for _ in range(_INIT_ATTEMPTS - 1):
            if result.success or not _needs_reinit(result):
                break
            logger.warning(
                "Provider cache broken in %s, reinitialising", self.plan_dir
            )
            shutil.rmtree(self.plan_dir / ".terraform", ignore_errors=True)
            (self.plan_dir / ".terraform.lock.hcl").unlink(missing_ok=True)
            result = await self._tf(
                ctx, "init", "-input=false", "-no-color", "-upgrade"
            )
        return result


class TerraformApplyStep(_TerraformStep):
    """``init`` → ``validate`` → ``apply`` → no-diff verification."""

    def __init__(self, plan_dir: Path, *, verify: bool = True, **kwargs: Any) -> None:
        super().__init__(plan_dir, **kwargs)
        self.verify = verify

    @property
    def name(self) -> str:
        return f"terraform-apply:{self.plan_dir.name}"

    async def _execute(self, ctx: ExecutionContext) -> StepOutcome:
        result = await self._init(ctx)
        if not result.success:
            return self.failure(result)
        result = await self._tf(ctx, "validate", "-no-color")
        if not result.success:
            return self.failure(result)
        if ctx.dry_run:
            logger.info("Dry run: %s validated, not applied", self.plan_dir)
            return StepOutcome.succeeded(list(result.stdout))

        applied = await self._tf(
            ctx,
            "apply",
            "-input=false",
            "-no-color",
            "-auto-approve",
            *self._var_args(),
        )
        if not applied.success:
            return self.failure(applied)

        if self.verify:
            plan = await self._tf(
                ctx,
                "plan",
                "-input=false",
                "-no-color",
                "-detailed-exitcode",
                *self._var_args(),
            )
            if plan.abort_reason is not None:
                return self.failure(plan)
            if plan.returncode == PLAN_PENDING_CHANGES:
                return StepOutcome.failed(
                    StepExecutionError(
                        f"{self.plan_dir}: changes still pending after apply",
                        tool=self.tool,
                        command=plan.command,
                        returncode=plan.returncode,
                        stderr=plan.stdout_text,
                    ),
                    output=list(plan.stdout),
                )
            if plan.returncode != PLAN_NO_CHANGES:
                return self.failure(plan)
        return StepOutcome.succeeded(list(applied.stdout))


class TerraformDestroyStep(_TerraformStep):
    """``init`` → optional refresh ``apply`` → ``destroy``.

    Applying first brings the state in line with the plan so destroy knows
    every resource, including ones a failed apply created halfway.
    """

    def __init__(
        self, plan_dir: Path, *, apply_before_destroy: bool = False, **kwargs: Any
    ) -> None:
        super().__init__(plan_dir, **kwargs)
        self.apply_before_destroy = apply_before_destroy

    @property
    def name(self) -> str:
        return f"terraform-destroy:{self.plan_dir.name}"

    async def _execute(self, ctx: ExecutionContext) -> StepOutcome:
        result = await self._init(ctx)
        if not result.success:
            return self.failure(result)
        if ctx.dry_run:
            logger.info("Dry run: %s would be destroyed", self.plan_dir)
            return StepOutcome.succeeded(list(result.stdout))
        if self.apply_before_destroy:
            result = await self._tf(
                ctx,
                "apply",
                "-input=false",
                "-no-color",
                "-auto-approve",
                *self._var_args(),
            )
            if not result.success:
                return self.failure(result)
        result = await self._tf(
            ctx,
            "destroy",
            "-input=false",
            "-no-color",
            "-auto-approve",
            *self._var_args(),
        )
        if not result.success:
            return self.failure(result)
        return StepOutcome.succeeded(list(result.stdout))


def _needs_reinit(result: CommandResult) -> bool:
    output = "\n".join(result.stderr)
    return any(marker in output for marker in _REINIT_MARKERS)
