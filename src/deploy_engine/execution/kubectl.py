"""Cluster manifest step executors.

Success is acceptance by the API server, plus an explicit ``kubectl wait``
where a readiness condition is given.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..ports.step_executor import StepOutcome
from ..primitives.exceptions import ConfigurationError
from .base import ToolStep

if TYPE_CHECKING:
    from ..ports.step_executor import ExecutionContext

logger = logging.getLogger("deploy_engine.kubectl")

DEFAULT_WAIT_TIMEOUT = 300


class _KubectlStep(ToolStep):
    tool = "kubectl"

    def __init__(self, *, namespace: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.namespace = namespace

    def _ns(self) -> list[str]:
        return ["--namespace", self.namespace] if self.namespace else []


class KubectlApplyStep(_KubectlStep):
    def __init__(
        self,
        manifest: Path,
        *,
        wait_for: str | None = None,
        wait_timeout: int = DEFAULT_WAIT_TIMEOUT,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.manifest = Path(manifest)
        self.wait_for = wait_for
        self.wait_timeout = wait_timeout

    @property
    def name(self) -> str:
        return f"kubectl-apply:{self.manifest.name}"

    async def _execute(self, ctx: ExecutionContext) -> StepOutcome:
        args = ["apply", "-f", str(self.manifest), *self._ns()]
        if ctx.dry_run:
            args.append("--dry-run=server")
        result = await self.run(ctx, *args)
        if not result.success:
            return self.failure(result)
        output = list(result.stdout)

        if self.wait_for and not ctx.dry_run:
            waited = await self.run(
                ctx,
                "wait",
                f"--for={self.wait_for}",
                "-f",
                str(self.manifest),
                *self._ns(),
                f"--timeout={self.wait_timeout}s",
            )
            if not waited.success:
                return self.failure(waited)
            output.extend(waited.stdout)
        return StepOutcome.succeeded(output)


class KubectlDeleteStep(_KubectlStep):
    """Delete what a manifest declares, or one named object."""

    def __init__(
        self,
        manifest: Path | None = None,
        *,
        kind: str | None = None,
        object_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        if manifest is None and not (kind and object_name):
            raise ConfigurationError("KubectlDeleteStep needs a manifest or kind/name")
        super().__init__(**kwargs)
        self.manifest = Path(manifest) if manifest is not None else None
        self.kind = kind
        self.object_name = object_name

    @property
    def name(self) -> str:
        if self.manifest is not None:
            return f"kubectl-delete:{self.manifest.name}"
        return f"kubectl-delete:{self.kind}/{self.object_name}"

    async def _execute(self, ctx: ExecutionContext) -> StepOutcome:
        if self.manifest is not None:
            target = ["-f", str(self.manifest)]
        else:
            target = [f"{self.kind}/{self.object_name}"]
        args = ["delete", *target, *self._ns(), "--ignore-not-found", "--wait"]
        if ctx.dry_run:
            args.append("--dry-run=server")
        result = await self.run(ctx, *args)
        if not result.success:
            return self.failure(result)
        return StepOutcome.succeeded(list(result.stdout))


class KubectlScaleStep(_KubectlStep):
    """Scale one workload, or every workload of a kind in the namespace."""

    def __init__(
        self,
        kind: str,
        replicas: int,
        *,
        object_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.kind = kind
        self.replicas = replicas
        self.object_name = object_name

    @property
    def name(self) -> str:
        target = self.object_name or "*"
        return f"kubectl-scale:{self.kind}/{target}={self.replicas}"

    async def _execute(self, ctx: ExecutionContext) -> StepOutcome:
        target = (
            [f"{self.kind}/{self.object_name}"]
            if self.object_name
            else [self.kind, "--all"]
        )
        args = ["scale", *target, f"--replicas={self.replicas}", *self._ns()]
        if ctx.dry_run:
            args.append("--dry-run=server")
        result = await self.run(ctx, *args)
        if not result.success:
            return self.failure(result)
        return StepOutcome.succeeded(list(result.stdout))
