"""Chart release step executors."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from ..ports.step_executor import StepOutcome
from ..primitives.exceptions import StepExecutionError
from .base import ToolStep

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from ..ports.step_executor import ExecutionContext
    from .process import CommandResult

logger = logging.getLogger("deploy_engine.helm")

HISTORY_MAX = 50
DEFAULT_RELEASE_TIMEOUT = 300
# Margin on top of helm's own --timeout before the process is aborted.
_PROCESS_TIMEOUT_MARGIN = 60.0
_RELEASE_NOT_FOUND = "release: not found"


class _HelmStep(ToolStep):
    tool = "helm"

    def __init__(
        self,
        release: str,
        namespace: str,
        *,
        release_timeout: int = DEFAULT_RELEASE_TIMEOUT,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("timeout", release_timeout + _PROCESS_TIMEOUT_MARGIN)
        super().__init__(**kwargs)
        self.release = release
        self.namespace = namespace
        self.release_timeout = release_timeout

    def _wait_args(self) -> list[str]:
        return ["--wait", "--timeout", f"{self.release_timeout}s"]

    async def _uninstall(self, ctx: ExecutionContext) -> StepOutcome:
        result = await self.run(
            ctx, "uninstall", self.release, "--namespace", self.namespace, "--wait"
        )
        if result.success or _not_found(result):
            return StepOutcome.succeeded(list(result.stdout))
        return self.failure(result)


class HelmReleaseStep(_HelmStep):
    """``helm upgrade --install``; success once the release is ready."""

    def __init__(
        self,
        release: str,
        chart: str,
        namespace: str,
        *,
        values_files: Sequence[Path] = (),
        version: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(release, namespace, **kwargs)
        self.chart = chart
        self.values_files = tuple(values_files)
        self.version = version

    @property
    def name(self) -> str:
        return f"helm-release:{self.namespace}/{self.release}"

    async def _execute(self, ctx: ExecutionContext) -> StepOutcome:
        args = [
            "upgrade",
            "--install",
            self.release,
            self.chart,
            "--namespace",
            self.namespace,
            "--create-namespace",
            "--history-max",
            str(HISTORY_MAX),
            *self._wait_args(),
        ]
        for path in self.values_files:
            args.extend(["-f", str(path)])
        if self.version:
            args.extend(["--version", self.version])
        if ctx.dry_run:
            args.append("--dry-run")
        result = await self.run(ctx, *args)
        if not result.success:
            return self.failure(result)
        return StepOutcome.succeeded(list(result.stdout))


class HelmRevertStep(_HelmStep):
    """Undo the last ``upgrade --install`` of a release.

    Rolls back to the previous revision when there is one, uninstalls the
    release when the last revision was its first install.
    """

    @property
    def name(self) -> str:
        return f"helm-revert:{self.namespace}/{self.release}"

    async def _execute(self, ctx: ExecutionContext) -> StepOutcome:
        history = await self.run(
            ctx,
            "history",
            self.release,
            "--namespace",
            self.namespace,
            "--max",
            "2",
            "--output",
            "json",
        )
        if _not_found(history):
            logger.info("Release %s not found, nothing to revert", self.release)
            return StepOutcome.succeeded()
        if not history.success:
            return self.failure(history)

        revisions = parse_revisions(history.stdout_text)
        if len(revisions) < 2:
            logger.info(
                "Release %s has a single revision, uninstalling", self.release
            )
            return await self._uninstall(ctx)

        previous = revisions[-2]
        result = await self.run(
            ctx,
            "rollback",
            self.release,
            str(previous),
            "--namespace",
            self.namespace,
            *self._wait_args(),
        )
        if not result.success:
            return self.failure(result)
        return StepOutcome.succeeded(list(result.stdout))


class HelmUninstallStep(_HelmStep):
    @property
    def name(self) -> str:
        return f"helm-uninstall:{self.namespace}/{self.release}"

    async def _execute(self, ctx: ExecutionContext) -> StepOutcome:
        if ctx.dry_run:
            return StepOutcome.succeeded()
        return await self._uninstall(ctx)


def parse_revisions(raw: str) -> list[int]:
    """Sorted revision numbers from ``helm history -o json``."""
    try:
        entries = json.loads(raw or "[]")
    except json.JSONDecodeError as exc:
        raise StepExecutionError(
            f"unparseable helm history output: {raw[:200]!r}", tool="helm"
        ) from exc
    return sorted(int(entry["revision"]) for entry in entries if "revision" in entry)


def _not_found(result: CommandResult) -> bool:
    return not result.success and any(
        _RELEASE_NOT_FOUND in line for line in result.stderr
    )
