"""Shared fixtures: scripted steps, a fake command runner, instant backoff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from deploy_engine import retry as retry_module
from deploy_engine.execution.process import AbortReason, CommandResult
from deploy_engine.instrumentation import HookRegistry, set_hook_registry
from deploy_engine.models import (
    AddonChart,
    CloudProviderKind,
    KubernetesCluster,
    NodeGroup,
)
from deploy_engine.ports.step_executor import (
    ExecutionContext,
    IStepExecutor,
    StepOutcome,
)
from deploy_engine.primitives.cancellation import CancellationToken
from deploy_engine.primitives.exceptions import (
    StepExecutionError,
    TransientProviderError,
)
from deploy_engine.transaction import Action, ActionKind

# ── Scripted steps ───────────────────────────────────────────────────


class ScriptedStep:
    """Step executor replaying a script of outcomes (or exceptions).

    The last entry repeats once the script is exhausted. Every call is
    appended to ``journal`` so tests can assert global execution order.
    """

    def __init__(
        self,
        name: str,
        script: list[StepOutcome | BaseException] | None = None,
        *,
        journal: list[str] | None = None,
        delay: float = 0.0,
        started: asyncio.Event | None = None,
    ) -> None:
        self.name = name
        self.script = list(script or [StepOutcome.succeeded()])
        self.journal = journal
        self.delay = delay
        self.started = started
        self.calls = 0
        self.contexts: list[ExecutionContext] = []

    async def execute(self, ctx: ExecutionContext) -> StepOutcome:
        self.calls += 1
        self.contexts.append(ctx)
        if self.journal is not None:
            self.journal.append(self.name)
        if self.started is not None:
            self.started.set()
        if self.delay and await ctx.token.wait(timeout=self.delay):
            return StepOutcome.cancelled(ctx.token.reason)
        entry = self.script[min(self.calls - 1, len(self.script) - 1)]
        if isinstance(entry, BaseException):
            raise entry
        return entry


def ok() -> StepOutcome:
    return StepOutcome.succeeded()


def fail(message: str = "boom") -> StepOutcome:
    return StepOutcome.failed(StepExecutionError(message))


def transient(message: str = "throttled") -> StepOutcome:
    return StepOutcome.failed(TransientProviderError(message), retryable=True)


def make_action(
    action_id: str,
    *,
    kind: ActionKind = ActionKind.CUSTOM,
    forward: IStepExecutor | None = None,
    rollback: IStepExecutor | None = None,
    depends_on: tuple[str, ...] = (),
    journal: list[str] | None = None,
    reversible: bool = True,
    **kwargs: Any,
) -> Action:
    """Action whose steps are named ``<id>`` and ``undo:<id>`` in the journal."""
    if forward is None:
        forward = ScriptedStep(action_id, journal=journal)
    if rollback is None and reversible:
        rollback = ScriptedStep(f"undo:{action_id}", journal=journal)
    return Action(
        id=action_id,
        kind=kind,
        forward=forward,
        rollback=rollback,
        depends_on=depends_on,
        **kwargs,
    )


# ── Fake command runner ──────────────────────────────────────────────


@dataclass
class _Rule:
    prefix: tuple[str, ...]
    returncode: int = 0
    stdout: tuple[str, ...] = ()
    stderr: tuple[str, ...] = ()
    abort_reason: AbortReason | None = None
    times: int | None = None


@dataclass
class FakeRunner:
    """Stands in for ``run_command``; answers by matching argument prefixes.

    ``when("apply")`` matches ``terraform apply ...``; rules with ``times``
    are consumed, the first matching rule wins, unmatched commands succeed.
    """

    calls: list[list[str]] = field(default_factory=list)
    kwargs: list[dict[str, Any]] = field(default_factory=list)
    rules: list[_Rule] = field(default_factory=list)

    def when(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        abort_reason: AbortReason | None = None,
        times: int | None = None,
    ) -> FakeRunner:
        self.rules.append(
            _Rule(
                prefix=prefix,
                returncode=returncode,
                stdout=tuple(stdout.splitlines()),
                stderr=tuple(stderr.splitlines()),
                abort_reason=abort_reason,
                times=times,
            )
        )
        return self

    async def __call__(self, command: Any, **kwargs: Any) -> CommandResult:
        command = [str(c) for c in command]
        self.calls.append(command)
        self.kwargs.append(kwargs)
        args = tuple(command[1:])
        for rule in self.rules:
            if args[: len(rule.prefix)] != rule.prefix:
                continue
            if rule.times is not None:
                if rule.times == 0:
                    continue
                rule.times -= 1
            return CommandResult(
                command=tuple(command),
                returncode=None if rule.abort_reason else rule.returncode,
                stdout=rule.stdout,
                stderr=rule.stderr,
                abort_reason=rule.abort_reason,
            )
        return CommandResult(command=tuple(command), returncode=0)

    def subcommands(self) -> list[str]:
        return [call[1] for call in self.calls]


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def backoff_delays(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Retry backoff returns immediately; requested delays are recorded."""
    delays: list[float] = []

    async def _instant(token: CancellationToken, delay: float) -> bool:
        delays.append(delay)
        await asyncio.sleep(0)
        return token.is_cancelled

    monkeypatch.setattr(retry_module, "_wait_or_cancel", _instant)
    return delays


@pytest.fixture(autouse=True)
def hook_registry() -> HookRegistry:
    """A fresh hook registry per test."""
    registry = HookRegistry()
    set_hook_registry(registry)
    return registry


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken(name="test")


@pytest.fixture
def ctx(token: CancellationToken) -> ExecutionContext:
    return ExecutionContext(token=token, cluster_id="c-1", execution_id="exec-1")


@pytest.fixture
def journal() -> list[str]:
    return []


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def cluster(tmp_path: Path) -> KubernetesCluster:
    return KubernetesCluster(
        id="c-1",
        name="prod",
        organization_id="org-1",
        provider=CloudProviderKind.AWS,
        region="eu-west-3",
        network_plan_dir=tmp_path / "network",
        cluster_plan_dir=tmp_path / "cluster",
        node_groups=(
            NodeGroup(name="default", plan_dir=tmp_path / "ng-default"),
            NodeGroup(name="spot", plan_dir=tmp_path / "ng-spot", min_nodes=0),
        ),
        addons=(
            AddonChart(name="cert-manager", chart="jetstack/cert-manager"),
            AddonChart(
                name="ingress",
                chart="ingress-nginx/ingress-nginx",
                namespace="ingress",
                depends_on=("cert-manager",),
            ),
        ),
        kubeconfig=tmp_path / "kubeconfig",
    )
