"""Sequencer: dependency-ordered, bounded-parallel dispatch of actions.

Every PENDING action whose dependencies have all SUCCEEDED is ready. Ready
actions are dispatched lowest ``(priority, declaration index)`` first onto at
most ``max_parallel`` asyncio tasks; each completion refills the pool. The
first failure or a cancellation of the token stops dispatch; actions already
running are awaited and observe the token themselves. A token that fires
at any point of the pass fails it, even when every action got to finish.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..correlation import set_action_id
from ..instrumentation import ACTION_FORWARD, instrument
from ..ports.step_executor import StepOutcome
from ..primitives.cancellation import CancellationToken
from ..primitives.exceptions import OperationCancelledError, StepExecutionError
from ..retry import RetryingStepExecutor, RetryPolicy
from .action import ActionStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..instrumentation import HookRegistry
    from ..ports.step_executor import ExecutionContext, IStepExecutor
    from .action import Action, ActionState
    from .graph import ActionGraph

logger = logging.getLogger("deploy_engine.sequencer")


@dataclass
class SequencerReport:
    """What one forward pass did."""

    applied: list[str] = field(default_factory=list)
    failed_action: str | None = None
    error: BaseException | None = None
    skipped: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, OperationCancelledError)


class _AttemptCounter:
    """Counts invocations of a step into its action's state."""

    def __init__(self, inner: IStepExecutor, state: ActionState) -> None:
        self.inner = inner
        self.state = state

    @property
    def name(self) -> str:
        return self.inner.name

    async def execute(self, ctx: ExecutionContext) -> StepOutcome:
        self.state.attempts += 1
        return await self.inner.execute(ctx)


class Sequencer:
    """Runs an :class:`ActionGraph` forward, once."""

    def __init__(
        self,
        max_parallel: int = 4,
        *,
        retry_policy: RetryPolicy | None = None,
        hooks: HookRegistry | None = None,
        on_transition: Callable[[ActionState], None] | None = None,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.max_parallel = max_parallel
        self.retry_policy = retry_policy or RetryPolicy()
        self._hooks = hooks
        self._on_transition = on_transition

    async def run(
        self,
        graph: ActionGraph,
        states: dict[str, ActionState],
        ctx: ExecutionContext,
        *,
        transaction_id: str | None = None,
    ) -> SequencerReport:
        report = SequencerReport()
        token = ctx.token
        pending = [
            a.id for a in graph.actions if states[a.id].status is ActionStatus.PENDING
        ]
        running: dict[asyncio.Task[StepOutcome], str] = {}
        halted = False
        cancel_wait = asyncio.ensure_future(token.wait())

        try:
            while True:
                if not halted and token.is_cancelled:
                    halted = True
                    if report.error is None:
                        report.error = OperationCancelledError(token.reason)
                    logger.warning(
                        "Dispatch stopped by cancellation, %d actions not started",
                        len(pending),
                        extra={"transaction_id": transaction_id},
                    )

                if not halted:
                    for action_id in self._ready(graph, states, pending, running):
                        pending.remove(action_id)
                        task = self._dispatch(
                            graph[action_id], states[action_id], ctx, transaction_id
                        )
                        running[task] = action_id

                if not running:
                    break

                waiters: set[asyncio.Future[Any]] = set(running)
                if not cancel_wait.done():
                    waiters.add(cancel_wait)
                done, _ = await asyncio.wait(
                    waiters, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is cancel_wait:
                        continue
                    action_id = running.pop(task)  # type: ignore[arg-type]
                    outcome = task.result()
                    if self._record(states[action_id], outcome, report):
                        continue
                    if not halted:
                        halted = True
                        logger.warning(
                            "Action %s failed, no further actions dispatched: %s",
                            action_id,
                            report.error,
                            extra={"transaction_id": transaction_id},
                        )
        finally:
            cancel_wait.cancel()
            if running:
                # Our own task was cancelled; in-flight actions go with it.
                for leftover in running:
                    leftover.cancel()
                await asyncio.gather(*running, return_exceptions=True)
                for leftover, action_id in running.items():
                    if not leftover.cancelled():
                        # Finished before the cancel reached it.
                        self._record(states[action_id], leftover.result(), report)
                        continue
                    states[action_id].transition(
                        ActionStatus.FAILED,
                        error=OperationCancelledError("commit task cancelled"),
                    )
                    self._notify(states[action_id])

        report.skipped = list(pending)
        if report.skipped:
            logger.info(
                "%d actions skipped: %s",
                len(report.skipped),
                ", ".join(report.skipped),
                extra={"transaction_id": transaction_id},
            )
        return report

    def _ready(
        self,
        graph: ActionGraph,
        states: dict[str, ActionState],
        pending: list[str],
        running: dict[asyncio.Task[StepOutcome], str],
    ) -> list[str]:
        free = self.max_parallel - len(running)
        if free <= 0:
            return []
        ready = [
            action_id
            for action_id in pending
            if all(
                states[dep].status is ActionStatus.SUCCEEDED
                for dep in graph[action_id].depends_on
            )
        ]
        ready.sort(key=graph.sort_key)
        return ready[:free]

    def _dispatch(
        self,
        action: Action,
        state: ActionState,
        ctx: ExecutionContext,
        transaction_id: str | None,
    ) -> asyncio.Task[StepOutcome]:
        state.transition(ActionStatus.RUNNING)
        self._notify(state)
        logger.info(
            "Starting %s",
            action,
            extra={"action_id": action.id, "transaction_id": transaction_id},
        )
        if not action.kind.can_be_cancelled:
            # Interrupting a cluster-level change corrupts the IaC state;
            # the action runs to completion and the unwind follows.
            ctx = ctx.with_token(CancellationToken(name=f"{action.id}:uncancellable"))
        return asyncio.create_task(
            self._run_action(action, state, ctx, transaction_id),
            name=f"action:{action.id}",
        )

    async def _run_action(
        self,
        action: Action,
        state: ActionState,
        ctx: ExecutionContext,
        transaction_id: str | None,
    ) -> StepOutcome:
        set_action_id(action.id)
        executor = RetryingStepExecutor(
            _AttemptCounter(action.forward, state),
            action.retry_policy or self.retry_policy,
        )
        try:
            outcome: StepOutcome = await instrument(
                ACTION_FORWARD,
                {
                    "action_id": action.id,
                    "action_kind": action.kind.value,
                    "transaction_id": transaction_id,
                },
                lambda: executor.execute(ctx),
                hooks=self._hooks,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Action %s raised", action.id)
            outcome = StepOutcome.from_exception(exc)
        return outcome

    def _record(
        self,
        state: ActionState,
        outcome: StepOutcome,
        report: SequencerReport,
    ) -> bool:
        """Apply an outcome to the action's state; True on success."""
        if outcome.success:
            state.transition(ActionStatus.SUCCEEDED, output=outcome.output)
            report.applied.append(state.action_id)
            self._notify(state)
            logger.info(
                "Action %s succeeded after %d attempt(s)",
                state.action_id,
                state.attempts,
            )
            return True

        error = outcome.error or StepExecutionError(
            f"action {state.action_id!r} failed without an error"
        )
        state.transition(ActionStatus.FAILED, error=error, output=outcome.output)
        self._notify(state)
        # A real failure supersedes a bare token cancellation as the cause.
        supersedes = report.failed_action is None and not isinstance(
            error, OperationCancelledError
        )
        if report.error is None or supersedes:
            report.failed_action = state.action_id
            report.error = error
        return False

    def _notify(self, state: ActionState) -> None:
        if self._on_transition is None:
            return
        try:
            self._on_transition(state.snapshot())
        except Exception:  # noqa: BLE001
            logger.exception("Status listener failed for %s", state.action_id)
