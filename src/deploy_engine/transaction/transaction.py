"""Transaction: the unit of commitment.

A Transaction is built from Actions, committed once, and always ends in one
of three terminal states::

    BUILDING -> COMMITTING -> COMMITTED | ROLLED_BACK | UNRECOVERABLE

On failure (or cancellation, which is a failure caused by
:class:`OperationCancelledError`) every SUCCEEDED action is rolled back in
exact reverse order of forward success, under a fresh token so the request's
cancellation cannot interrupt the unwind.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..correlation import set_action_id
from ..instrumentation import ACTION_ROLLBACK, TRANSACTION_COMMIT, instrument
from ..ports.step_executor import StepOutcome
from ..primitives.cancellation import CancellationToken
from ..primitives.exceptions import (
    ConfigurationError,
    OperationCancelledError,
    RollbackError,
    StepExecutionError,
    TransactionStateError,
)
from ..retry import RetryingStepExecutor, RetryPolicy
from .action import ActionState, ActionStatus
from .graph import ActionGraph
from .result import TransactionResult
from .sequencer import Sequencer

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from ..instrumentation import HookRegistry
    from ..models.environment import DeploymentOption, Environment
    from ..planning.planner import ActionPlanner
    from ..ports.step_executor import ExecutionContext
    from .action import Action

logger = logging.getLogger("deploy_engine.transaction")


class TransactionState(str, Enum):
    BUILDING = "BUILDING"
    COMMITTING = "COMMITTING"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"
    UNRECOVERABLE = "UNRECOVERABLE"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransactionState.COMMITTED,
            TransactionState.ROLLED_BACK,
            TransactionState.UNRECOVERABLE,
        )


class Transaction:
    """
    Ordered set of actions committed with rollback-on-failure.

    Usage:
        ```python
        tx = session.transaction()
        tx.create_kubernetes()
        tx.add_action(Action("smoke-test", ActionKind.CUSTOM, forward=step,
                             depends_on=("install-addon:ingress",)))
        result = await tx.commit()
        if result.requires_manual_intervention:
            page_operator(result)
        ```
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        transaction_id: str | None = None,
        max_parallel: int = 4,
        retry_policy: RetryPolicy | None = None,
        rollback_retry_policy: RetryPolicy | None = None,
        planner: ActionPlanner | None = None,
        hooks: HookRegistry | None = None,
        on_status_change: Callable[[str, ActionState], None] | None = None,
    ) -> None:
        self.id = transaction_id or str(uuid.uuid4())
        self._ctx = ctx
        self._max_parallel = max_parallel
        self._retry_policy = retry_policy or RetryPolicy()
        self._rollback_retry_policy = rollback_retry_policy or RetryPolicy()
        self._planner = planner
        self._hooks = hooks
        self.on_status_change = on_status_change

        self._state = TransactionState.BUILDING
        self._actions: dict[str, Action] = {}
        self._states: dict[str, ActionState] = {}
        self._applied: list[str] = []
        self._result: TransactionResult | None = None

    # ── Introspection ────────────────────────────────────────────────

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def token(self) -> CancellationToken:
        return self._ctx.token

    @property
    def actions(self) -> list[Action]:
        return list(self._actions.values())

    @property
    def result(self) -> TransactionResult | None:
        return self._result

    def statuses(self) -> dict[str, ActionState]:
        return {a: s.snapshot() for a, s in self._states.items()}

    def status_of(self, action_id: str) -> ActionStatus:
        return self._states[action_id].status

    def __len__(self) -> int:
        return len(self._actions)

    def __repr__(self) -> str:
        return (
            f"Transaction(id={self.id!r}, state={self._state.value}, "
            f"actions={len(self._actions)})"
        )

    # ── Building ─────────────────────────────────────────────────────

    def add_action(self, action: Action) -> Transaction:
        """Append one action; its dependencies must already be present."""
        self._require_building()
        if action.id in self._actions:
            raise ConfigurationError(f"duplicate action id {action.id!r}")
        for dep in action.depends_on:
            if dep not in self._actions:
                raise ConfigurationError(
                    f"action {action.id!r} depends on unknown action {dep!r}"
                )
        self._insert(action)
        return self

    def add_actions(self, actions: Iterable[Action]) -> Transaction:
        """Append a batch in any order; the batch is validated as a whole.

        Cycles, duplicates and unknown dependencies raise
        :class:`ConfigurationError` and leave the transaction unchanged.
        """
        self._require_building()
        batch = list(actions)
        ActionGraph([*self._actions.values(), *batch])
        for action in batch:
            self._insert(action)
        return self

    def _insert(self, action: Action) -> None:
        self._actions[action.id] = action
        self._states[action.id] = ActionState(action_id=action.id)
        logger.debug("Added %s to transaction %s", action, self.id)

    # ── Planner helpers ──────────────────────────────────────────────

    def create_kubernetes(self) -> Transaction:
        return self.add_actions(self._require_planner().create_kubernetes())

    def upgrade_kubernetes(self) -> Transaction:
        return self.add_actions(self._require_planner().upgrade_kubernetes())

    def pause_kubernetes(self) -> Transaction:
        return self.add_actions(self._require_planner().pause_kubernetes())

    def delete_kubernetes(self) -> Transaction:
        return self.add_actions(self._require_planner().delete_kubernetes())

    def build_environment(
        self, environment: Environment, option: DeploymentOption | None = None
    ) -> Transaction:
        return self.add_actions(
            self._require_planner().build_environment(
                environment, option, planned=self._actions
            )
        )

    def deploy_environment(
        self, environment: Environment, option: DeploymentOption | None = None
    ) -> Transaction:
        """Build the environment's images, then deploy it.

        An image another environment of this transaction already builds is
        built once and shared.
        """
        return self.add_actions(
            self._require_planner().deploy_environment(
                environment, option, planned=self._actions
            )
        )

    def pause_environment(self, environment: Environment) -> Transaction:
        return self.add_actions(
            self._require_planner().pause_environment(environment)
        )

    def delete_environment(self, environment: Environment) -> Transaction:
        return self.add_actions(
            self._require_planner().delete_environment(environment)
        )

    def _require_planner(self) -> ActionPlanner:
        if self._planner is None:
            raise ConfigurationError(
                "this transaction has no planner; create it from a Session"
            )
        return self._planner

    def _require_building(self) -> None:
        if self._state is not TransactionState.BUILDING:
            raise TransactionStateError(
                f"transaction {self.id} is {self._state.value}; "
                "actions can only be added while BUILDING"
            )

    # ── Commit ───────────────────────────────────────────────────────

    async def commit(self) -> TransactionResult:
        """Run every action; roll back the applied ones on failure.

        Raises:
            TransactionStateError: when called more than once.
        """
        if self._state is not TransactionState.BUILDING:
            raise TransactionStateError(
                f"transaction {self.id} is {self._state.value}; "
                "a transaction can only be committed once"
            )
        self._state = TransactionState.COMMITTING
        result: TransactionResult = await instrument(
            TRANSACTION_COMMIT,
            {"transaction_id": self.id, "actions": len(self._actions)},
            self._commit,
            hooks=self._hooks,
        )
        return result

    async def _commit(self) -> TransactionResult:
        started = time.monotonic()
        logger.info(
            "Committing transaction %s with %d actions",
            self.id,
            len(self._actions),
            extra={"transaction_id": self.id},
        )
        graph = ActionGraph(self._actions.values())
        sequencer = Sequencer(
            self._max_parallel,
            retry_policy=self._retry_policy,
            hooks=self._hooks,
            on_transition=self._on_transition,
        )
        try:
            report = await sequencer.run(
                graph, self._states, self._ctx, transaction_id=self.id
            )
        except asyncio.CancelledError:
            logger.warning("Commit of %s interrupted, unwinding", self.id)
            await self._finish(
                OperationCancelledError("commit task cancelled"),
                graph,
                started,
                skipped=self._pending(),
            )
            raise

        if report.success:
            self._state = TransactionState.COMMITTED
            self._result = TransactionResult.ok(
                statuses=self.statuses(),
                applied=tuple(self._applied),
                duration=time.monotonic() - started,
            )
            logger.info(
                "Transaction %s committed (%d actions)",
                self.id,
                len(self._applied),
                extra={"transaction_id": self.id},
            )
            return self._result

        assert report.error is not None
        return await self._finish(
            report.error, graph, started, skipped=tuple(report.skipped)
        )

    def _pending(self) -> tuple[str, ...]:
        return tuple(
            a for a, s in self._states.items() if s.status is ActionStatus.PENDING
        )

    # ── Rollback ─────────────────────────────────────────────────────

    async def _finish(
        self,
        error: BaseException,
        graph: ActionGraph,
        started: float,
        *,
        skipped: tuple[str, ...],
    ) -> TransactionResult:
        logger.error(
            "Transaction %s failed: %s; rolling back %d applied actions",
            self.id,
            error,
            len(self._applied),
            extra={"transaction_id": self.id},
        )
        rolled_back, left_behind, rollback_error = await self._rollback(graph)
        fields: dict[str, Any] = {
            "statuses": self.statuses(),
            "applied": tuple(self._applied),
            "rolled_back": tuple(rolled_back),
            "skipped": skipped,
            "left_behind": tuple(left_behind),
            "duration": time.monotonic() - started,
        }

        if rollback_error is None:
            self._state = TransactionState.ROLLED_BACK
            self._result = TransactionResult.rollback(error, **fields)
            logger.warning(
                "Transaction %s rolled back after failure: %s",
                self.id,
                error,
                extra={"transaction_id": self.id},
            )
            return self._result

        self._state = TransactionState.UNRECOVERABLE
        self._result = TransactionResult.unrecoverable(error, rollback_error, **fields)
        logger.critical(
            "Transaction %s is UNRECOVERABLE, manual intervention required. "
            "Original error: %s. Rollback error: %s. Resources left behind: %s",
            self.id,
            error,
            rollback_error,
            ", ".join(left_behind) or "-",
            extra={"transaction_id": self.id, "left_behind": left_behind},
        )
        return self._result

    async def _rollback(
        self, graph: ActionGraph
    ) -> tuple[list[str], list[str], RollbackError | None]:
        """
        Undo applied actions, last applied first.

        Stops at the first failing rollback. Returns the rolled back ids, the
        ids whose resources stay applied, and the error that makes the
        outcome unrecoverable, if any.
        """
        token = CancellationToken(name=f"{self.id}:rollback")
        ctx = self._ctx.with_token(token)
        rolled_back: list[str] = []
        left_behind: list[str] = []
        order = list(reversed(self._applied))

        try:
            for position, action_id in enumerate(order):
                action = graph[action_id]
                if action.rollback is None:
                    logger.warning(
                        "%s has no rollback, its resources stay applied", action
                    )
                    left_behind.append(action_id)
                    continue

                set_action_id(action_id)
                outcome = await self._rollback_one(action, ctx)
                state = self._states[action_id]
                if outcome.success:
                    state.transition(ActionStatus.ROLLED_BACK)
                    self._on_transition(state.snapshot())
                    rolled_back.append(action_id)
                    continue

                cause = outcome.error or StepExecutionError(
                    f"rollback of {action_id!r} failed without an error"
                )
                state.transition(ActionStatus.ROLLBACK_FAILED, error=cause)
                self._on_transition(state.snapshot())
                left_behind.extend(order[position:])
                return (
                    rolled_back,
                    left_behind,
                    RollbackError(
                        f"rollback of {action} failed: {cause}",
                        action_id=action_id,
                        cause=cause,
                        left_behind=left_behind,
                    ),
                )
        finally:
            set_action_id(None)

        if left_behind:
            return (
                rolled_back,
                left_behind,
                RollbackError(
                    "actions without rollback stay applied: " + ", ".join(left_behind),
                    left_behind=left_behind,
                ),
            )
        return rolled_back, left_behind, None

    async def _rollback_one(self, action: Action, ctx: ExecutionContext) -> StepOutcome:
        assert action.rollback is not None
        executor = RetryingStepExecutor(
            action.rollback,
            action.rollback_retry_policy or self._rollback_retry_policy,
        )
        logger.info("Rolling back %s", action, extra={"action_id": action.id})
        try:
            outcome: StepOutcome = await instrument(
                ACTION_ROLLBACK,
                {
                    "action_id": action.id,
                    "action_kind": action.kind.value,
                    "transaction_id": self.id,
                },
                lambda: executor.execute(ctx),
                hooks=self._hooks,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Rollback of %s raised", action.id)
            outcome = StepOutcome.from_exception(exc)
        return outcome

    # ── Status listener ──────────────────────────────────────────────

    def _on_transition(self, state: ActionState) -> None:
        if state.status is ActionStatus.SUCCEEDED:
            self._applied.append(state.action_id)
        if self.on_status_change is None:
            return
        try:
            self.on_status_change(state.action_id, state)
        except Exception:  # noqa: BLE001
            logger.exception("Status listener failed for %s", state.action_id)
