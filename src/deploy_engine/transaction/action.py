"""Actions: orderable units of provisioning work with an optional rollback."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from ..primitives.exceptions import ConfigurationError, TransactionStateError

if TYPE_CHECKING:
    from ..ports.step_executor import IStepExecutor
    from ..retry import RetryPolicy


class ActionKind(str, Enum):
    """What an action provisions; drives default ordering and step selection."""

    PROVISION_NETWORK = "PROVISION_NETWORK"
    PROVISION_CLUSTER = "PROVISION_CLUSTER"
    PROVISION_NODE_GROUP = "PROVISION_NODE_GROUP"
    INSTALL_ADDON = "INSTALL_ADDON"
    UPGRADE_CLUSTER = "UPGRADE_CLUSTER"
    PAUSE_CLUSTER = "PAUSE_CLUSTER"
    DELETE_CLUSTER = "DELETE_CLUSTER"
    BUILD_ENVIRONMENT = "BUILD_ENVIRONMENT"
    PROVISION_DATABASE = "PROVISION_DATABASE"
    DEPLOY_ENVIRONMENT = "DEPLOY_ENVIRONMENT"
    CONFIGURE_ROUTER = "CONFIGURE_ROUTER"
    PAUSE_ENVIRONMENT = "PAUSE_ENVIRONMENT"
    DELETE_ENVIRONMENT = "DELETE_ENVIRONMENT"
    CUSTOM = "CUSTOM"

    @property
    def ordering_key(self) -> int:
        """Network before control plane before node groups before add-ons
        before workloads."""
        return _ORDERING[self]

    @property
    def can_be_cancelled(self) -> bool:
        """Whether interrupting this kind midway is considered safe."""
        return self not in _NOT_CANCELLABLE


_ORDERING: dict[ActionKind, int] = {
    ActionKind.PROVISION_NETWORK: 0,
    ActionKind.PROVISION_CLUSTER: 10,
    ActionKind.UPGRADE_CLUSTER: 10,
    ActionKind.PROVISION_NODE_GROUP: 20,
    ActionKind.INSTALL_ADDON: 30,
    ActionKind.BUILD_ENVIRONMENT: 40,
    ActionKind.PROVISION_DATABASE: 50,
    ActionKind.DEPLOY_ENVIRONMENT: 60,
    ActionKind.CONFIGURE_ROUTER: 70,
    ActionKind.PAUSE_ENVIRONMENT: 80,
    ActionKind.DELETE_ENVIRONMENT: 80,
    ActionKind.PAUSE_CLUSTER: 90,
    ActionKind.DELETE_CLUSTER: 100,
    ActionKind.CUSTOM: 60,
}

# Cluster-level changes leave the IaC state inconsistent when interrupted.
_NOT_CANCELLABLE = frozenset(
    {
        ActionKind.PROVISION_CLUSTER,
        ActionKind.UPGRADE_CLUSTER,
        ActionKind.PAUSE_CLUSTER,
        ActionKind.DELETE_CLUSTER,
    }
)


@dataclass(frozen=True)
class Action:
    """
    A named unit of work: a forward executor and an optional rollback.

    An action without ``rollback`` is non-reversible: if it succeeded and a
    later action fails, the resources it created stay behind.
    """

    id: str
    kind: ActionKind
    forward: IStepExecutor
    rollback: IStepExecutor | None = None
    depends_on: tuple[str, ...] = ()
    ordering_key: int | None = None
    description: str = ""
    retry_policy: RetryPolicy | None = None
    rollback_retry_policy: RetryPolicy | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.depends_on, tuple):
            object.__setattr__(self, "depends_on", tuple(self.depends_on))
        if not self.id:
            raise ConfigurationError("action id must not be empty")
        if self.id in self.depends_on:
            raise ConfigurationError(f"action {self.id!r} depends on itself")
        if len(set(self.depends_on)) != len(self.depends_on):
            raise ConfigurationError(f"action {self.id!r} has duplicate dependencies")

    @property
    def priority(self) -> int:
        if self.ordering_key is None:
            return self.kind.ordering_key
        return self.ordering_key

    @property
    def is_reversible(self) -> bool:
        return self.rollback is not None

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


class ActionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"

    @property
    def is_final(self) -> bool:
        return self in (
            ActionStatus.FAILED,
            ActionStatus.ROLLED_BACK,
            ActionStatus.ROLLBACK_FAILED,
        )


_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.RUNNING}),
    ActionStatus.RUNNING: frozenset({ActionStatus.SUCCEEDED, ActionStatus.FAILED}),
    ActionStatus.SUCCEEDED: frozenset(
        {ActionStatus.ROLLED_BACK, ActionStatus.ROLLBACK_FAILED}
    ),
    ActionStatus.FAILED: frozenset(),
    ActionStatus.ROLLED_BACK: frozenset(),
    ActionStatus.ROLLBACK_FAILED: frozenset(),
}


@dataclass
class ActionState:
    """Mutable status record of one action inside one commit."""

    action_id: str
    status: ActionStatus = ActionStatus.PENDING
    error: BaseException | None = None
    attempts: int = 0
    output: object = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    history: list[ActionStatus] = field(default_factory=list)

    def transition(
        self,
        status: ActionStatus,
        *,
        error: BaseException | None = None,
        output: object = None,
    ) -> None:
        """Move to ``status``; only forward transitions are legal."""
        if status not in _TRANSITIONS[self.status]:
            raise TransactionStateError(
                f"action {self.action_id!r}: illegal transition "
                f"{self.status.value} -> {status.value}"
            )
        now = datetime.now(timezone.utc)
        if status is ActionStatus.RUNNING:
            self.started_at = now
        else:
            self.finished_at = now
        self.history.append(self.status)
        self.status = status
        if error is not None:
            self.error = error
        if output is not None:
            self.output = output

    def snapshot(self) -> ActionState:
        return ActionState(
            action_id=self.action_id,
            status=self.status,
            error=self.error,
            attempts=self.attempts,
            output=self.output,
            started_at=self.started_at,
            finished_at=self.finished_at,
            history=list(self.history),
        )
