"""TransactionResult: terminal value of one commit."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .action import ActionState, ActionStatus


class TransactionOutcome(str, Enum):
    OK = "OK"
    ROLLBACK = "ROLLBACK"
    UNRECOVERABLE = "UNRECOVERABLE"


@dataclass(frozen=True)
class TransactionResult:
    """
    Exactly one of three outcomes:

    - ``OK``: every action succeeded.
    - ``ROLLBACK``: an action failed and every applied action was undone.
    - ``UNRECOVERABLE``: an action failed and the unwind did not complete,
      either because a rollback failed or because non-reversible actions
      stay applied. Resources are left behind and need an operator.
    """

    outcome: TransactionOutcome
    error: BaseException | None = None
    rollback_error: BaseException | None = None
    statuses: dict[str, ActionState] = field(default_factory=dict)
    applied: tuple[str, ...] = ()
    rolled_back: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    left_behind: tuple[str, ...] = ()
    duration: float = 0.0

    @classmethod
    def ok(cls, **kwargs: object) -> TransactionResult:
        return cls(outcome=TransactionOutcome.OK, **kwargs)  # type: ignore[arg-type]

    @classmethod
    def rollback(cls, error: BaseException, **kwargs: object) -> TransactionResult:
        return cls(
            outcome=TransactionOutcome.ROLLBACK,
            error=error,
            **kwargs,  # type: ignore[arg-type]
        )

    @classmethod
    def unrecoverable(
        cls,
        error: BaseException,
        rollback_error: BaseException,
        **kwargs: object,
    ) -> TransactionResult:
        return cls(
            outcome=TransactionOutcome.UNRECOVERABLE,
            error=error,
            rollback_error=rollback_error,
            **kwargs,  # type: ignore[arg-type]
        )

    @property
    def success(self) -> bool:
        return self.outcome is TransactionOutcome.OK

    @property
    def requires_manual_intervention(self) -> bool:
        return self.outcome is TransactionOutcome.UNRECOVERABLE

    def status_of(self, action_id: str) -> ActionStatus:
        return self.statuses[action_id].status

    def __str__(self) -> str:
        if self.outcome is TransactionOutcome.OK:
            return f"OK ({len(self.applied)} actions applied)"
        if self.outcome is TransactionOutcome.ROLLBACK:
            return f"ROLLBACK: {self.error}"
        return f"UNRECOVERABLE: {self.error}; rollback: {self.rollback_error}"
