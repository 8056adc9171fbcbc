"""Actions, their dependency graph, the sequencer and the Transaction."""

from __future__ import annotations

from .action import Action, ActionKind, ActionState, ActionStatus
from .graph import ActionGraph
from .result import TransactionOutcome, TransactionResult
from .sequencer import Sequencer, SequencerReport
from .transaction import Transaction, TransactionState

__all__ = [
    "Action",
    "ActionGraph",
    "ActionKind",
    "ActionState",
    "ActionStatus",
    "Sequencer",
    "SequencerReport",
    "Transaction",
    "TransactionOutcome",
    "TransactionResult",
    "TransactionState",
]
