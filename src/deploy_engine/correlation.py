"""Execution id propagation for log records and spans."""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar

_execution_id: ContextVar[str | None] = ContextVar("execution_id", default=None)
_action_id: ContextVar[str | None] = ContextVar("action_id", default=None)


def get_execution_id() -> str | None:
    return _execution_id.get()


def set_execution_id(execution_id: str | None) -> None:
    _execution_id.set(execution_id)


def get_action_id() -> str | None:
    return _action_id.get()


def set_action_id(action_id: str | None) -> None:
    """Set inside a sequencer task; each task runs in its own context copy."""
    _action_id.set(action_id)


def generate_execution_id() -> str:
    return str(uuid.uuid4())


class ExecutionContextFilter(logging.Filter):
    """Stamp ``execution_id`` and ``action_id`` on every record.

    Usage:
        ```python
        handler.addFilter(ExecutionContextFilter())
        formatter = logging.Formatter("%(execution_id)s %(action_id)s %(message)s")
        ```
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "execution_id"):
            record.execution_id = get_execution_id()
        if not hasattr(record, "action_id"):
            record.action_id = get_action_id()
        return True
