"""Cooperative cancellation threaded through every suspension point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from .exceptions import OperationCancelledError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("deploy_engine.cancellation")


class CancellationToken:
    """
    One-shot cancellation signal.

    Tokens form a tree: cancelling a parent cancels every child created
    through :meth:`child`, cancelling a child never reaches the parent.
    Unlike ``asyncio.Task.cancel`` nothing is interrupted implicitly;
    code observes the token at its own suspension points.

    Usage:
        ```python
        token = CancellationToken()
        fired = await token.wait(timeout=5.0)  # False after 5s
        token.cancel("request aborted")
        token.raise_if_cancelled()  # OperationCancelledError
        ```
    """

    def __init__(self, *, name: str | None = None) -> None:
        self.name = name
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[CancellationToken], None]] = []
        self._children: list[CancellationToken] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self._reason = reason or "cancelled"
        self._event.set()
        logger.info(
            "Cancellation requested: %s",
            self._reason,
            extra={"token": self.name},
        )
        for callback in list(self._callbacks):
            try:
                callback(self)
            except Exception:  # noqa: BLE001
                logger.exception("Cancellation callback failed")
        for child in list(self._children):
            child.cancel(self._reason)
        return True

    def child(self, *, name: str | None = None) -> CancellationToken:
        """Create a token cancelled together with this one."""
        token = CancellationToken(name=name)
        if self.is_cancelled:
            token.cancel(self._reason)
        else:
            self._children.append(token)
        return token

    def add_callback(self, callback: Callable[[CancellationToken], None]) -> None:
        """Run ``callback`` on cancellation (immediately if already fired)."""
        if self.is_cancelled:
            callback(self)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[CancellationToken], None]) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(callback)

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for cancellation. Returns True if the token fired in time."""
        if timeout is None:
            await self._event.wait()
            return True
        if timeout <= 0:
            return self.is_cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise OperationCancelledError(self._reason)

    def __repr__(self) -> str:
        state = f"cancelled={self._reason!r}" if self.is_cancelled else "active"
        return f"CancellationToken(name={self.name!r}, {state})"
