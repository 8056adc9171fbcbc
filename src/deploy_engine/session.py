"""Session: one deployment request, at most one active Transaction."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from .correlation import generate_execution_id, set_execution_id
from .planning.planner import ActionPlanner
from .ports.step_executor import ExecutionContext
from .primitives.cancellation import CancellationToken
from .primitives.exceptions import SessionBusyError, SessionClosedError
from .retry import RetryPolicy
from .transaction.transaction import Transaction

if TYPE_CHECKING:
    from collections.abc import Callable

    from .engine import Engine
    from .transaction.action import ActionState

logger = logging.getLogger("deploy_engine.session")


class RequestContext(BaseModel):
    """Who asked for what: the identity of one deployment request."""

    model_config = ConfigDict(frozen=True)

    organization_id: str
    cluster_id: str
    execution_id: str = Field(default_factory=generate_execution_id)
    environment_id: str | None = None


class Session:
    """
    Single-owner context of one deployment request.

    The session token is a child of the request token: cancelling the
    request cancels the session and its active transaction, cancelling the
    session leaves the request token alone.

    Usage:
        ```python
        async with engine.session(request, token=request_token) as session:
            tx = session.transaction()
            tx.deploy_environment(environment)
            result = await tx.commit()
        ```
    """

    def __init__(
        self,
        engine: Engine,
        request: RequestContext,
        *,
        token: CancellationToken | None = None,
    ) -> None:
        self.engine = engine
        self.request = request
        parent = token or CancellationToken(name=f"request:{request.execution_id}")
        self.token = parent.child(name=f"session:{request.execution_id}")
        self._active: Transaction | None = None
        self._closed = False

    @property
    def execution_id(self) -> str:
        return self.request.execution_id

    @property
    def active_transaction(self) -> Transaction | None:
        return self._active

    @property
    def is_closed(self) -> bool:
        return self._closed

    def transaction(
        self,
        *,
        on_status_change: Callable[[str, ActionState], None] | None = None,
    ) -> Transaction:
        """Start the session's next Transaction.

        Raises:
            SessionClosedError: the session has been closed.
            SessionBusyError: the previous transaction has not terminated.
        """
        if self._closed:
            raise SessionClosedError(f"session {self.execution_id} is closed")
        if self._active is not None and not self._active.is_terminal:
            raise SessionBusyError(
                f"session {self.execution_id} already has transaction "
                f"{self._active.id} in state {self._active.state.value}"
            )

        set_execution_id(self.execution_id)
        engine = self.engine
        settings = engine.settings
        cluster = engine.kubernetes
        ctx = ExecutionContext(
            token=self.token,
            working_dir=cluster.working_dir,
            env=engine.tool_env(),
            kubeconfig=cluster.kubeconfig,
            cluster_id=cluster.id,
            execution_id=self.execution_id,
            dry_run=settings.dry_run,
        )
        self._active = Transaction(
            ctx,
            max_parallel=settings.max_parallel_actions,
            retry_policy=RetryPolicy.from_settings(settings.retry),
            rollback_retry_policy=RetryPolicy.from_settings(settings.rollback_retry),
            planner=ActionPlanner(cluster, engine.step_factory),
            hooks=engine.hooks,
            on_status_change=on_status_change,
        )
        logger.info(
            "Session %s started transaction %s",
            self.execution_id,
            self._active.id,
            extra={"execution_id": self.execution_id},
        )
        return self._active

    def cancel(self, reason: str | None = None) -> bool:
        """Cancel the session; the active commit stops and unwinds."""
        return self.token.cancel(reason or f"session {self.execution_id} cancelled")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._active is not None and not self._active.is_terminal:
            self.cancel("session closed")
        set_execution_id(None)
        logger.debug("Session %s closed", self.execution_id)

    async def __aenter__(self) -> Session:
        set_execution_id(self.execution_id)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f"Session(execution_id={self.execution_id!r}, "
            f"cluster_id={self.request.cluster_id!r}, closed={self._closed})"
        )
