"""Error taxonomy for the deployment engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .locking import ResourceIdentifier


class DeployEngineError(Exception):
    """Root exception for the entire deploy-engine package."""


# ── Configuration ────────────────────────────────────────────────────


class ConfigurationError(DeployEngineError):
    """Invalid or missing input. Never retried.

    Raised at Transaction-build time for duplicate ids, unknown or cyclic
    dependencies, and by step factories for unsupported provider/action pairs.
    """


class EngineConfigError(ConfigurationError):
    """The engine's collaborator set is inconsistent."""


class InvalidCredentialsError(ConfigurationError):
    """The cloud provider rejected the configured credentials."""


# ── Step execution ───────────────────────────────────────────────────


class TransientProviderError(DeployEngineError):
    """Throttling, eventual consistency, timeouts, lock contention.

    Step executors surface these as retryable outcomes.
    """


class StepExecutionError(DeployEngineError):
    """An external tool exited non-zero or rejected its plan.

    Carries the command line and captured stderr for classification.
    """

    def __init__(
        self,
        message: str,
        *,
        tool: str | None = None,
        command: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        self.tool = tool
        self.command = tuple(command)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class QuotaExceededError(StepExecutionError):
    """A provider quota has been reached."""

    def __init__(
        self,
        message: str,
        *,
        resource_type: str | None = None,
        max_resource_count: int | None = None,
        tool: str | None = None,
        stderr: str = "",
    ) -> None:
        self.resource_type = resource_type
        self.max_resource_count = max_resource_count
        super().__init__(message, tool=tool, stderr=stderr)


class PermissionDeniedError(StepExecutionError):
    """The provider's IAM denied an action on a resource."""

    def __init__(
        self,
        message: str,
        *,
        user: str | None = None,
        action: str | None = None,
        resource: str | None = None,
        tool: str | None = None,
        stderr: str = "",
    ) -> None:
        self.user = user
        self.action = action
        self.resource = resource
        super().__init__(message, tool=tool, stderr=stderr)


class OperationCancelledError(DeployEngineError):
    """The cancellation token fired before the operation finished."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(
            f"Operation cancelled: {reason}" if reason else "Operation cancelled"
        )


# ── Transaction lifecycle ────────────────────────────────────────────


class RollbackError(DeployEngineError):
    """Rollback could not restore the pre-transaction state.

    Either a rollback executor failed after its own retries, or actions
    without a rollback were left applied.
    """

    def __init__(
        self,
        message: str,
        *,
        action_id: str | None = None,
        cause: BaseException | None = None,
        left_behind: Sequence[str] = (),
    ) -> None:
        self.action_id = action_id
        self.cause = cause
        self.left_behind = tuple(left_behind)
        super().__init__(message)


class TransactionStateError(DeployEngineError):
    """Illegal use of a Transaction or an action status transition."""


class SessionBusyError(DeployEngineError):
    """A second Transaction was requested while one is still active."""


class SessionClosedError(DeployEngineError):
    """A Transaction was requested from a closed session."""


# ── Locking ──────────────────────────────────────────────────────────


class LockAcquisitionError(TransientProviderError):
    """Failed to acquire a lease with detailed context."""

    def __init__(
        self,
        resource: ResourceIdentifier,
        timeout: float,
        reason: str | None = None,
    ) -> None:
        self.resource = resource
        self.timeout = timeout
        self.reason = reason

        msg = (
            f"Failed to acquire {resource.lock_mode} lock on "
            f"{resource.resource_type}:{resource.resource_id} "
            f"within {timeout}s"
        )
        if reason:
            msg += f" - {reason}"

        super().__init__(msg)
