"""Primitives: exceptions, cancellation, lockable resources."""

from __future__ import annotations

from .cancellation import CancellationToken
from .exceptions import (
    ConfigurationError,
    DeployEngineError,
    EngineConfigError,
    InvalidCredentialsError,
    LockAcquisitionError,
    OperationCancelledError,
    PermissionDeniedError,
    QuotaExceededError,
    RollbackError,
    SessionBusyError,
    SessionClosedError,
    StepExecutionError,
    TransactionStateError,
    TransientProviderError,
)
from .locking import IAC_STATE_RESOURCE, ResourceIdentifier

__all__ = [
    "IAC_STATE_RESOURCE",
    "CancellationToken",
    "ConfigurationError",
    "DeployEngineError",
    "EngineConfigError",
    "InvalidCredentialsError",
    "LockAcquisitionError",
    "OperationCancelledError",
    "PermissionDeniedError",
    "QuotaExceededError",
    "ResourceIdentifier",
    "RollbackError",
    "SessionBusyError",
    "SessionClosedError",
    "StepExecutionError",
    "TransactionStateError",
    "TransientProviderError",
]
