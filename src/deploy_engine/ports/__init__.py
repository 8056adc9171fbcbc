"""Ports: protocols the engine depends on."""

from __future__ import annotations

from .locking import ActiveLock, ILockStrategy
from .providers import IBuildPlatform, ICloudProvider, IContainerRegistry, IDnsProvider
from .step_executor import ExecutionContext, IStepExecutor, StepOutcome

__all__ = [
    "ActiveLock",
    "ExecutionContext",
    "IBuildPlatform",
    "ICloudProvider",
    "IContainerRegistry",
    "IDnsProvider",
    "ILockStrategy",
    "IStepExecutor",
    "StepOutcome",
]
