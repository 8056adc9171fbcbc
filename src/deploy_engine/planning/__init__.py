"""Turning desired state into Actions: step builders and the planner."""

from __future__ import annotations

from .defaults import DefaultStepBuilders, reject_self_managed
from .factory import StepExecutorFactory, StepPair, StepRequest
from .planner import ActionPlanner

__all__ = [
    "ActionPlanner",
    "DefaultStepBuilders",
    "StepExecutorFactory",
    "StepPair",
    "StepRequest",
    "reject_self_managed",
]
