"""Step executors: the engine's boundary to external tools."""

from __future__ import annotations

from .base import ToolStep
from .classification import classify_failure, classify_output, is_transient
from .docker import ImageBuildStep, LocalDockerBuildPlatform
from .helm import HelmReleaseStep, HelmRevertStep, HelmUninstallStep
from .kubectl import KubectlApplyStep, KubectlDeleteStep, KubectlScaleStep
from .leasing import LeasedStep
from .process import AbortReason, CommandResult, run_command
from .steps import FunctionStep, NoopStep
from .terraform import TerraformApplyStep, TerraformDestroyStep

__all__ = [
    "AbortReason",
    "CommandResult",
    "FunctionStep",
    "HelmReleaseStep",
    "HelmRevertStep",
    "HelmUninstallStep",
    "ImageBuildStep",
    "KubectlApplyStep",
    "KubectlDeleteStep",
    "KubectlScaleStep",
    "LeasedStep",
    "LocalDockerBuildPlatform",
    "NoopStep",
    "TerraformApplyStep",
    "TerraformDestroyStep",
    "ToolStep",
    "classify_failure",
    "classify_output",
    "is_transient",
    "run_command",
]
