"""Desired-state models consumed by the action planner."""

from __future__ import annotations

from .environment import (
    Application,
    ContainerImage,
    Database,
    DatabaseMode,
    DeploymentOption,
    Environment,
    ImageBuild,
    Router,
    WorkloadKind,
)
from .infrastructure import AddonChart, CloudProviderKind, KubernetesCluster, NodeGroup

__all__ = [
    "AddonChart",
    "Application",
    "CloudProviderKind",
    "ContainerImage",
    "Database",
    "DatabaseMode",
    "DeploymentOption",
    "Environment",
    "ImageBuild",
    "KubernetesCluster",
    "NodeGroup",
    "Router",
    "WorkloadKind",
]
