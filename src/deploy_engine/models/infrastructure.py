"""Cluster-side desired state: provider, network, node groups and add-ons."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CloudProviderKind(str, Enum):
    """Providers the engine can drive."""

    AWS = "AWS"
    AZURE = "AZURE"
    GCP = "GCP"
    SCALEWAY = "SCW"
    ON_PREMISE = "ON_PREMISE"

    @property
    def is_managed(self) -> bool:
        return self is not CloudProviderKind.ON_PREMISE


class NodeGroup(BaseModel):
    """A pool of worker nodes, provisioned by its own rendered plan."""

    model_config = ConfigDict(frozen=True)

    name: str
    plan_dir: Path
    instance_type: str = ""
    min_nodes: int = Field(default=1, ge=0)
    max_nodes: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> NodeGroup:
        if self.min_nodes > self.max_nodes:
            raise ValueError(
                f"node group {self.name}: min_nodes ({self.min_nodes}) "
                f"> max_nodes ({self.max_nodes})"
            )
        return self


class AddonChart(BaseModel):
    """A cluster add-on installed as a chart release (ingress, cert-manager, ...)."""

    model_config = ConfigDict(frozen=True)

    name: str
    chart: str
    namespace: str = "kube-system"
    version: str | None = None
    values_files: tuple[Path, ...] = ()
    depends_on: tuple[str, ...] = ()
    timeout_seconds: int | None = None


class KubernetesCluster(BaseModel):
    """Desired state of one cluster.

    Plan directories are produced by the templating subsystem and consumed
    as opaque input.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    organization_id: str
    provider: CloudProviderKind
    region: str
    version: str = "1.29"
    network_plan_dir: Path | None = None
    cluster_plan_dir: Path | None = None
    node_groups: tuple[NodeGroup, ...] = ()
    addons: tuple[AddonChart, ...] = ()
    kubeconfig: Path | None = None
    working_dir: Path | None = None

    @model_validator(mode="after")
    def _check_unique_names(self) -> KubernetesCluster:
        for label, names in (
            ("node group", [ng.name for ng in self.node_groups]),
            ("addon", [a.name for a in self.addons]),
        ):
            duplicates = {n for n in names if names.count(n) > 1}
            if duplicates:
                raise ValueError(f"duplicate {label} names: {sorted(duplicates)}")
        return self
