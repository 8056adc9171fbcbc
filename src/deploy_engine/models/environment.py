"""Workload-side desired state: environments and what runs in them."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class DeploymentOption(BaseModel):
    """Per-request build/push switches."""

    model_config = ConfigDict(frozen=True)

    force_build: bool = False
    force_push: bool = False


class ContainerImage(BaseModel):
    """A tagged image in a registry."""

    model_config = ConfigDict(frozen=True)

    registry_url: str
    repository: str
    tag: str

    @property
    def reference(self) -> str:
        return f"{self.registry_url.rstrip('/')}/{self.repository}:{self.tag}"

    def with_digest(self, digest: str) -> str:
        """Content-addressed reference for ``digest`` (``sha256:...``)."""
        return f"{self.registry_url.rstrip('/')}/{self.repository}@{digest}"


class ImageBuild(BaseModel):
    """How to produce a ContainerImage from sources."""

    model_config = ConfigDict(frozen=True)

    image: ContainerImage
    context_dir: Path
    dockerfile: Path | None = None
    build_args: dict[str, str] = Field(default_factory=dict)
    target: str | None = None


class WorkloadKind(str, Enum):
    DEPLOYMENT = "deployment"
    STATEFULSET = "statefulset"


class Application(BaseModel):
    """A service released as a chart, optionally built from sources first."""

    model_config = ConfigDict(frozen=True)

    name: str
    chart: str
    values_files: tuple[Path, ...] = ()
    build: ImageBuild | None = None
    kind: WorkloadKind = WorkloadKind.DEPLOYMENT
    min_instances: int = Field(default=1, ge=0)
    depends_on: tuple[str, ...] = ()


class DatabaseMode(str, Enum):
    CONTAINER = "container"
    MANAGED = "managed"


class Database(BaseModel):
    """A database, either a chart in the cluster or a provider-managed instance."""

    model_config = ConfigDict(frozen=True)

    name: str
    mode: DatabaseMode = DatabaseMode.CONTAINER
    chart: str | None = None
    values_files: tuple[Path, ...] = ()
    plan_dir: Path | None = None


class Router(BaseModel):
    """Ingress routing applied as a rendered manifest."""

    model_config = ConfigDict(frozen=True)

    name: str
    manifest: Path
    wait_for: str | None = None


class Environment(BaseModel):
    """One deployable environment of a project, living in its own namespace."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    namespace: str
    applications: tuple[Application, ...] = ()
    databases: tuple[Database, ...] = ()
    routers: tuple[Router, ...] = ()

    @property
    def builds(self) -> tuple[ImageBuild, ...]:
        return tuple(app.build for app in self.applications if app.build is not None)
