"""Provider collaborators held by the Engine.

These are capability interfaces over the provider-specific world. The engine
never calls cloud SDKs itself: it reads identity and credentials from these
objects and hands them to step executors.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..models import CloudProviderKind, ContainerImage, ImageBuild
    from .step_executor import ExecutionContext


@runtime_checkable
class ICloudProvider(Protocol):
    """Cloud account context: who we are, where, and with which credentials."""

    @property
    def kind(self) -> CloudProviderKind: ...

    @property
    def account_id(self) -> str: ...

    @property
    def region(self) -> str: ...

    def credentials_env(self) -> dict[str, str]:
        """Environment variables the IaC and CLI tools need to authenticate."""
        ...


@runtime_checkable
class IContainerRegistry(Protocol):
    """Registry the build platform pushes to."""

    @property
    def registry_url(self) -> str: ...

    async def ensure_repository(self, repository: str) -> None:
        """Create the repository if it does not exist yet."""
        ...

    async def image_exists(self, image: ContainerImage) -> bool: ...

    def credentials_env(self) -> dict[str, str]: ...


@runtime_checkable
class IBuildPlatform(Protocol):
    """Turns sources into images and pushes them."""

    async def build(self, build: ImageBuild, ctx: ExecutionContext) -> None:
        """Build the image locally.

        Raises:
            StepExecutionError: The build failed.
            TransientProviderError: The build could not run for a transient reason.
            OperationCancelledError: ``ctx.token`` fired.
        """
        ...

    async def push(self, image: ContainerImage, ctx: ExecutionContext) -> str:
        """Push the image and return its content digest (``sha256:...``)."""
        ...


@runtime_checkable
class IDnsProvider(Protocol):
    """DNS zone that routers publish hostnames into."""

    @property
    def domain(self) -> str: ...

    def credentials_env(self) -> dict[str, str]: ...
