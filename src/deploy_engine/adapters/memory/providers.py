"""Static and in-memory provider collaborators for tests and local runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ...models import CloudProviderKind

if TYPE_CHECKING:
    from ...models import ContainerImage

logger = logging.getLogger("deploy_engine.providers")


@dataclass
class StaticCloudProvider:
    """Cloud account context with credentials known up front."""

    kind: CloudProviderKind
    account_id: str
    region: str
    credentials: dict[str, str] = field(default_factory=dict)

    def credentials_env(self) -> dict[str, str]:
        return dict(self.credentials)


@dataclass
class StaticDnsProvider:
    domain: str
    credentials: dict[str, str] = field(default_factory=dict)

    def credentials_env(self) -> dict[str, str]:
        return dict(self.credentials)


class InMemoryContainerRegistry:
    """Registry that remembers repositories and pushed tags."""

    def __init__(self, registry_url: str = "registry.local") -> None:
        self._registry_url = registry_url
        self.repositories: set[str] = set()
        self.images: dict[tuple[str, str], str] = {}

    @property
    def registry_url(self) -> str:
        return self._registry_url

    async def ensure_repository(self, repository: str) -> None:
        if repository not in self.repositories:
            logger.info("Creating repository %s", repository)
            self.repositories.add(repository)

    async def image_exists(self, image: ContainerImage) -> bool:
        return (image.repository, image.tag) in self.images

    def record_push(self, image: ContainerImage, digest: str) -> None:
        self.images[(image.repository, image.tag)] = digest

    def credentials_env(self) -> dict[str, str]:
        return {}
