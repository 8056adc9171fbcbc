"""Engine: the capability bundle sessions are created from.

The engine performs no provisioning itself. It holds the provider
collaborators, the settings, the IaC state lease registry and the step
factory, and hands them to each :class:`~deploy_engine.session.Session`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .adapters.memory.locking import InMemoryLockStrategy
from .config import EngineSettings
from .planning.defaults import DefaultStepBuilders
from .planning.factory import StepExecutorFactory
from .primitives.exceptions import EngineConfigError
from .session import Session

if TYPE_CHECKING:
    from .execution.base import CommandRunner
    from .instrumentation import HookRegistry
    from .models.infrastructure import KubernetesCluster
    from .ports.locking import ILockStrategy
    from .ports.providers import (
        IBuildPlatform,
        ICloudProvider,
        IContainerRegistry,
        IDnsProvider,
    )
    from .primitives.cancellation import CancellationToken
    from .session import RequestContext

logger = logging.getLogger("deploy_engine.engine")


class Engine:
    """
    Entry point: provider collaborators plus one target cluster.

    Each engine owns its own lease registry; two engines never share IaC
    state leases, so one engine per process and target is expected.

    Usage:
        ```python
        engine = Engine(
            StaticCloudProvider(CloudProviderKind.AWS, "123456789012", "eu-west-3"),
            cluster,
            container_registry=registry,
            build_platform=LocalDockerBuildPlatform(),
        )
        engine.is_valid()
        session = engine.session(RequestContext(organization_id="org",
                                                cluster_id=cluster.id))
        ```
    """

    def __init__(
        self,
        cloud_provider: ICloudProvider,
        kubernetes: KubernetesCluster,
        *,
        settings: EngineSettings | None = None,
        build_platform: IBuildPlatform | None = None,
        container_registry: IContainerRegistry | None = None,
        dns_provider: IDnsProvider | None = None,
        lock_strategy: ILockStrategy | None = None,
        step_factory: StepExecutorFactory | None = None,
        hooks: HookRegistry | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.cloud_provider = cloud_provider
        self.kubernetes = kubernetes
        self.settings = settings or EngineSettings()
        self.build_platform = build_platform
        self.container_registry = container_registry
        self.dns_provider = dns_provider
        self.lock_strategy = lock_strategy or InMemoryLockStrategy()
        self.hooks = hooks
        self.step_factory = step_factory or DefaultStepBuilders(
            self.settings,
            self.lock_strategy,
            container_registry=container_registry,
            build_platform=build_platform,
            hooks=hooks,
            runner=runner,
        ).install(StepExecutorFactory())

    def is_valid(self) -> None:
        """Check that the collaborators describe one consistent target.

        Raises:
            EngineConfigError: on the first inconsistency found.
        """
        cluster = self.kubernetes
        provider = self.cloud_provider
        if not cluster.id:
            raise EngineConfigError("cluster id is empty")
        if not cluster.organization_id:
            raise EngineConfigError(f"cluster {cluster.id} has no organization id")
        if provider.kind is not cluster.provider:
            raise EngineConfigError(
                f"cloud provider is {provider.kind.value} but cluster "
                f"{cluster.id} runs on {cluster.provider.value}"
            )
        if cluster.provider.is_managed:
            if not provider.account_id:
                raise EngineConfigError(
                    f"{provider.kind.value} provider has no account id"
                )
            if provider.region != cluster.region:
                raise EngineConfigError(
                    f"provider region {provider.region} does not match "
                    f"cluster region {cluster.region}"
                )
        if (self.build_platform is None) != (self.container_registry is None):
            raise EngineConfigError(
                "build_platform and container_registry must be configured together"
            )

    def tool_env(self) -> dict[str, str]:
        """Credentials of every collaborator, merged for child processes."""
        env: dict[str, str] = {}
        env.update(self.cloud_provider.credentials_env())
        if self.container_registry is not None:
            env.update(self.container_registry.credentials_env())
        if self.dns_provider is not None:
            env.update(self.dns_provider.credentials_env())
        return env

    def session(
        self,
        request: RequestContext,
        token: CancellationToken | None = None,
    ) -> Session:
        """Create the session of one deployment request.

        Raises:
            EngineConfigError: the engine is inconsistent, or the request
                targets another cluster or organization.
        """
        self.is_valid()
        cluster = self.kubernetes
        if request.cluster_id != cluster.id:
            raise EngineConfigError(
                f"request targets cluster {request.cluster_id}, "
                f"engine drives {cluster.id}"
            )
        if request.organization_id != cluster.organization_id:
            raise EngineConfigError(
                f"request organization {request.organization_id} does not own "
                f"cluster {cluster.id}"
            )
        logger.info(
            "Opening session %s on cluster %s",
            request.execution_id,
            cluster.id,
            extra={"execution_id": request.execution_id},
        )
        return Session(self, request, token=token)

    def __repr__(self) -> str:
        return (
            f"Engine(provider={self.cloud_provider.kind.value}, "
            f"cluster={self.kubernetes.id})"
        )
