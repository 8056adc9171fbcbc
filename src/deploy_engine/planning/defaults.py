"""Default step builders: which tool provisions what, and how it is undone.

IaC steps run under the cluster's state lease. Deletions have no rollback;
a failed delete transaction leaves an UNRECOVERABLE result that names the
actions that already ran.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..execution.docker import ImageBuildStep
from ..execution.helm import HelmReleaseStep, HelmRevertStep, HelmUninstallStep
from ..execution.kubectl import KubectlApplyStep, KubectlDeleteStep, KubectlScaleStep
from ..execution.leasing import LeasedStep
from ..execution.steps import NoopStep
from ..execution.terraform import TerraformApplyStep, TerraformDestroyStep
from ..models.environment import Application, Database, DatabaseMode, Router
from ..models.infrastructure import AddonChart, CloudProviderKind, NodeGroup
from ..primitives.exceptions import ConfigurationError
from ..primitives.locking import ResourceIdentifier
from ..transaction.action import ActionKind
from .factory import StepPair, StepRequest

if TYPE_CHECKING:
    from pathlib import Path

    from ..config import EngineSettings
    from ..execution.base import CommandRunner
    from ..instrumentation import HookRegistry
    from ..models.infrastructure import KubernetesCluster
    from ..ports.locking import ILockStrategy
    from ..ports.providers import IBuildPlatform, IContainerRegistry
    from ..ports.step_executor import IStepExecutor
    from .factory import StepExecutorFactory

# Terraform variables understood by the rendered node group plans.
PAUSED_NODE_VARIABLES = {"min_nodes": "0", "max_nodes": "0", "desired_nodes": "0"}

_CLUSTER_KINDS = (
    ActionKind.PROVISION_NETWORK,
    ActionKind.PROVISION_CLUSTER,
    ActionKind.PROVISION_NODE_GROUP,
    ActionKind.UPGRADE_CLUSTER,
    ActionKind.PAUSE_CLUSTER,
    ActionKind.DELETE_CLUSTER,
)


class DefaultStepBuilders:
    """Builds the stock executors from engine settings and collaborators."""

    def __init__(
        self,
        settings: EngineSettings,
        lock_strategy: ILockStrategy,
        *,
        container_registry: IContainerRegistry | None = None,
        build_platform: IBuildPlatform | None = None,
        hooks: HookRegistry | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.settings = settings
        self.lock_strategy = lock_strategy
        self.container_registry = container_registry
        self.build_platform = build_platform
        self.hooks = hooks
        self.runner = runner

    def install(self, factory: StepExecutorFactory) -> StepExecutorFactory:
        factory.register(ActionKind.PROVISION_NETWORK, self.network)
        factory.register(ActionKind.PROVISION_CLUSTER, self.cluster)
        factory.register(ActionKind.PROVISION_NODE_GROUP, self.node_group)
        factory.register(ActionKind.UPGRADE_CLUSTER, self.upgrade)
        factory.register(ActionKind.PAUSE_CLUSTER, self.pause_cluster)
        factory.register(ActionKind.DELETE_CLUSTER, self.delete_cluster)
        factory.register(ActionKind.INSTALL_ADDON, self.addon)
        factory.register(ActionKind.BUILD_ENVIRONMENT, self.image)
        factory.register(ActionKind.PROVISION_DATABASE, self.database)
        factory.register(ActionKind.DEPLOY_ENVIRONMENT, self.application)
        factory.register(ActionKind.CONFIGURE_ROUTER, self.router)
        factory.register(ActionKind.PAUSE_ENVIRONMENT, self.pause_workload)
        factory.register(ActionKind.DELETE_ENVIRONMENT, self.delete_workload)
        for kind in _CLUSTER_KINDS:
            factory.register(
                kind, reject_self_managed, provider=CloudProviderKind.ON_PREMISE
            )
        return factory

    # ── Tool arguments ───────────────────────────────────────────

    def _tool(self, binary: str, **kwargs: Any) -> dict[str, Any]:
        kwargs.setdefault("timeout", self.settings.tools.command_timeout)
        return {
            "binary": binary,
            "kill_grace_period": self.settings.tools.kill_grace_period,
            "runner": self.runner,
            **kwargs,
        }

    def _terraform(self) -> dict[str, Any]:
        tools = self.settings.tools
        return {
            "plugin_cache_dir": tools.tf_plugin_cache_dir,
            **self._tool(tools.terraform_binary),
        }

    def _helm(self) -> dict[str, Any]:
        tools = self.settings.tools
        return {
            "binary": tools.helm_binary,
            "kill_grace_period": tools.kill_grace_period,
            "runner": self.runner,
        }

    def _kubectl(self, **kwargs: Any) -> dict[str, Any]:
        return self._tool(self.settings.tools.kubectl_binary, **kwargs)

    def _leased(self, step: IStepExecutor, cluster: KubernetesCluster) -> LeasedStep:
        return LeasedStep(
            step,
            self.lock_strategy,
            ResourceIdentifier.iac_state(cluster.id),
            timeout=self.settings.lease_timeout,
            ttl=self.settings.lease_ttl,
            hooks=self.hooks,
        )

    def _apply(
        self,
        cluster: KubernetesCluster,
        plan_dir: Path,
        *,
        variables: dict[str, str] | None = None,
    ) -> LeasedStep:
        step = TerraformApplyStep(plan_dir, variables=variables, **self._terraform())
        return self._leased(step, cluster)

    def _destroy(self, cluster: KubernetesCluster, plan_dir: Path) -> LeasedStep:
        step = TerraformDestroyStep(plan_dir, **self._terraform())
        return self._leased(step, cluster)

    # ── Cluster ──────────────────────────────────────────────────

    def network(self, request: StepRequest) -> StepPair:
        plan_dir = _required(request.cluster.network_plan_dir, "network_plan_dir")
        return StepPair(
            self._apply(request.cluster, plan_dir),
            self._destroy(request.cluster, plan_dir),
        )

    def cluster(self, request: StepRequest) -> StepPair:
        plan_dir = _required(request.cluster.cluster_plan_dir, "cluster_plan_dir")
        return StepPair(
            self._apply(request.cluster, plan_dir),
            self._destroy(request.cluster, plan_dir),
        )

    def node_group(self, request: StepRequest) -> StepPair:
        group = _subject(request, NodeGroup)
        return StepPair(
            self._apply(request.cluster, group.plan_dir),
            self._destroy(request.cluster, group.plan_dir),
        )

    def upgrade(self, request: StepRequest) -> StepPair:
        """Re-apply the cluster (or one node group) plan at the new version.

        Kubernetes cannot be downgraded, so there is no rollback.
        """
        if isinstance(request.subject, NodeGroup):
            plan_dir = request.subject.plan_dir
        else:
            plan_dir = _required(request.cluster.cluster_plan_dir, "cluster_plan_dir")
        return StepPair(self._apply(request.cluster, plan_dir))

    def pause_cluster(self, request: StepRequest) -> StepPair:
        """Scale a node group to zero; the rollback restores its bounds."""
        group = _subject(request, NodeGroup)
        resume = {
            "min_nodes": str(group.min_nodes),
            "max_nodes": str(group.max_nodes),
            "desired_nodes": str(group.min_nodes),
        }
        return StepPair(
            self._apply(
                request.cluster, group.plan_dir, variables=PAUSED_NODE_VARIABLES
            ),
            self._apply(request.cluster, group.plan_dir, variables=resume),
        )

    def delete_cluster(self, request: StepRequest) -> StepPair:
        subject = request.subject
        if isinstance(subject, NodeGroup):
            plan_dir = subject.plan_dir
        elif subject == "network":
            plan_dir = _required(request.cluster.network_plan_dir, "network_plan_dir")
        else:
            plan_dir = _required(request.cluster.cluster_plan_dir, "cluster_plan_dir")
        return StepPair(self._destroy(request.cluster, plan_dir))

    def addon(self, request: StepRequest) -> StepPair:
        addon = _subject(request, AddonChart)
        release_timeout = addon.timeout_seconds or self.settings.tools.helm_timeout
        return StepPair(
            HelmReleaseStep(
                addon.name,
                addon.chart,
                addon.namespace,
                values_files=addon.values_files,
                version=addon.version,
                release_timeout=release_timeout,
                **self._helm(),
            ),
            HelmRevertStep(
                addon.name,
                addon.namespace,
                release_timeout=release_timeout,
                **self._helm(),
            ),
        )

    # ── Environment ──────────────────────────────────────────────

    def image(self, request: StepRequest) -> StepPair:
        if self.container_registry is None or self.build_platform is None:
            raise ConfigurationError(
                "building images needs a container registry and a build platform"
            )
        build = request.subject
        step = ImageBuildStep(
            build, self.container_registry, self.build_platform, request.option
        )
        # A pushed image is harmless; it is not removed on rollback.
        return StepPair(step, NoopStep(f"keep:{step.name}", "pushed images are kept"))

    def database(self, request: StepRequest) -> StepPair:
        database = _subject(request, Database)
        namespace = _namespace(request)
        if database.mode is DatabaseMode.MANAGED:
            plan_dir = _required(database.plan_dir, f"{database.name} plan_dir")
            return StepPair(
                self._apply(request.cluster, plan_dir),
                self._destroy(request.cluster, plan_dir),
            )
        chart = _required(database.chart, f"database {database.name} chart")
        return StepPair(
            HelmReleaseStep(
                database.name,
                chart,
                namespace,
                values_files=database.values_files,
                release_timeout=self.settings.tools.helm_timeout,
                **self._helm(),
            ),
            HelmRevertStep(
                database.name,
                namespace,
                release_timeout=self.settings.tools.helm_timeout,
                **self._helm(),
            ),
        )

    def application(self, request: StepRequest) -> StepPair:
        app = _subject(request, Application)
        namespace = _namespace(request)
        return StepPair(
            HelmReleaseStep(
                app.name,
                app.chart,
                namespace,
                values_files=app.values_files,
                release_timeout=self.settings.tools.helm_timeout,
                **self._helm(),
            ),
            HelmRevertStep(
                app.name,
                namespace,
                release_timeout=self.settings.tools.helm_timeout,
                **self._helm(),
            ),
        )

    def router(self, request: StepRequest) -> StepPair:
        router = _subject(request, Router)
        namespace = _namespace(request)
        return StepPair(
            KubectlApplyStep(
                router.manifest,
                wait_for=router.wait_for,
                wait_timeout=self.settings.tools.kubectl_wait_timeout,
                **self._kubectl(namespace=namespace),
            ),
            KubectlDeleteStep(router.manifest, **self._kubectl(namespace=namespace)),
        )

    def pause_workload(self, request: StepRequest) -> StepPair:
        app = _subject(request, Application)
        namespace = _namespace(request)
        return StepPair(
            KubectlScaleStep(
                app.kind.value,
                0,
                object_name=app.name,
                **self._kubectl(namespace=namespace),
            ),
            KubectlScaleStep(
                app.kind.value,
                app.min_instances,
                object_name=app.name,
                **self._kubectl(namespace=namespace),
            ),
        )

    def delete_workload(self, request: StepRequest) -> StepPair:
        """Remove one router, application, database or the namespace itself."""
        subject = request.subject
        namespace = _namespace(request)
        if isinstance(subject, Router):
            return StepPair(
                KubectlDeleteStep(
                    subject.manifest, **self._kubectl(namespace=namespace)
                )
            )
        if isinstance(subject, Application):
            return StepPair(HelmUninstallStep(subject.name, namespace, **self._helm()))
        if isinstance(subject, Database):
            if subject.mode is DatabaseMode.MANAGED:
                plan_dir = _required(subject.plan_dir, f"{subject.name} plan_dir")
                return StepPair(self._destroy(request.cluster, plan_dir))
            return StepPair(HelmUninstallStep(subject.name, namespace, **self._helm()))
        return StepPair(
            KubectlDeleteStep(
                kind="namespace", object_name=namespace, **self._kubectl()
            )
        )


def reject_self_managed(request: StepRequest) -> StepPair:
    raise ConfigurationError(
        f"cluster {request.cluster.id} is on-premise: {request.kind.value} "
        "is managed by its operator, not by the engine"
    )


def _subject(request: StepRequest, expected: type[Any]) -> Any:
    if not isinstance(request.subject, expected):
        raise ConfigurationError(
            f"{request.kind.value} needs a {expected.__name__}, "
            f"got {type(request.subject).__name__}"
        )
    return request.subject


def _namespace(request: StepRequest) -> str:
    if request.environment is None:
        raise ConfigurationError(f"{request.kind.value} needs an environment")
    return request.environment.namespace


def _required(value: Any, label: str) -> Any:
    if value is None:
        raise ConfigurationError(f"{label} is not set")
    return value
