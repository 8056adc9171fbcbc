"""Step factory, default builders and the action planner."""

from __future__ import annotations

from pathlib import Path

import pytest

from deploy_engine.adapters.memory import (
    InMemoryContainerRegistry,
    InMemoryLockStrategy,
)
from deploy_engine.config import EngineSettings
from deploy_engine.execution import (
    HelmReleaseStep,
    HelmRevertStep,
    HelmUninstallStep,
    ImageBuildStep,
    KubectlApplyStep,
    KubectlDeleteStep,
    KubectlScaleStep,
    LeasedStep,
    LocalDockerBuildPlatform,
    NoopStep,
    TerraformApplyStep,
    TerraformDestroyStep,
)
from deploy_engine.models import (
    AddonChart,
    Application,
    CloudProviderKind,
    ContainerImage,
    Database,
    DatabaseMode,
    Environment,
    ImageBuild,
    KubernetesCluster,
    Router,
)
from deploy_engine.planning import (
    ActionPlanner,
    DefaultStepBuilders,
    StepExecutorFactory,
    StepPair,
    StepRequest,
)
from deploy_engine.planning.defaults import PAUSED_NODE_VARIABLES
from deploy_engine.ports.step_executor import ExecutionContext
from deploy_engine.primitives import ConfigurationError
from deploy_engine.transaction import (
    Action,
    ActionKind,
    ActionStatus,
    Transaction,
    TransactionOutcome,
)

from .conftest import FakeRunner, ScriptedStep


@pytest.fixture
def registry() -> InMemoryContainerRegistry:
    return InMemoryContainerRegistry("registry.local")


@pytest.fixture
def factory(
    runner: FakeRunner, registry: InMemoryContainerRegistry
) -> StepExecutorFactory:
    builders = DefaultStepBuilders(
        EngineSettings(),
        InMemoryLockStrategy(),
        container_registry=registry,
        build_platform=LocalDockerBuildPlatform(runner=runner),
        runner=runner,
    )
    return builders.install(StepExecutorFactory())


@pytest.fixture
def planner(
    cluster: KubernetesCluster, factory: StepExecutorFactory
) -> ActionPlanner:
    return ActionPlanner(cluster, factory)


@pytest.fixture
def environment(tmp_path: Path) -> Environment:
    api_build = ImageBuild(
        image=ContainerImage(
            registry_url="registry.local", repository="api", tag="v3"
        ),
        context_dir=tmp_path / "api",
    )
    return Environment(
        id="env-1",
        name="staging",
        namespace="staging",
        applications=(
            Application(name="api", chart="charts/api", build=api_build),
            Application(
                name="worker",
                chart="charts/worker",
                build=api_build,
                min_instances=2,
                depends_on=("api",),
            ),
        ),
        databases=(
            Database(name="cache", chart="bitnami/redis"),
            Database(
                name="pg",
                mode=DatabaseMode.MANAGED,
                plan_dir=tmp_path / "pg",
            ),
        ),
        routers=(
            Router(
                name="public",
                manifest=tmp_path / "ingress.yaml",
                wait_for="jsonpath={.status.loadBalancer.ingress}",
            ),
        ),
    )


def _ids(actions: list[Action]) -> list[str]:
    return [a.id for a in actions]


def _by_id(actions: list[Action]) -> dict[str, Action]:
    return {a.id: a for a in actions}


# ── Factory ──────────────────────────────────────────────────────────


class TestStepExecutorFactory:
    @staticmethod
    def _builder(request: StepRequest) -> StepPair:
        return StepPair(ScriptedStep("generic"))

    @staticmethod
    def _aws_builder(request: StepRequest) -> StepPair:
        return StepPair(ScriptedStep("aws"))

    def test_duplicate_registration(self) -> None:
        factory = StepExecutorFactory()
        factory.register(ActionKind.CUSTOM, self._builder)
        factory.register(ActionKind.CUSTOM, self._builder)

        with pytest.raises(
            ConfigurationError, match=r"Duplicate step builder for \*/CUSTOM"
        ):
            factory.register(ActionKind.CUSTOM, self._aws_builder)

        factory.register(ActionKind.CUSTOM, self._aws_builder, replace=True)
        resolved = factory.resolve(CloudProviderKind.GCP, ActionKind.CUSTOM)
        assert resolved is self._aws_builder

    def test_provider_specific_builder_wins(
        self, cluster: KubernetesCluster
    ) -> None:
        factory = StepExecutorFactory()
        factory.register(ActionKind.CUSTOM, self._builder)
        factory.register(
            ActionKind.CUSTOM, self._aws_builder, provider=CloudProviderKind.AWS
        )

        pair = factory.build(StepRequest(kind=ActionKind.CUSTOM, cluster=cluster))

        assert pair.forward.name == "aws"
        assert (CloudProviderKind.AWS, ActionKind.CUSTOM) in factory
        assert factory.registered() == {
            "*/CUSTOM": "TestStepExecutorFactory._builder",
            "AWS/CUSTOM": "TestStepExecutorFactory._aws_builder",
        }

    def test_unknown_kind(self) -> None:
        factory = StepExecutorFactory()
        with pytest.raises(ConfigurationError, match="registered for SCW/CUSTOM"):
            factory.resolve(CloudProviderKind.SCALEWAY, ActionKind.CUSTOM)

    def test_clear(self) -> None:
        factory = StepExecutorFactory()
        factory.register(ActionKind.CUSTOM, self._builder)
        factory.clear()
        assert factory.registered() == {}


# ── Cluster plans ────────────────────────────────────────────────────


class TestClusterPlans:
    def test_create_kubernetes(
        self, planner: ActionPlanner, cluster: KubernetesCluster
    ) -> None:
        actions = planner.create_kubernetes()
        by_id = _by_id(actions)

        assert _ids(actions) == [
            "provision-network:c-1",
            "provision-cluster:c-1",
            "provision-node-group:default",
            "provision-node-group:spot",
            "install-addon:cert-manager",
            "install-addon:ingress",
        ]
        assert by_id["provision-cluster:c-1"].depends_on == ("provision-network:c-1",)
        assert by_id["install-addon:ingress"].depends_on == (
            "provision-cluster:c-1",
            "provision-node-group:default",
            "provision-node-group:spot",
            "install-addon:cert-manager",
        )

        network = by_id["provision-network:c-1"]
        assert isinstance(network.forward, LeasedStep)
        assert str(network.forward.resource) == "iac-state:c-1"
        assert isinstance(network.forward.inner, TerraformApplyStep)
        assert network.forward.inner.plan_dir == cluster.network_plan_dir
        assert isinstance(network.rollback, LeasedStep)
        assert isinstance(network.rollback.inner, TerraformDestroyStep)

        addon = by_id["install-addon:ingress"]
        assert isinstance(addon.forward, HelmReleaseStep)
        assert addon.forward.namespace == "ingress"
        assert isinstance(addon.rollback, HelmRevertStep)

    def test_without_network_plan(
        self, cluster: KubernetesCluster, factory: StepExecutorFactory
    ) -> None:
        planner = ActionPlanner(
            cluster.model_copy(update={"network_plan_dir": None}), factory
        )
        actions = planner.create_kubernetes()

        assert _ids(actions)[0] == "provision-cluster:c-1"
        assert actions[0].depends_on == ()
        teardown = _ids(planner.delete_kubernetes())
        assert "delete-network:c-1" not in teardown

    def test_missing_cluster_plan(
        self, cluster: KubernetesCluster, factory: StepExecutorFactory
    ) -> None:
        planner = ActionPlanner(
            cluster.model_copy(update={"cluster_plan_dir": None}), factory
        )
        with pytest.raises(ConfigurationError, match="cluster_plan_dir is not set"):
            planner.create_kubernetes()

    def test_addon_timeout(
        self, cluster: KubernetesCluster, factory: StepExecutorFactory
    ) -> None:
        slow = AddonChart(name="istio", chart="istio/istiod", timeout_seconds=900)
        planner = ActionPlanner(cluster.model_copy(update={"addons": (slow,)}), factory)

        addon = _by_id(planner.create_kubernetes())["install-addon:istio"]

        assert isinstance(addon.forward, HelmReleaseStep)
        assert addon.forward.release_timeout == 900

    def test_upgrade_kubernetes(self, planner: ActionPlanner) -> None:
        actions = planner.upgrade_kubernetes()
        by_id = _by_id(actions)

        assert _ids(actions)[:3] == [
            "upgrade-cluster:c-1",
            "upgrade-node-group:default",
            "upgrade-node-group:spot",
        ]
        node_group = by_id["upgrade-node-group:spot"]
        assert node_group.kind is ActionKind.UPGRADE_CLUSTER
        assert node_group.priority == ActionKind.PROVISION_NODE_GROUP.ordering_key
        assert not node_group.is_reversible
        assert not node_group.kind.can_be_cancelled
        addon_deps = by_id["install-addon:cert-manager"].depends_on
        assert "upgrade-node-group:spot" in addon_deps

    def test_pause_kubernetes(self, planner: ActionPlanner) -> None:
        actions = planner.pause_kubernetes()

        assert _ids(actions) == ["pause-node-group:default", "pause-node-group:spot"]
        spot = actions[1]
        assert isinstance(spot.forward, LeasedStep)
        assert isinstance(spot.rollback, LeasedStep)
        pause, resume = spot.forward.inner, spot.rollback.inner
        assert isinstance(pause, TerraformApplyStep)
        assert isinstance(resume, TerraformApplyStep)
        assert pause.variables == PAUSED_NODE_VARIABLES
        assert resume.variables == {
            "min_nodes": "0",
            "max_nodes": "3",
            "desired_nodes": "0",
        }

    def test_delete_kubernetes(self, planner: ActionPlanner) -> None:
        actions = planner.delete_kubernetes()
        by_id = _by_id(actions)

        assert _ids(actions) == [
            "delete-node-group:default",
            "delete-node-group:spot",
            "delete-cluster:c-1",
            "delete-network:c-1",
        ]
        assert by_id["delete-cluster:c-1"].depends_on == (
            "delete-node-group:default",
            "delete-node-group:spot",
        )
        assert by_id["delete-network:c-1"].depends_on == ("delete-cluster:c-1",)
        assert all(not a.is_reversible for a in actions)
        assert all(
            isinstance(a.forward, LeasedStep)
            and isinstance(a.forward.inner, TerraformDestroyStep)
            for a in actions
        )

    def test_on_premise_plans_only_addons(
        self, cluster: KubernetesCluster, factory: StepExecutorFactory
    ) -> None:
        planner = ActionPlanner(
            cluster.model_copy(update={"provider": CloudProviderKind.ON_PREMISE}),
            factory,
        )

        actions = planner.create_kubernetes()

        assert _ids(actions) == ["install-addon:cert-manager", "install-addon:ingress"]
        assert actions[0].depends_on == ()
        with pytest.raises(ConfigurationError, match="on-premise"):
            planner.pause_kubernetes()


# ── Environment plans ────────────────────────────────────────────────


class TestEnvironmentPlans:
    def test_deploy_environment(
        self, planner: ActionPlanner, environment: Environment
    ) -> None:
        actions = planner.deploy_environment(environment)
        by_id = _by_id(actions)

        assert _ids(actions) == [
            "build-image:api:v3",
            "provision-database:staging/cache",
            "provision-database:staging/pg",
            "deploy-application:staging/api",
            "deploy-application:staging/worker",
            "configure-router:staging/public",
        ]
        assert by_id["deploy-application:staging/worker"].depends_on == (
            "provision-database:staging/cache",
            "provision-database:staging/pg",
            "build-image:api:v3",
            "deploy-application:staging/api",
        )
        assert by_id["configure-router:staging/public"].depends_on == (
            "deploy-application:staging/api",
            "deploy-application:staging/worker",
        )

        build = by_id["build-image:api:v3"]
        assert isinstance(build.forward, ImageBuildStep)
        assert isinstance(build.rollback, NoopStep)

        cache = by_id["provision-database:staging/cache"]
        assert isinstance(cache.forward, HelmReleaseStep)
        assert cache.forward.namespace == "staging"
        pg = by_id["provision-database:staging/pg"]
        assert isinstance(pg.forward, LeasedStep)
        assert isinstance(pg.forward.inner, TerraformApplyStep)

        router = by_id["configure-router:staging/public"]
        assert isinstance(router.forward, KubectlApplyStep)
        assert router.forward.wait_for == "jsonpath={.status.loadBalancer.ingress}"
        assert isinstance(router.rollback, KubectlDeleteStep)

    def test_images_need_a_registry(
        self, cluster: KubernetesCluster, environment: Environment
    ) -> None:
        builders = DefaultStepBuilders(EngineSettings(), InMemoryLockStrategy())
        factory = builders.install(StepExecutorFactory())
        with pytest.raises(ConfigurationError, match="container registry"):
            ActionPlanner(cluster, factory).build_environment(environment)

    def test_conflicting_builds_of_one_image(
        self, planner: ActionPlanner, environment: Environment, tmp_path: Path
    ) -> None:
        api, worker = environment.applications
        assert api.build is not None
        forked = api.build.model_copy(update={"context_dir": tmp_path / "fork"})
        conflicting = environment.model_copy(
            update={
                "applications": (
                    api,
                    worker.model_copy(update={"build": forked}),
                )
            }
        )

        with pytest.raises(ConfigurationError, match="conflicting builds"):
            planner.deploy_environment(conflicting)

    def test_environments_share_an_image_build(
        self,
        ctx: ExecutionContext,
        planner: ActionPlanner,
        environment: Environment,
    ) -> None:
        prod = environment.model_copy(
            update={"id": "env-2", "name": "prod", "namespace": "prod"}
        )
        tx = Transaction(ctx, planner=planner)

        tx.deploy_environment(environment).deploy_environment(prod)

        ids = _ids(tx.actions)
        assert ids.count("build-image:api:v3") == 1
        assert "build-image:api:v3" in _by_id(tx.actions)[
            "deploy-application:prod/api"
        ].depends_on

    def test_pause_environment(
        self, planner: ActionPlanner, environment: Environment
    ) -> None:
        actions = planner.pause_environment(environment)

        worker = _by_id(actions)["pause-application:staging/worker"]
        assert isinstance(worker.forward, KubectlScaleStep)
        assert worker.forward.replicas == 0
        assert isinstance(worker.rollback, KubectlScaleStep)
        assert worker.rollback.replicas == 2
        assert worker.forward.namespace == "staging"

    def test_delete_environment(
        self, planner: ActionPlanner, environment: Environment
    ) -> None:
        actions = planner.delete_environment(environment)
        by_id = _by_id(actions)

        assert _ids(actions) == [
            "delete-router:staging/public",
            "delete-application:staging/api",
            "delete-application:staging/worker",
            "delete-database:staging/cache",
            "delete-database:staging/pg",
            "delete-namespace:staging",
        ]
        assert by_id["delete-application:staging/api"].depends_on == (
            "delete-router:staging/public",
        )
        assert len(by_id["delete-namespace:staging"].depends_on) == 5
        forward = {a.id: a.forward for a in actions}
        assert isinstance(forward["delete-router:staging/public"], KubectlDeleteStep)
        assert isinstance(forward["delete-application:staging/api"], HelmUninstallStep)
        assert isinstance(forward["delete-database:staging/cache"], HelmUninstallStep)
        assert isinstance(forward["delete-database:staging/pg"], LeasedStep)
        namespace = by_id["delete-namespace:staging"].forward
        assert namespace.name == "kubectl-delete:namespace/staging"
        assert all(not a.is_reversible for a in actions)


# ── Planned transactions ─────────────────────────────────────────────


class TestPlannedCommit:
    async def test_failed_addon_destroys_the_cluster(
        self,
        ctx: ExecutionContext,
        runner: FakeRunner,
        planner: ActionPlanner,
        cluster: KubernetesCluster,
    ) -> None:
        runner.when(
            "upgrade",
            "--install",
            "ingress",
            returncode=1,
            stderr="Error: INSTALLATION FAILED: pre-install hook failed",
        )
        tx = Transaction(ctx, planner=planner, max_parallel=2)
        tx.create_kubernetes()

        result = await tx.commit()

        assert result.outcome is TransactionOutcome.ROLLBACK
        assert result.status_of("install-addon:ingress") is ActionStatus.FAILED
        assert result.rolled_back[-2:] == (
            "provision-cluster:c-1",
            "provision-network:c-1",
        )
        destroyed = [
            runner.kwargs[i]["cwd"]
            for i, call in enumerate(runner.calls)
            if call[1] == "destroy"
        ]
        assert destroyed[-2:] == [cluster.cluster_plan_dir, cluster.network_plan_dir]
        # cert-manager had a single revision, so its revert uninstalls it.
        uninstalled = [c[2] for c in runner.calls if c[1] == "uninstall"]
        assert uninstalled == ["cert-manager"]

    async def test_planned_deploy_commits(
        self,
        ctx: ExecutionContext,
        runner: FakeRunner,
        planner: ActionPlanner,
        environment: Environment,
        registry: InMemoryContainerRegistry,
    ) -> None:
        runner.when("image", "inspect", stdout="registry.local/api@sha256:beef")
        tx = Transaction(ctx, planner=planner)
        tx.deploy_environment(environment)

        result = await tx.commit()

        assert result.success
        assert result.statuses["build-image:api:v3"].output == (
            "registry.local/api@sha256:beef"
        )
        assert registry.repositories == {"api"}
