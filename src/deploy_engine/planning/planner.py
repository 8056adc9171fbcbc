"""ActionPlanner: expands desired state into Actions.

Cluster plans follow the provisioning order network → control plane →
node groups → add-ons; environment plans follow builds → databases →
applications → routers. Teardown plans run the same chains backwards.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..models.environment import DeploymentOption
from ..primitives.exceptions import ConfigurationError
from ..transaction.action import Action, ActionKind
from .factory import StepRequest

if TYPE_CHECKING:
    from collections.abc import Container, Iterable

    from ..models.environment import Environment, ImageBuild
    from ..models.infrastructure import KubernetesCluster
    from .factory import StepExecutorFactory

logger = logging.getLogger("deploy_engine.planning")


class ActionPlanner:
    """Turns a cluster and its environments into Actions for one Transaction."""

    def __init__(
        self, cluster: KubernetesCluster, factory: StepExecutorFactory
    ) -> None:
        self.cluster = cluster
        self.factory = factory
        # Every image build seen by this planner, by action id.
        self._builds: dict[str, ImageBuild] = {}

    def _action(
        self,
        action_id: str,
        kind: ActionKind,
        *,
        subject: Any = None,
        environment: Environment | None = None,
        option: DeploymentOption | None = None,
        depends_on: Iterable[str] = (),
        ordering_key: int | None = None,
        description: str = "",
    ) -> Action:
        pair = self.factory.build(
            StepRequest(
                kind=kind,
                cluster=self.cluster,
                subject=subject,
                environment=environment,
                option=option or DeploymentOption(),
            )
        )
        return Action(
            id=action_id,
            kind=kind,
            forward=pair.forward,
            rollback=pair.rollback,
            depends_on=tuple(depends_on),
            ordering_key=ordering_key,
            description=description,
        )

    # ── Cluster ──────────────────────────────────────────────────

    def create_kubernetes(self) -> list[Action]:
        """Network, control plane, node groups, then add-ons.

        Self-managed clusters already exist; only their add-ons are planned.
        """
        cluster = self.cluster
        actions: list[Action] = []
        infra: list[str] = []
        if cluster.provider.is_managed:
            control_plane_deps: list[str] = []
            if cluster.network_plan_dir is not None:
                network_id = f"provision-network:{cluster.id}"
                actions.append(
                    self._action(
                        network_id,
                        ActionKind.PROVISION_NETWORK,
                        description=f"network of {cluster.name}",
                    )
                )
                control_plane_deps.append(network_id)

            cluster_id = f"provision-cluster:{cluster.id}"
            actions.append(
                self._action(
                    cluster_id,
                    ActionKind.PROVISION_CLUSTER,
                    depends_on=control_plane_deps,
                    description=f"control plane of {cluster.name}",
                )
            )
            infra.append(cluster_id)
            for group in cluster.node_groups:
                group_id = f"provision-node-group:{group.name}"
                actions.append(
                    self._action(
                        group_id,
                        ActionKind.PROVISION_NODE_GROUP,
                        subject=group,
                        depends_on=[cluster_id],
                        description=f"node group {group.name}",
                    )
                )
                infra.append(group_id)

        actions.extend(self._addons(infra))
        logger.debug("Planned %d actions to create %s", len(actions), cluster.id)
        return actions

    def upgrade_kubernetes(self) -> list[Action]:
        """Control plane first, then each node group, then add-on releases."""
        cluster = self.cluster
        actions: list[Action] = []
        upgraded: list[str] = []
        if cluster.provider.is_managed:
            control_plane = f"upgrade-cluster:{cluster.id}"
            actions.append(
                self._action(
                    control_plane,
                    ActionKind.UPGRADE_CLUSTER,
                    description=f"upgrade {cluster.name} to {cluster.version}",
                )
            )
            upgraded.append(control_plane)
            for group in cluster.node_groups:
                group_id = f"upgrade-node-group:{group.name}"
                actions.append(
                    self._action(
                        group_id,
                        ActionKind.UPGRADE_CLUSTER,
                        subject=group,
                        depends_on=[control_plane],
                        ordering_key=ActionKind.PROVISION_NODE_GROUP.ordering_key,
                        description=f"upgrade node group {group.name}",
                    )
                )
                upgraded.append(group_id)
        actions.extend(self._addons(upgraded))
        return actions

    def pause_kubernetes(self) -> list[Action]:
        return [
            self._action(
                f"pause-node-group:{group.name}",
                ActionKind.PAUSE_CLUSTER,
                subject=group,
                description=f"scale node group {group.name} to zero",
            )
            for group in self.cluster.node_groups
        ]

    def delete_kubernetes(self) -> list[Action]:
        """Node groups, then the control plane, then the network."""
        cluster = self.cluster
        actions = [
            self._action(
                f"delete-node-group:{group.name}",
                ActionKind.DELETE_CLUSTER,
                subject=group,
                ordering_key=ActionKind.PAUSE_CLUSTER.ordering_key,
            )
            for group in cluster.node_groups
        ]
        control_plane = f"delete-cluster:{cluster.id}"
        actions.append(
            self._action(
                control_plane,
                ActionKind.DELETE_CLUSTER,
                depends_on=[a.id for a in actions],
            )
        )
        if cluster.network_plan_dir is not None:
            actions.append(
                self._action(
                    f"delete-network:{cluster.id}",
                    ActionKind.DELETE_CLUSTER,
                    subject="network",
                    depends_on=[control_plane],
                )
            )
        return actions

    def _addons(self, after: list[str]) -> list[Action]:
        return [
            self._action(
                f"install-addon:{addon.name}",
                ActionKind.INSTALL_ADDON,
                subject=addon,
                depends_on=[*after, *(f"install-addon:{d}" for d in addon.depends_on)],
                description=f"{addon.chart} in {addon.namespace}",
            )
            for addon in self.cluster.addons
        ]

    # ── Environment ──────────────────────────────────────────────

    def build_environment(
        self,
        environment: Environment,
        option: DeploymentOption | None = None,
        *,
        planned: Container[str] = (),
    ) -> list[Action]:
        """One build per image reference.

        Builds whose action id is in ``planned`` already belong to the
        transaction and are shared. Two different builds of the same
        reference raise :class:`ConfigurationError`.
        """
        actions: dict[str, Action] = {}
        for build in environment.builds:
            action_id = _build_id(build)
            known = self._builds.setdefault(action_id, build)
            if known != build:
                raise ConfigurationError(
                    f"conflicting builds for image {build.image.reference}: "
                    f"{known.context_dir} and {build.context_dir} "
                    "must use the same sources and arguments"
                )
            if action_id in actions or action_id in planned:
                continue
            actions[action_id] = self._action(
                action_id,
                ActionKind.BUILD_ENVIRONMENT,
                subject=build,
                environment=environment,
                option=option,
                description=f"build {build.image.reference}",
            )
        return list(actions.values())

    def deploy_environment(
        self,
        environment: Environment,
        option: DeploymentOption | None = None,
        *,
        planned: Container[str] = (),
    ) -> list[Action]:
        env = environment.name
        actions = self.build_environment(environment, option, planned=planned)

        databases = []
        for database in environment.databases:
            databases.append(
                self._action(
                    f"provision-database:{env}/{database.name}",
                    ActionKind.PROVISION_DATABASE,
                    subject=database,
                    environment=environment,
                    description=f"{database.mode.value} database {database.name}",
                )
            )
        actions.extend(databases)

        applications = []
        for app in environment.applications:
            deps = [d.id for d in databases]
            if app.build is not None:
                deps.append(_build_id(app.build))
            deps.extend(f"deploy-application:{env}/{d}" for d in app.depends_on)
            applications.append(
                self._action(
                    f"deploy-application:{env}/{app.name}",
                    ActionKind.DEPLOY_ENVIRONMENT,
                    subject=app,
                    environment=environment,
                    option=option,
                    depends_on=deps,
                )
            )
        actions.extend(applications)

        for router in environment.routers:
            actions.append(
                self._action(
                    f"configure-router:{env}/{router.name}",
                    ActionKind.CONFIGURE_ROUTER,
                    subject=router,
                    environment=environment,
                    depends_on=[a.id for a in applications],
                )
            )
        return actions

    def pause_environment(self, environment: Environment) -> list[Action]:
        return [
            self._action(
                f"pause-application:{environment.name}/{app.name}",
                ActionKind.PAUSE_ENVIRONMENT,
                subject=app,
                environment=environment,
            )
            for app in environment.applications
        ]

    def delete_environment(self, environment: Environment) -> list[Action]:
        """Routers, then applications, then databases, then the namespace."""
        env = environment.name
        routers = [
            self._action(
                f"delete-router:{env}/{router.name}",
                ActionKind.DELETE_ENVIRONMENT,
                subject=router,
                environment=environment,
            )
            for router in environment.routers
        ]
        applications = [
            self._action(
                f"delete-application:{env}/{app.name}",
                ActionKind.DELETE_ENVIRONMENT,
                subject=app,
                environment=environment,
                depends_on=[r.id for r in routers],
            )
            for app in environment.applications
        ]
        databases = [
            self._action(
                f"delete-database:{env}/{database.name}",
                ActionKind.DELETE_ENVIRONMENT,
                subject=database,
                environment=environment,
                depends_on=[a.id for a in applications],
            )
            for database in environment.databases
        ]
        namespace = self._action(
            f"delete-namespace:{env}",
            ActionKind.DELETE_ENVIRONMENT,
            environment=environment,
            depends_on=[a.id for a in (*routers, *applications, *databases)],
        )
        return [*routers, *applications, *databases, namespace]


def _build_id(build: ImageBuild) -> str:
    return f"build-image:{build.image.repository}:{build.image.tag}"
