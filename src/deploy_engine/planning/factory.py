"""StepExecutorFactory: provider/action-kind keyed registry of step builders.

A builder turns a :class:`StepRequest` (what to act on) into a
:class:`StepPair` (forward executor and optional rollback). Builders are
looked up by ``(provider, kind)`` first, then by the provider wildcard, so a
provider only registers what it does differently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..models.environment import DeploymentOption
from ..primitives.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..models.environment import Environment
    from ..models.infrastructure import CloudProviderKind, KubernetesCluster
    from ..ports.step_executor import IStepExecutor
    from ..transaction.action import ActionKind

logger = logging.getLogger("deploy_engine.planning")


@dataclass(frozen=True)
class StepRequest:
    """What a builder is asked to act on.

    ``subject`` is the model the action is about (a node group, an add-on, an
    application, ...); ``None`` means the cluster itself.
    """

    kind: ActionKind
    cluster: KubernetesCluster
    subject: Any = None
    environment: Environment | None = None
    option: DeploymentOption = field(default_factory=DeploymentOption)


@dataclass(frozen=True)
class StepPair:
    forward: IStepExecutor
    rollback: IStepExecutor | None = None


class StepExecutorFactory:
    """Registry of step builders.

    **Conflict detection:** registering a second builder for the same
    ``(provider, kind)`` raises :class:`ConfigurationError` unless
    ``replace=True``.
    """

    def __init__(self) -> None:
        self._builders: dict[
            tuple[CloudProviderKind | None, ActionKind],
            Callable[[StepRequest], StepPair],
        ] = {}

    # ── Registration ─────────────────────────────────────────────

    def register(
        self,
        kind: ActionKind,
        builder: Callable[[StepRequest], StepPair],
        *,
        provider: CloudProviderKind | None = None,
        replace: bool = False,
    ) -> None:
        """Register ``builder`` for ``kind``; ``provider=None`` is the wildcard."""
        key = (provider, kind)
        existing = self._builders.get(key)
        if existing is not None and existing is not builder and not replace:
            raise ConfigurationError(
                f"Duplicate step builder for {_label(provider)}/{kind.value}"
            )
        self._builders[key] = builder
        logger.debug("Registered step builder %s/%s", _label(provider), kind.value)

    # ── Lookup ───────────────────────────────────────────────────

    def resolve(
        self, provider: CloudProviderKind, kind: ActionKind
    ) -> Callable[[StepRequest], StepPair]:
        builder = self._builders.get((provider, kind)) or self._builders.get(
            (None, kind)
        )
        if builder is None:
            raise ConfigurationError(
                f"no step executor registered for {provider.value}/{kind.value}"
            )
        return builder

    def build(self, request: StepRequest) -> StepPair:
        return self.resolve(request.cluster.provider, request.kind)(request)

    def __contains__(self, key: object) -> bool:
        return key in self._builders

    # ── Introspection ────────────────────────────────────────────

    def registered(self) -> dict[str, str]:
        """Snapshot of registered builders (for debugging)."""
        return {
            f"{_label(provider)}/{kind.value}": getattr(
                builder, "__qualname__", repr(builder)
            )
            for (provider, kind), builder in self._builders.items()
        }

    def clear(self) -> None:
        self._builders.clear()


def _label(provider: CloudProviderKind | None) -> str:
    return "*" if provider is None else provider.value
