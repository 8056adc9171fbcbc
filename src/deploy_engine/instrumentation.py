"""Instrumentation hooks wrapped around engine operations.

Instrumented operations:

- ``transaction.commit``: one whole commit, attributes ``transaction_id``
  and ``actions``.
- ``action.forward`` / ``action.rollback``: one action, attributes
  ``action_id``, ``action_kind``, ``transaction_id``.
- ``lock.acquire``: waiting for an IaC state lease, attributes ``resource``
  and ``step``.

Hooks live in a :class:`HookRegistry`. Components take an explicit registry
and fall back to the one of the current context (see :func:`instrument`).
"""

from __future__ import annotations

import fnmatch
import logging
import re
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

logger = logging.getLogger("deploy_engine.instrumentation")

TRANSACTION_COMMIT = "transaction.commit"
ACTION_FORWARD = "action.forward"
ACTION_ROLLBACK = "action.rollback"
LOCK_ACQUIRE = "lock.acquire"

OPERATIONS = (TRANSACTION_COMMIT, ACTION_FORWARD, ACTION_ROLLBACK, LOCK_ACQUIRE)


@runtime_checkable
class InstrumentationHook(Protocol):
    """Protocol for instrumentation hooks (tracing, metrics, logging)."""

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Wrap an operation; must await ``next_handler`` exactly once."""
        ...


@dataclass(eq=False)
class HookRegistration:
    """One hook in a registry.

    ``operations`` are fnmatch patterns (``action.*``); an empty list matches
    every operation. ``predicate`` sees the operation and its attributes.
    """

    hook: InstrumentationHook
    priority: int = 0
    predicate: Callable[[str, dict[str, Any]], bool] | None = None
    operations: list[str] = field(default_factory=list)
    enabled: bool = True
    _pattern: re.Pattern[str] | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.operations:
            self._pattern = re.compile(
                "|".join(fnmatch.translate(p) for p in self.operations)
            )

    def matches(self, operation: str, attributes: dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        if self._pattern is not None and self._pattern.match(operation) is None:
            return False
        return self.predicate is None or self.predicate(operation, attributes)


class HookRegistry:
    """Ordered pipeline of hooks; lower priority runs outermost.

    Hooks with equal priority run in registration order.
    """

    def __init__(self) -> None:
        self._registrations: list[HookRegistration] = []

    def register(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        predicate: Callable[[str, dict[str, Any]], bool] | None = None,
        operations: Iterable[str] | None = None,
        enabled: bool = True,
    ) -> HookRegistration:
        registration = HookRegistration(
            hook,
            priority=priority,
            predicate=predicate,
            operations=list(operations or ()),
            enabled=enabled,
        )
        unknown = [
            p
            for p in registration.operations
            if not any(fnmatch.fnmatchcase(op, p) for op in OPERATIONS)
        ]
        if unknown:
            logger.warning("Hook patterns match no engine operation: %s", unknown)
        self._registrations.append(registration)
        self._registrations.sort(key=lambda r: r.priority)
        return registration

    def unregister(self, registration: HookRegistration) -> None:
        if registration in self._registrations:
            self._registrations.remove(registration)

    @property
    def registrations(self) -> tuple[HookRegistration, ...]:
        return tuple(self._registrations)

    async def execute_all(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run ``next_handler`` wrapped by every matching hook."""
        handler = next_handler
        for registration in reversed(self._registrations):
            if registration.matches(operation, attributes):
                handler = _wrap(registration.hook, operation, attributes, handler)
        return await handler()

    def clear(self) -> None:
        self._registrations.clear()


def _wrap(
    hook: InstrumentationHook,
    operation: str,
    attributes: dict[str, Any],
    inner: Callable[[], Awaitable[Any]],
) -> Callable[[], Awaitable[Any]]:
    async def call() -> Any:
        return await hook(operation, attributes, inner)

    return call


_hook_registry_var: ContextVar[HookRegistry | None] = ContextVar(
    "deploy_engine_hook_registry", default=None
)


def get_hook_registry() -> HookRegistry:
    """Hook registry of the current context, created on first access."""
    registry = _hook_registry_var.get()
    if registry is None:
        registry = HookRegistry()
        _hook_registry_var.set(registry)
    return registry


def set_hook_registry(registry: HookRegistry) -> None:
    _hook_registry_var.set(registry)


async def instrument(
    operation: str,
    attributes: dict[str, Any],
    handler: Callable[[], Awaitable[Any]],
    *,
    hooks: HookRegistry | None = None,
) -> Any:
    """Run ``handler`` through ``hooks``, or the context registry if None."""
    registry = hooks if hooks is not None else get_hook_registry()
    return await registry.execute_all(operation, attributes, handler)
