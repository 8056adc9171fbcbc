"""Dependency graph over a Transaction's actions."""

from __future__ import annotations

import heapq
from typing import TYPE_CHECKING

from ..primitives.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .action import Action


class ActionGraph:
    """
    Validated DAG of actions, in declaration order.

    Construction rejects duplicate ids, unknown dependencies and cycles with
    :class:`ConfigurationError`, so a graph that exists can always be
    scheduled to completion.
    """

    def __init__(self, actions: Iterable[Action]) -> None:
        self._actions: dict[str, Action] = {}
        for action in actions:
            if action.id in self._actions:
                raise ConfigurationError(f"duplicate action id {action.id!r}")
            self._actions[action.id] = action
        self._index = {action_id: i for i, action_id in enumerate(self._actions)}

        self._dependents: dict[str, list[str]] = {a: [] for a in self._actions}
        for action in self._actions.values():
            for dep in action.depends_on:
                if dep not in self._actions:
                    raise ConfigurationError(
                        f"action {action.id!r} depends on unknown action {dep!r}"
                    )
                self._dependents[dep].append(action.id)

        cycle = self._find_cycle()
        if cycle:
            raise ConfigurationError(
                "dependency cycle between actions: " + " -> ".join(cycle)
            )

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    def __getitem__(self, action_id: str) -> Action:
        return self._actions[action_id]

    @property
    def actions(self) -> list[Action]:
        return list(self._actions.values())

    def index_of(self, action_id: str) -> int:
        """Declaration position, the stable tie-break between equal priorities."""
        return self._index[action_id]

    def sort_key(self, action_id: str) -> tuple[int, int]:
        return (self._actions[action_id].priority, self._index[action_id])

    def dependents(self, action_id: str) -> list[str]:
        return list(self._dependents[action_id])

    def reverse_dependents(self) -> dict[str, list[str]]:
        """Map every action to the actions that depend on it."""
        return {a: list(deps) for a, deps in self._dependents.items()}

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; among ready actions, lowest ``sort_key`` first."""
        remaining = {a: len(self._actions[a].depends_on) for a in self._actions}
        ready = [(self.sort_key(a), a) for a, n in remaining.items() if n == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, action_id = heapq.heappop(ready)
            order.append(action_id)
            for dependent in self._dependents[action_id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self.sort_key(dependent), dependent))
        return order

    def topological_layers(self) -> list[list[str]]:
        """Groups of actions that can run together once earlier groups are done."""
        depth: dict[str, int] = {}
        for action_id in self.topological_order():
            deps = self._actions[action_id].depends_on
            depth[action_id] = 1 + max((depth[d] for d in deps), default=-1)
        count = max(depth.values(), default=-1) + 1
        layers: list[list[str]] = [[] for _ in range(count)]
        for action_id in sorted(depth, key=self.sort_key):
            layers[depth[action_id]].append(action_id)
        return layers

    def _find_cycle(self) -> list[str]:
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self._actions, white)
        stack: list[str] = []

        def visit(node: str) -> list[str]:
            color[node] = grey
            stack.append(node)
            for dep in self._actions[node].depends_on:
                if color[dep] == grey:
                    return [*stack[stack.index(dep) :], dep]
                if color[dep] == white:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            color[node] = black
            return []

        for node in self._actions:
            if color[node] == white:
                found = visit(node)
                if found:
                    return found
        return []

