from __future__ import annotations

import pytest

from deploy_engine.primitives import ConfigurationError
from deploy_engine.transaction import ActionGraph, ActionKind

from .conftest import make_action


class TestValidation:
    def test_duplicate_ids(self) -> None:
        with pytest.raises(ConfigurationError, match="duplicate action id 'a'"):
            ActionGraph([make_action("a"), make_action("a")])

    def test_unknown_dependency(self) -> None:
        with pytest.raises(ConfigurationError, match="unknown action 'missing'"):
            ActionGraph([make_action("a", depends_on=("missing",))])

    def test_cycle_is_reported_with_its_path(self) -> None:
        with pytest.raises(ConfigurationError, match="a -> b -> c -> a"):
            ActionGraph(
                [
                    make_action("a", depends_on=("b",)),
                    make_action("b", depends_on=("c",)),
                    make_action("c", depends_on=("a",)),
                ]
            )

    def test_self_dependency_rejected_by_action(self) -> None:
        with pytest.raises(ConfigurationError, match="depends on itself"):
            make_action("a", depends_on=("a",))

    def test_empty_graph(self) -> None:
        graph = ActionGraph([])
        assert len(graph) == 0
        assert graph.topological_order() == []
        assert graph.topological_layers() == []


class TestOrdering:
    def test_dependencies_come_first(self) -> None:
        graph = ActionGraph(
            [
                make_action("addon", depends_on=("cluster",)),
                make_action("cluster", depends_on=("network",)),
                make_action("network"),
            ]
        )
        assert graph.topological_order() == ["network", "cluster", "addon"]

    def test_priority_then_declaration_order(self) -> None:
        graph = ActionGraph(
            [
                make_action("app-2", kind=ActionKind.DEPLOY_ENVIRONMENT),
                make_action("db", kind=ActionKind.PROVISION_DATABASE),
                make_action("app-1", kind=ActionKind.DEPLOY_ENVIRONMENT),
                make_action("network", kind=ActionKind.PROVISION_NETWORK),
            ]
        )
        assert graph.topological_order() == ["network", "db", "app-2", "app-1"]
        assert graph.sort_key("app-1") == (60, 2)

    def test_explicit_ordering_key_overrides_kind(self) -> None:
        graph = ActionGraph(
            [
                make_action("late", kind=ActionKind.PROVISION_NETWORK, ordering_key=99),
                make_action("early", kind=ActionKind.DELETE_CLUSTER, ordering_key=1),
            ]
        )
        assert graph.topological_order() == ["early", "late"]

    def test_layers(self) -> None:
        graph = ActionGraph(
            [
                make_action("network"),
                make_action("cluster", depends_on=("network",)),
                make_action("ng-a", depends_on=("cluster",)),
                make_action("ng-b", depends_on=("cluster",)),
                make_action("addon", depends_on=("ng-a", "ng-b")),
                make_action("image"),
            ]
        )
        assert graph.topological_layers() == [
            ["network", "image"],
            ["cluster"],
            ["ng-a", "ng-b"],
            ["addon"],
        ]

    def test_dependents(self) -> None:
        graph = ActionGraph(
            [
                make_action("cluster"),
                make_action("ng-a", depends_on=("cluster",)),
                make_action("ng-b", depends_on=("cluster",)),
            ]
        )
        assert graph.dependents("cluster") == ["ng-a", "ng-b"]
        assert graph.reverse_dependents()["ng-a"] == []
        assert "ng-a" in graph
        assert graph["ng-b"].depends_on == ("cluster",)
        assert graph.index_of("ng-b") == 2
