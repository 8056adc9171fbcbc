from __future__ import annotations

import logging
from typing import Any

import pytest

from deploy_engine.instrumentation import (
    ACTION_FORWARD,
    ACTION_ROLLBACK,
    LOCK_ACQUIRE,
    TRANSACTION_COMMIT,
    HookRegistry,
    get_hook_registry,
    instrument,
    set_hook_registry,
)


class Tracer:
    """Hook that records when it enters and leaves the wrapped operation."""

    def __init__(self, label: str, trail: list[str]) -> None:
        self.label = label
        self.trail = trail
        self.seen: list[tuple[str, dict[str, Any]]] = []

    async def __call__(
        self, operation: str, attributes: dict[str, Any], next_handler: Any
    ) -> Any:
        self.seen.append((operation, attributes))
        self.trail.append(f"{self.label}>")
        try:
            return await next_handler()
        finally:
            self.trail.append(f"<{self.label}")


@pytest.fixture
def trail() -> list[str]:
    return []


@pytest.fixture
def registry() -> HookRegistry:
    return HookRegistry()


def _apply(trail: list[str], result: Any = None) -> Any:
    async def run() -> Any:
        trail.append("apply")
        return result

    return run


async def test_lower_priority_wraps_higher(
    registry: HookRegistry, trail: list[str]
) -> None:
    registry.register(Tracer("metrics", trail), priority=-50)
    registry.register(Tracer("logging", trail), priority=0)
    registry.register(Tracer("tracing", trail), priority=-100)

    outcome = await registry.execute_all(TRANSACTION_COMMIT, {}, _apply(trail, "ok"))

    assert outcome == "ok"
    assert trail == [
        "tracing>",
        "metrics>",
        "logging>",
        "apply",
        "<logging",
        "<metrics",
        "<tracing",
    ]


async def test_equal_priority_keeps_registration_order(
    registry: HookRegistry, trail: list[str]
) -> None:
    registry.register(Tracer("first", trail))
    registry.register(Tracer("second", trail))

    await registry.execute_all(LOCK_ACQUIRE, {}, _apply(trail))

    assert trail[:2] == ["first>", "second>"]


async def test_operation_patterns_and_predicate(
    registry: HookRegistry, trail: list[str]
) -> None:
    addons_only = Tracer("addons", trail)
    registry.register(
        addons_only,
        operations=["action.*"],
        predicate=lambda _op, attrs: attrs.get("action_kind") == "INSTALL_ADDON",
    )

    await registry.execute_all(
        ACTION_ROLLBACK, {"action_kind": "INSTALL_ADDON"}, _apply(trail)
    )
    await registry.execute_all(
        ACTION_FORWARD, {"action_kind": "PROVISION_CLUSTER"}, _apply(trail)
    )
    await registry.execute_all(
        LOCK_ACQUIRE, {"action_kind": "INSTALL_ADDON"}, _apply(trail)
    )

    assert [op for op, _ in addons_only.seen] == [ACTION_ROLLBACK]
    assert trail.count("apply") == 3


async def test_disabled_hook_is_skipped_until_enabled(
    registry: HookRegistry, trail: list[str]
) -> None:
    registration = registry.register(Tracer("lease", trail), enabled=False)

    await registry.execute_all(LOCK_ACQUIRE, {}, _apply(trail))
    assert trail == ["apply"]

    registration.enabled = True
    await registry.execute_all(LOCK_ACQUIRE, {}, _apply(trail))
    assert "lease>" in trail

    registry.unregister(registration)
    registry.unregister(registration)
    assert registry.registrations == ()


def test_unknown_pattern_is_reported(
    registry: HookRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING, logger="deploy_engine.instrumentation"):
        registry.register(Tracer("typo", []), operations=["actoin.*", "lock.*"])

    assert "actoin.*" in caplog.text
    assert "lock.*" not in caplog.text


async def test_failures_pass_through_every_hook(
    registry: HookRegistry, trail: list[str]
) -> None:
    registry.register(Tracer("outer", trail))

    async def crashing() -> None:
        raise RuntimeError("terraform crashed")

    with pytest.raises(RuntimeError, match="terraform crashed"):
        await registry.execute_all(ACTION_FORWARD, {}, crashing)
    assert trail == ["outer>", "<outer"]


async def test_instrument_falls_back_to_the_context_registry(
    trail: list[str],
) -> None:
    original = get_hook_registry()
    scoped = HookRegistry()
    scoped.register(Tracer("scoped", trail))
    try:
        set_hook_registry(scoped)
        assert get_hook_registry() is scoped

        await instrument(TRANSACTION_COMMIT, {"actions": 0}, _apply(trail))
        await instrument(
            TRANSACTION_COMMIT, {}, _apply(trail), hooks=HookRegistry()
        )
    finally:
        set_hook_registry(original)

    assert trail == ["scoped>", "apply", "<scoped", "apply"]
