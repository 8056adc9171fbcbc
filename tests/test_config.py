from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from deploy_engine.config import EngineSettings, RetrySettings, get_settings
from deploy_engine.retry import RetryPolicy


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("DEPLOY_ENGINE_"):
            monkeypatch.delenv(key)


def test_defaults() -> None:
    settings = EngineSettings()

    assert settings.max_parallel_actions == 4
    assert settings.dry_run is False
    assert settings.retry.max_attempts == 3
    assert settings.rollback_retry.max_attempts == 5
    assert settings.lease_timeout == 600.0
    assert settings.tools.terraform_binary == "terraform"
    assert settings.tools.command_timeout == 3600.0
    assert settings.tools.kill_grace_period == 300.0


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEPLOY_ENGINE_MAX_PARALLEL_ACTIONS", "8")
    monkeypatch.setenv("DEPLOY_ENGINE_DRY_RUN", "true")
    monkeypatch.setenv("DEPLOY_ENGINE_RETRY__MAX_ATTEMPTS", "7")
    monkeypatch.setenv("DEPLOY_ENGINE_TOOLS__HELM_BINARY", "/opt/bin/helm3")

    settings = get_settings()

    assert settings.max_parallel_actions == 8
    assert settings.dry_run is True
    assert settings.retry.max_attempts == 7
    assert settings.retry.base_delay == 3.0
    assert settings.tools.helm_binary == "/opt/bin/helm3"


def test_retry_delays_must_be_ordered() -> None:
    with pytest.raises(ValidationError, match="base_delay must be <= max_delay"):
        RetrySettings(base_delay=30.0, max_delay=5.0)


def test_lease_must_outlive_a_tool_run() -> None:
    with pytest.raises(ValidationError, match="lease_ttl"):
        EngineSettings(lease_ttl=60.0)


def test_parallelism_is_at_least_one() -> None:
    with pytest.raises(ValidationError):
        EngineSettings(max_parallel_actions=0)


def test_retry_policy_from_settings() -> None:
    policy = RetryPolicy.from_settings(
        RetrySettings(max_attempts=2, base_delay=1.0, max_delay=4.0, jitter=False)
    )

    assert policy.max_attempts == 2
    assert policy.base_delay == 1.0
    assert policy.max_delay == 4.0
    assert policy.jitter is False
