"""Engine configuration using pydantic-settings.

Loaded from ``DEPLOY_ENGINE_*`` environment variables and an optional .env
file. Nested settings use a double underscore:
``DEPLOY_ENGINE_RETRY__MAX_ATTEMPTS=5``.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetrySettings(BaseModel):
    """Backoff parameters for one retry policy."""

    max_attempts: int = Field(3, ge=1, description="Attempts including the first")
    base_delay: float = Field(3.0, ge=0, description="Initial backoff in seconds")
    max_delay: float = Field(60.0, ge=0, description="Cap on a single backoff")
    jitter: bool = Field(True, description="Randomise delays to avoid lockstep")

    @model_validator(mode="after")
    def _check_delays(self) -> RetrySettings:
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must be <= max_delay")
        return self


class ToolSettings(BaseModel):
    """Binaries and per-tool limits."""

    terraform_binary: str = Field("terraform", description="IaC binary")
    helm_binary: str = Field("helm", description="Chart release binary")
    kubectl_binary: str = Field("kubectl", description="Cluster manifest binary")
    docker_binary: str = Field("docker", description="Image build binary")
    tf_plugin_cache_dir: Path | None = Field(
        None, description="Shared TF_PLUGIN_CACHE_DIR for terraform init"
    )
    command_timeout: float = Field(
        3600.0, gt=0, description="Hard timeout for a single tool invocation"
    )
    helm_timeout: int = Field(
        300, gt=0, description="Seconds helm waits for a release to become ready"
    )
    kubectl_wait_timeout: int = Field(
        300, gt=0, description="Seconds kubectl waits for a readiness condition"
    )
    kill_grace_period: float = Field(
        300.0,
        ge=0,
        description="Seconds between SIGINT and SIGKILL when aborting a tool",
    )


class EngineSettings(BaseSettings):
    """Deployment engine settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOY_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Sequencing
    # ============================================================

    max_parallel_actions: int = Field(
        4, ge=1, description="Concurrent actions dispatched by the sequencer"
    )
    dry_run: bool = Field(
        False, description="Validate plans without applying anything"
    )

    # ============================================================
    # Retry
    # ============================================================

    retry: RetrySettings = Field(
        default_factory=RetrySettings, description="Forward step retry policy"
    )
    rollback_retry: RetrySettings = Field(
        default_factory=lambda: RetrySettings(max_attempts=5),
        description="Rollback step retry policy",
    )

    # ============================================================
    # IaC state lease
    # ============================================================

    lease_timeout: float = Field(
        600.0, gt=0, description="Seconds to wait for a cluster's IaC state lease"
    )
    lease_ttl: float = Field(
        7200.0, gt=0, description="Lease TTL; must outlive one terraform run"
    )

    # ============================================================
    # Tools
    # ============================================================

    tools: ToolSettings = Field(default_factory=ToolSettings)

    @model_validator(mode="after")
    def _check_lease(self) -> EngineSettings:
        if self.lease_ttl < self.tools.command_timeout:
            raise ValueError("lease_ttl must be >= tools.command_timeout")
        return self


def get_settings() -> EngineSettings:
    """Load settings from the environment."""
    return EngineSettings()
