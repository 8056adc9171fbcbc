"""IStepExecutor: protocol for a single external provisioning primitive.

A step executor wraps one tool invocation (IaC apply, chart release, manifest
apply, image build/push) behind ``execute(ctx) -> StepOutcome``. Executors are
pure with respect to the engine: they never touch Transaction or Action state,
their only visible effect is the returned outcome.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..primitives.exceptions import (
    OperationCancelledError,
    TransientProviderError,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

    from ..primitives.cancellation import CancellationToken


@dataclass(frozen=True)
class ExecutionContext:
    """Everything an executor needs at call time.

    Rendered configuration (plan directory, chart and values, manifest,
    image) is bound to the executor when it is created; the context only
    carries what varies per invocation.
    """

    token: CancellationToken
    working_dir: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    kubeconfig: Path | None = None
    cluster_id: str | None = None
    execution_id: str | None = None
    dry_run: bool = False
    attempt: int = 1

    def with_attempt(self, attempt: int) -> ExecutionContext:
        return dataclasses.replace(self, attempt=attempt)

    def with_token(self, token: CancellationToken) -> ExecutionContext:
        return dataclasses.replace(self, token=token)

    def tool_env(self) -> dict[str, str]:
        """Environment for a child process, with KUBECONFIG when known."""
        env = dict(self.env)
        if self.kubeconfig is not None:
            env.setdefault("KUBECONFIG", str(self.kubeconfig))
        return env


@dataclass(frozen=True)
class StepOutcome:
    """Result of one executor invocation."""

    success: bool
    retryable: bool = False
    output: Any = None
    error: BaseException | None = None

    @classmethod
    def succeeded(cls, output: Any = None) -> StepOutcome:
        return cls(success=True, output=output)

    @classmethod
    def failed(
        cls,
        error: BaseException,
        *,
        retryable: bool = False,
        output: Any = None,
    ) -> StepOutcome:
        return cls(success=False, retryable=retryable, output=output, error=error)

    @classmethod
    def cancelled(cls, reason: str | None = None) -> StepOutcome:
        return cls(success=False, error=OperationCancelledError(reason))

    @classmethod
    def from_exception(cls, exc: BaseException) -> StepOutcome:
        """Only transient provider errors are worth another attempt."""
        return cls(
            success=False,
            retryable=isinstance(exc, TransientProviderError),
            error=exc,
        )

    @property
    def is_cancelled(self) -> bool:
        return isinstance(self.error, OperationCancelledError)


@runtime_checkable
class IStepExecutor(Protocol):
    """
    Step executor protocol.

    Example:
        ```python
        class ApplyNetwork:
            name = "terraform-apply:network"

            async def execute(self, ctx: ExecutionContext) -> StepOutcome:
                ...
        ```
    """

    name: str

    async def execute(self, ctx: ExecutionContext) -> StepOutcome:
        """
        Run the primitive to completion or cancellation.

        Failures (non-zero exit, timeout, malformed output) are reported
        through ``StepOutcome(success=False, retryable=..., error=...)``
        rather than raised.
        """
        ...
