"""deploy-engine: transactional multi-cloud deployment engine.

Sequences Terraform, Helm, kubectl and image build steps into Transactions
with retry, per-cluster IaC state leases and reverse-order rollback.
"""

from __future__ import annotations

# ── Adapters ────────────────────────────────────────────────────
from .adapters.memory import (
    InMemoryContainerRegistry,
    InMemoryLockStrategy,
    StaticCloudProvider,
    StaticDnsProvider,
)
from .config import EngineSettings, RetrySettings, ToolSettings, get_settings
from .correlation import (
    ExecutionContextFilter,
    generate_execution_id,
    get_execution_id,
    set_execution_id,
)
from .engine import Engine

# ── Execution ────────────────────────────────────────────────────
from .execution import (
    FunctionStep,
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
    run_command,
)
from .instrumentation import (
    HookRegistry,
    get_hook_registry,
    instrument,
    set_hook_registry,
)

# ── Models ───────────────────────────────────────────────────────
from .models import (
    AddonChart,
    Application,
    CloudProviderKind,
    ContainerImage,
    Database,
    DatabaseMode,
    DeploymentOption,
    Environment,
    ImageBuild,
    KubernetesCluster,
    NodeGroup,
    Router,
)
from .observability import install_observability_hooks

# ── Planning ─────────────────────────────────────────────────────
from .planning import ActionPlanner, DefaultStepBuilders, StepExecutorFactory

# ── Ports ────────────────────────────────────────────────────────
from .ports import ExecutionContext, IStepExecutor, StepOutcome

# ── Primitives ───────────────────────────────────────────────────
from .primitives import (
    CancellationToken,
    ConfigurationError,
    DeployEngineError,
    EngineConfigError,
    OperationCancelledError,
    RollbackError,
    SessionBusyError,
    SessionClosedError,
    StepExecutionError,
    TransactionStateError,
    TransientProviderError,
)
from .retry import RetryingStepExecutor, RetryPolicy
from .session import RequestContext, Session

# ── Transaction ──────────────────────────────────────────────────
from .transaction import (
    Action,
    ActionGraph,
    ActionKind,
    ActionState,
    ActionStatus,
    Sequencer,
    Transaction,
    TransactionOutcome,
    TransactionResult,
    TransactionState,
)

__version__ = "0.1.0"

__all__ = [
    "Action",
    "ActionGraph",
    "ActionKind",
    "ActionPlanner",
    "ActionState",
    "ActionStatus",
    "AddonChart",
    "Application",
    "CancellationToken",
    "CloudProviderKind",
    "ConfigurationError",
    "ContainerImage",
    "Database",
    "DatabaseMode",
    "DefaultStepBuilders",
    "DeployEngineError",
    "DeploymentOption",
    "Engine",
    "EngineConfigError",
    "EngineSettings",
    "Environment",
    "ExecutionContext",
    "ExecutionContextFilter",
    "FunctionStep",
    "HelmReleaseStep",
    "HelmRevertStep",
    "HelmUninstallStep",
    "HookRegistry",
    "IStepExecutor",
    "ImageBuild",
    "ImageBuildStep",
    "InMemoryContainerRegistry",
    "InMemoryLockStrategy",
    "KubectlApplyStep",
    "KubectlDeleteStep",
    "KubectlScaleStep",
    "KubernetesCluster",
    "LeasedStep",
    "LocalDockerBuildPlatform",
    "NodeGroup",
    "NoopStep",
    "OperationCancelledError",
    "RequestContext",
    "RetryPolicy",
    "RetrySettings",
    "RetryingStepExecutor",
    "RollbackError",
    "Router",
    "Sequencer",
    "Session",
    "SessionBusyError",
    "SessionClosedError",
    "StaticCloudProvider",
    "StaticDnsProvider",
    "StepExecutionError",
    "StepExecutorFactory",
    "StepOutcome",
    "TerraformApplyStep",
    "TerraformDestroyStep",
    "ToolSettings",
    "Transaction",
    "TransactionOutcome",
    "TransactionResult",
    "TransactionState",
    "TransactionStateError",
    "TransientProviderError",
    "generate_execution_id",
    "get_execution_id",
    "get_hook_registry",
    "get_settings",
    "install_observability_hooks",
    "instrument",
    "run_command",
    "set_execution_id",
    "set_hook_registry",
]
