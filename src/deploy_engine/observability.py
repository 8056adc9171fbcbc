"""Tracing, metrics and structured logging hooks for engine operations.

Install all three into the current hook registry with
:func:`install_observability_hooks`.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from .correlation import get_execution_id
from .instrumentation import HookRegistry, get_hook_registry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger("deploy_engine.observability")

DEFAULT_TRACE_OPERATIONS: list[str] = [
    "transaction.*",
    "action.*",
    "lock.acquire",
]


def outcome_of(result: Any) -> str:
    """Label for an operation result; operations report failure by value."""
    outcome = getattr(result, "outcome", None)
    if outcome is not None:
        return str(getattr(outcome, "value", outcome)).lower()
    success = getattr(result, "success", None)
    if success is None:
        return "success"
    return "success" if success else "failure"


class TracingHook:
    """One OpenTelemetry span per operation."""

    def __init__(self, tracer: trace.Tracer | None = None) -> None:
        self._tracer = tracer or trace.get_tracer("deploy-engine", "0.1.0")

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        with self._tracer.start_as_current_span(operation) as span:
            for key, value in attributes.items():
                span.set_attribute(f"deploy.{key}", str(value))
            execution_id = get_execution_id()
            if execution_id:
                span.set_attribute("deploy.execution_id", execution_id)
            try:
                result = await next_handler()
            except Exception as exc:
                span.set_attribute("deploy.outcome", "error")
                span.record_exception(exc)
                raise
            span.set_attribute("deploy.outcome", outcome_of(result))
            return result


class MetricsHook:
    """Prometheus counters and histograms per operation.

    Metrics:
      - ``deploy_engine_operation_total{operation, kind, outcome}``
      - ``deploy_engine_operation_duration_seconds{operation, kind, outcome}``
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        registry = registry or REGISTRY
        self._counter = Counter(
            "deploy_engine_operation_total",
            "Engine operations by outcome",
            ["operation", "kind", "outcome"],
            registry=registry,
        )
        self._histogram = Histogram(
            "deploy_engine_operation_duration_seconds",
            "Engine operation duration",
            ["operation", "kind", "outcome"],
            registry=registry,
            buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600),
        )

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        start = time.monotonic()
        outcome = "error"
        try:
            result = await next_handler()
            outcome = outcome_of(result)
            return result
        finally:
            labels = {
                "operation": operation,
                "kind": str(attributes.get("action_kind", "")),
                "outcome": outcome,
            }
            try:
                self._histogram.labels(**labels).observe(time.monotonic() - start)
                self._counter.labels(**labels).inc()
            except Exception:  # noqa: BLE001
                logger.debug("Failed to emit metrics labels", exc_info=True)


class StructuredLoggingHook:
    """One JSON log line per finished operation."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logging.getLogger("deploy_engine.audit")

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        start = time.monotonic()
        outcome = "error"
        try:
            result = await next_handler()
            outcome = outcome_of(result)
            return result
        finally:
            entry = {
                "operation": operation,
                "outcome": outcome,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
                "execution_id": get_execution_id(),
                **{k: str(v) for k, v in attributes.items()},
            }
            self._log.info(json.dumps(entry, sort_keys=True))


def install_observability_hooks(
    registry: HookRegistry | None = None,
    *,
    operations: list[str] | None = None,
    metrics_registry: CollectorRegistry | None = None,
    tracing: bool = True,
    metrics: bool = True,
    structured_logging: bool = True,
) -> HookRegistry:
    """Register the tracing, metrics and logging hooks.

    Tracing is outermost so the other two run inside its span.
    """
    registry = registry or get_hook_registry()
    patterns = operations or DEFAULT_TRACE_OPERATIONS
    if tracing:
        registry.register(TracingHook(), priority=-100, operations=patterns)
    if metrics:
        registry.register(
            MetricsHook(metrics_registry), priority=-50, operations=patterns
        )
    if structured_logging:
        registry.register(StructuredLoggingHook(), priority=0, operations=patterns)
    logger.info(
        "Observability hooks installed",
        extra={
            "tracing": tracing,
            "metrics": metrics,
            "structured_logging": structured_logging,
        },
    )
    return registry
