"""Map a failed tool invocation onto the error taxonomy.

Classification decides whether the retry policy gets another attempt:
throttling, state-lock contention and network blips are transient; quota,
credential, permission and validation errors are not.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from ..primitives.exceptions import (
    ConfigurationError,
    DeployEngineError,
    InvalidCredentialsError,
    OperationCancelledError,
    PermissionDeniedError,
    QuotaExceededError,
    StepExecutionError,
    TransientProviderError,
)
from .process import AbortReason

if TYPE_CHECKING:
    from .process import CommandResult

TRANSIENT_MARKERS: tuple[str, ...] = (
    # throttling
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequests",
    "Rate exceeded",
    "429 Too Many Requests",
    # IaC and chart release lock contention
    "Error acquiring the state lock",
    "another operation (install/upgrade/rollback) is in progress",
    # network
    "connection reset by peer",
    "i/o timeout",
    "TLS handshake timeout",
    "context deadline exceeded",
    "connection refused",
    "no such host",
    # eventual consistency
    "the object has been modified; please apply your changes to the latest version",
    # provider plugins
    "Failed to install provider",
    "Plugin reinitialization required",
)

_SCW_QUOTA = "<Code>QuotaExceeded</Code>"
_STS_FORBIDDEN = (
    "error calling sts:GetCallerIdentity: operation error STS: "
    "GetCallerIdentity, https response error StatusCode: 403"
)
_QUOTA_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"You've reached your quota for maximum (?P<resource_type>[\w?\s]+) "
        r"for this account"
    ),
    re.compile(
        r"You have exceeded the limit of (?P<resource_type>[\w?\s]+) allowed on "
        r"your AWS account \((?P<max_resource_count>\d+) by default\)"
    ),
    re.compile(
        r"You have requested more (?P<resource_type>[\w?\s]+) capacity than your "
        r"current [\w?\s]+ limit of (?P<max_resource_count>\d+)"
    ),
    re.compile(
        r"Error creating (?P<resource_type>[\w?\s]+): \w+: The maximum number of "
        r"[\w?\s]+ has been reached"
    ),
)
_OPT_IN_REQUIRED = re.compile(
    r"Error fetching (?P<service_type>[\w?\s]+): OptInRequired: "
    r"You are not subscribed to this service"
)
_ACCESS_DENIED = re.compile(
    r"AccessDenied: User: (?P<user>.+?) is not authorized to perform: "
    r"(?P<action>.+?) on resource: (?P<resource>.+?) because"
)


def is_transient(output: str) -> bool:
    return any(marker in output for marker in TRANSIENT_MARKERS)


def classify_output(tool: str, output: str) -> DeployEngineError | None:
    """Recognise provider errors that are never worth retrying."""
    if _SCW_QUOTA in output:
        return QuotaExceededError(
            "Scaleway quota exceeded: the account needs validation",
            tool=tool,
            stderr=output,
        )
    for pattern in _QUOTA_PATTERNS:
        match = pattern.search(output)
        if match:
            groups = match.groupdict()
            count = groups.get("max_resource_count")
            resource_type = groups["resource_type"].strip()
            return QuotaExceededError(
                f"quota exceeded for {resource_type}",
                resource_type=resource_type,
                max_resource_count=int(count) if count else None,
                tool=tool,
                stderr=output,
            )
    match = _OPT_IN_REQUIRED.search(output)
    if match:
        return ConfigurationError(
            f"service {match['service_type'].strip()} is not activated on this account"
        )
    if _STS_FORBIDDEN in output:
        return InvalidCredentialsError("the provider rejected the credentials")
    match = _ACCESS_DENIED.search(output)
    if match:
        return PermissionDeniedError(
            f"{match['user']} is not authorized to perform {match['action']} "
            f"on {match['resource']}",
            user=match["user"],
            action=match["action"],
            resource=match["resource"],
            tool=tool,
            stderr=output,
        )
    return None


def classify_failure(tool: str, result: CommandResult) -> DeployEngineError:
    """Error describing why ``result`` is not a success."""
    if result.abort_reason is AbortReason.CANCELLED:
        return OperationCancelledError(f"{tool} aborted")
    if result.abort_reason is AbortReason.TIMEOUT:
        return TransientProviderError(
            f"{tool} timed out after {result.duration:.0f}s"
        )

    output = "\n".join((*result.stderr, *result.stdout))
    known = classify_output(tool, output)
    if known is not None:
        return known
    if is_transient(output):
        return TransientProviderError(
            f"{tool} failed transiently (exit {result.returncode}): "
            f"{_tail(result.stderr)}"
        )
    return StepExecutionError(
        f"{tool} exited with {result.returncode}: {_tail(result.stderr)}",
        tool=tool,
        command=result.command,
        returncode=result.returncode,
        stderr=result.stderr_text,
    )


def _tail(lines: tuple[str, ...], count: int = 5) -> str:
    return " | ".join(line for line in lines[-count:] if line.strip())
