"""Lease port guarding shared external state.

Only the IaC state of a cluster needs it: two terraform runs against the
same state would corrupt it. Applies can take many minutes, so callers
acquire with ``EngineSettings.lease_ttl`` (at least the command timeout)
or keep the lease alive with :meth:`ILockStrategy.extend`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from ..primitives.locking import ResourceIdentifier


@dataclass(frozen=True)
class ActiveLock:
    """Snapshot of a granted lease."""

    resource_type: str
    resource_id: str
    token: str
    acquired_at: datetime
    ttl_seconds: float
    # Execution holding the lease, when it acquired with one.
    session_id: str | None = None
    waiters: int = 0


@runtime_checkable
class ILockStrategy(Protocol):
    """Grants exclusive, FIFO-fair leases on resources.

    A backend may be the state backend's own locking or, for one engine
    process, memory (see ``adapters.memory.InMemoryLockStrategy``).
    """

    async def acquire(
        self,
        resource: ResourceIdentifier,
        *,
        timeout: float = 10.0,
        ttl: float = 30.0,
        session_id: str | None = None,
    ) -> str:
        """Wait up to ``timeout`` seconds for ``resource`` and return a token.

        A caller passing the ``session_id`` of the current holder nests
        inside its lease and gets the same token back; each nested acquire
        needs its own release.

        Raises:
            LockAcquisitionError: not granted in time, or the wait queue is
                full.
        """
        ...

    async def extend(
        self,
        resource: ResourceIdentifier,
        token: str,
        ttl: float,
    ) -> bool:
        """Reset the TTL; False when ``token`` no longer holds the lease."""
        ...

    async def release(
        self,
        resource: ResourceIdentifier,
        token: str,
    ) -> None:
        """Give the lease up; unknown or stale tokens are ignored."""
        ...

    async def health_check(self) -> bool: ...

    async def get_active_locks(self) -> list[ActiveLock]:
        """Granted leases with their queue lengths."""
        ...
