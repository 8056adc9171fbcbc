"""In-process IaC state leases.

Each Engine owns one :class:`InMemoryLockStrategy`; leases are not shared
across engines or processes.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from uuid import uuid4

from ...ports.locking import ActiveLock, ILockStrategy
from ...primitives.exceptions import LockAcquisitionError

if TYPE_CHECKING:
    from ...primitives.locking import ResourceIdentifier

logger = logging.getLogger("deploy_engine.locking")

_Key = tuple[str, str]


@dataclass
class _Lease:
    """Holder and FIFO queue of one resource.

    On release the lease is handed straight to the oldest waiter still
    listening, so late arrivals always queue behind it.
    """

    holder: str | None = None
    execution: str | None = None
    depth: int = 0
    granted_at: datetime | None = None
    ttl: float = 0.0
    reserved: bool = False
    queue: deque[asyncio.Future[None]] = field(default_factory=deque)

    @property
    def held(self) -> bool:
        return self.holder is not None

    @property
    def waiting(self) -> int:
        return sum(not f.done() for f in self.queue)

    @property
    def idle(self) -> bool:
        return not (self.held or self.reserved or self.queue)

    def grant(self, execution: str | None, ttl: float) -> str:
        self.holder = uuid4().hex
        self.reserved = False
        self.execution = execution
        self.depth = 1
        self.granted_at = datetime.now(timezone.utc)
        self.ttl = ttl
        return self.holder

    def hand_over(self) -> None:
        """Drop the holder and reserve the lease for the next live waiter."""
        self.holder = None
        self.execution = None
        self.granted_at = None
        self.reserved = False
        while self.queue:
            nxt = self.queue.popleft()
            if not nxt.done():
                nxt.set_result(None)
                self.reserved = True
                return


class InMemoryLockStrategy(ILockStrategy):
    """FIFO leases held in process memory.

    Re-acquiring with the execution id of the current holder nests instead
    of waiting. Tokens are fresh per grant, so a token kept from an earlier
    grant never releases a later one.
    """

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self._leases: dict[_Key, _Lease] = {}
        self._max_queue_size = max_queue_size

    async def acquire(
        self,
        resource: ResourceIdentifier,
        *,
        timeout: float = 10.0,
        ttl: float = 30.0,
        session_id: str | None = None,
    ) -> str:
        key = resource.sort_key
        lease = self._leases.setdefault(key, _Lease())

        if lease.held and session_id is not None and lease.execution == session_id:
            lease.depth += 1
            logger.debug("Nested lease on %s (depth %d)", resource, lease.depth)
            assert lease.holder is not None
            return lease.holder

        if lease.held or lease.reserved or lease.queue:
            await self._wait_turn(key, lease, resource, timeout)

        token = lease.grant(session_id, ttl)
        logger.debug("Lease on %s granted", resource, extra={"ttl": ttl})
        return token

    async def _wait_turn(
        self,
        key: _Key,
        lease: _Lease,
        resource: ResourceIdentifier,
        timeout: float,
    ) -> None:
        if lease.waiting >= self._max_queue_size:
            raise LockAcquisitionError(
                resource,
                timeout,
                reason=f"lock queue full ({self._max_queue_size} waiters)",
            )
        turn: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        lease.queue.append(turn)
        logger.debug("Queued for %s behind %d", resource, len(lease.queue) - 1)
        try:
            await asyncio.wait_for(turn, timeout=timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
            if turn.done() and not turn.cancelled():
                # Our turn came as we gave up.
                self._pass_on(key, lease)
            else:
                if turn in lease.queue:
                    lease.queue.remove(turn)
                self._forget_if_idle(key, lease)
            if isinstance(exc, asyncio.TimeoutError):
                logger.warning("No lease on %s after %.1fs", resource, timeout)
                raise LockAcquisitionError(resource, timeout) from exc
            raise

    async def extend(
        self,
        resource: ResourceIdentifier,
        token: str,
        ttl: float,
    ) -> bool:
        lease = self._leases.get(resource.sort_key)
        if lease is None or lease.holder != token:
            return False
        lease.ttl = ttl
        logger.debug("Lease on %s extended to %.1fs", resource, ttl)
        return True

    async def release(
        self,
        resource: ResourceIdentifier,
        token: str,
    ) -> None:
        key = resource.sort_key
        lease = self._leases.get(key)
        if lease is None or lease.holder != token:
            logger.warning("Ignoring release of %s with a stale token", resource)
            return
        lease.depth -= 1
        if lease.depth:
            return
        self._pass_on(key, lease)
        logger.debug("Lease on %s released", resource)

    def _pass_on(self, key: _Key, lease: _Lease) -> None:
        lease.hand_over()
        self._forget_if_idle(key, lease)

    def _forget_if_idle(self, key: _Key, lease: _Lease) -> None:
        if lease.idle:
            self._leases.pop(key, None)

    async def health_check(self) -> bool:
        return True

    async def get_active_locks(self) -> list[ActiveLock]:
        return [
            ActiveLock(
                resource_type=key[0],
                resource_id=key[1],
                token=lease.holder,
                acquired_at=lease.granted_at or datetime.now(timezone.utc),
                ttl_seconds=lease.ttl,
                session_id=lease.execution,
                waiters=lease.waiting,
            )
            for key, lease in self._leases.items()
            if lease.holder is not None
        ]
