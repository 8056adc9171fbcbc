"""Holding leases for the duration of a block."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from .primitives.exceptions import LockAcquisitionError, OperationCancelledError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .ports.locking import ILockStrategy
    from .primitives.cancellation import CancellationToken
    from .primitives.locking import ResourceIdentifier

logger = logging.getLogger("deploy_engine.locking")


def _merge(resources: Iterable[ResourceIdentifier]) -> list[ResourceIdentifier]:
    """One entry per resource, write mode winning, in acquisition order."""
    merged: dict[tuple[str, str], ResourceIdentifier] = {}
    for resource in resources:
        known = merged.get(resource.sort_key)
        if known is None or resource.lock_mode == "write":
            merged[resource.sort_key] = resource
    return sorted(merged.values())


class CriticalSection:
    """
    Leases on a set of resources, held while the ``async with`` body runs.

    Leases are taken in sorted order so two sections over the same resources
    cannot deadlock. If the token fires or a lease times out halfway, the
    leases already held are given back before the error surfaces.

    Usage:
        ```python
        async with CriticalSection(
            [ResourceIdentifier.iac_state(cluster.id)],
            lock_strategy,
            ttl=settings.lease_ttl,
            token=ctx.token,
        ):
            await terraform_apply()
        ```
    """

    def __init__(
        self,
        resources: Iterable[ResourceIdentifier],
        lock_strategy: ILockStrategy,
        *,
        timeout: float = 10.0,
        ttl: float = 30.0,
        session_id: str | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self._resources = _merge(resources)
        self._strategy = lock_strategy
        self._timeout = timeout
        self._ttl = ttl
        self._session_id = session_id
        self._token = token
        self._held: list[tuple[ResourceIdentifier, str]] = []

    @property
    def resources(self) -> list[ResourceIdentifier]:
        return list(self._resources)

    async def acquire(self) -> None:
        """
        Raises:
            LockAcquisitionError: a lease was not granted in time, or the
                lock backend failed.
            OperationCancelledError: the token fired while waiting.
        """
        started = time.monotonic()
        current: ResourceIdentifier | None = None
        try:
            for current in self._resources:
                self._held.append((current, await self._wait_for(current)))
        except BaseException as exc:
            await self.release()
            if isinstance(exc, Exception) and not isinstance(
                exc, (LockAcquisitionError, OperationCancelledError)
            ):
                assert current is not None
                raise LockAcquisitionError(
                    current, self._timeout, reason=str(exc)
                ) from exc
            raise

        logger.info(
            "Holding %d lease(s)",
            len(self._held),
            extra={
                "resources": [str(r) for r in self._resources],
                "duration_ms": (time.monotonic() - started) * 1000,
            },
        )

    async def _wait_for(self, resource: ResourceIdentifier) -> str:
        grant = asyncio.ensure_future(
            self._strategy.acquire(
                resource,
                timeout=self._timeout,
                ttl=self._ttl,
                session_id=self._session_id,
            )
        )
        if self._token is None:
            return await grant

        fired = asyncio.ensure_future(self._token.wait())
        try:
            await asyncio.wait({grant, fired}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._drop(resource, grant)
            raise
        finally:
            fired.cancel()
        if grant.done():
            return grant.result()

        await self._drop(resource, grant)
        logger.info("Stopped waiting for %s: cancelled", resource)
        raise OperationCancelledError(self._token.reason)

    async def _drop(
        self, resource: ResourceIdentifier, grant: asyncio.Future[str]
    ) -> None:
        grant.cancel()
        (result,) = await asyncio.gather(grant, return_exceptions=True)
        if isinstance(result, str):
            # Granted in the same tick as the cancellation.
            await self._strategy.release(resource, result)

    async def release(self) -> list[Exception]:
        """Give held leases back, last acquired first.

        Returns the errors of releases that failed; the rest still go ahead.
        """
        failures: list[Exception] = []
        while self._held:
            resource, lease = self._held.pop()
            try:
                await self._strategy.release(resource, lease)
            except Exception as exc:  # noqa: BLE001
                logger.error("Could not release %s: %s", resource, exc)
                failures.append(exc)
        if failures:
            logger.warning("%d lease release(s) failed", len(failures))
        return failures

    async def __aenter__(self) -> CriticalSection:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.release()
