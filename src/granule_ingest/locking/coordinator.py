"""
Granule lock coordination.

Serializes transfers that share a (provider, granule) pair. Acquisition polls
the lock table's conditional insert with backoff until the configured maximum
wait elapses, then fails with ``ResourcesLockedError``. While a lock is held
its lease is renewed every third of the TTL. A disabled coordinator hands
out tokens without touching any table.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from granule_ingest.exceptions import ConfigurationError, ResourcesLockedError
from granule_ingest.locking.backoff import DEFAULT_BACKOFF_POLICY, BackoffPolicy
from granule_ingest.locking.tables import LockTable
from granule_ingest.utils.async_utils import wait_for_conditional_value
from granule_ingest.utils.logging import get_logger

logger = get_logger("granule_ingest.locking")


@dataclass(frozen=True)
class LockKey:
    provider_id: str
    granule_id: str

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.granule_id}"


@dataclass(frozen=True)
class LockToken:
    """Proof of holding a lock. ``held`` is False for pass-through tokens."""

    key: LockKey
    owner: str
    expires_at: float
    held: bool = True


class LockCoordinator:
    """
    Acquire and release granule locks against a :class:`LockTable`.

    Examples:
        >>> coordinator = LockCoordinator(InMemoryLockTable(), max_wait_ms=5000)
        >>> async with coordinator.hold(LockKey("prov", "G1")):
        ...     ...  # exclusive access to G1 from prov
    """

    def __init__(
        self,
        table: LockTable | None,
        *,
        enabled: bool = True,
        ttl_s: float = 300.0,
        max_wait_ms: int = 5000,
        backoff: BackoffPolicy | None = None,
    ):
        if enabled and table is None:
            raise ConfigurationError("Locking is enabled but no lock table is configured")
        if ttl_s <= 0:
            raise ConfigurationError("locking.ttl_s must be > 0")
        if max_wait_ms < 0:
            raise ConfigurationError("locking.max_wait_ms must be >= 0")
        self.table = table
        self.enabled = enabled
        self.ttl_s = ttl_s
        self.max_wait_ms = max_wait_ms
        self.backoff = backoff or DEFAULT_BACKOFF_POLICY

    @classmethod
    def disabled(cls) -> "LockCoordinator":
        """Pass-through coordinator used when locking is turned off."""
        return cls(None, enabled=False)

    async def _try_put(self, key: LockKey, owner: str) -> bool:
        return await asyncio.to_thread(self.table.try_put, str(key), owner, self.ttl_s)

    async def acquire(self, key: LockKey, max_wait_ms: int | None = None) -> LockToken:
        """
        Take the lock for ``key``.

        Args:
            key: Provider/granule pair to lock
            max_wait_ms: Overrides the coordinator's maximum wait

        Raises:
            ResourcesLockedError: if the lock is still held after the wait
        """
        if not self.enabled:
            return LockToken(key=key, owner="", expires_at=0.0, held=False)

        owner = uuid.uuid4().hex
        wait_s = (self.max_wait_ms if max_wait_ms is None else max_wait_ms) / 1000
        started = time.monotonic()
        try:
            if wait_s <= 0:
                acquired = await self._try_put(key, owner)
            else:
                acquired = await wait_for_conditional_value(
                    lambda: self._try_put(key, owner),
                    lambda ok: ok,
                    interval=self.backoff.get_delay,
                    timeout=wait_s,
                )
        except TimeoutError:
            acquired = False
        except asyncio.CancelledError:
            # The insert may have landed before cancellation; drop it if so
            await asyncio.shield(asyncio.to_thread(self.table.delete, str(key), owner))
            raise

        if not acquired:
            raise ResourcesLockedError(
                f"Download lock for {key} remained in place after {wait_s * 1000:.0f}ms",
                details={"provider_id": key.provider_id, "granule_id": key.granule_id},
            )

        logger.debug(f"Acquired lock {key} after {(time.monotonic() - started) * 1000:.0f}ms")
        return LockToken(key=key, owner=owner, expires_at=time.time() + self.ttl_s)

    async def release(self, token: LockToken) -> None:
        """
        Release a lock. Idempotent; pass-through tokens are ignored.

        A failed release is logged and left to expire after its TTL.
        """
        if not token.held:
            return
        try:
            await asyncio.shield(asyncio.to_thread(self.table.delete, str(token.key), token.owner))
        except Exception as e:
            logger.warning(f"Failed to release lock {token.key}, it will expire after {self.ttl_s}s: {e}")
            return
        logger.debug(f"Released lock {token.key}")

    async def renew(self, token: LockToken) -> bool:
        """
        Extend a held lock by another TTL. Returns False if it was lost.
        """
        if not token.held:
            return True
        return await asyncio.to_thread(self.table.renew, str(token.key), token.owner, self.ttl_s)

    async def _heartbeat(self, token: LockToken, stop: asyncio.Event) -> None:
        """Renew ``token`` every third of its TTL until ``stop`` is set."""
        interval = self.ttl_s / 3
        while True:
            try:
                await asyncio.wait_for(stop.wait(), interval)
                return
            except TimeoutError:
                pass
            try:
                renewed = await self.renew(token)
            except Exception as e:
                logger.warning(f"Failed to renew lock {token.key}, retrying in {interval:.1f}s: {e}")
                continue
            if not renewed:
                logger.warning(f"Lock {token.key} expired before it could be renewed")
                return
            logger.debug(f"Renewed lock {token.key} for {self.ttl_s}s")

    @asynccontextmanager
    async def hold(self, key: LockKey, max_wait_ms: int | None = None) -> AsyncIterator[LockToken]:
        """
        Hold the lock for the duration of the block, releasing on any exit.

        The lease is renewed in the background so a block that outlives the
        TTL keeps the lock.
        """
        token = await self.acquire(key, max_wait_ms)
        stop = asyncio.Event()
        heartbeat = asyncio.create_task(self._heartbeat(token, stop)) if token.held else None
        try:
            yield token
        finally:
            if heartbeat is not None:
                # A renewal in flight completes before the release below
                stop.set()
                await asyncio.shield(asyncio.gather(heartbeat, return_exceptions=True))
            await self.release(token)
