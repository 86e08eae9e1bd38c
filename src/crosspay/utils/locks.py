"""Per-key concurrency control.

Network-bound work is serialized per resource key (asset symbol for balances,
pair/amount/slippage for quotes) so concurrent callers never issue duplicate
chain calls or write a cache out of order.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Hashable, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class KeyedLocks:
    """Registry of asyncio locks, one per key.

    Owned by the component that uses it; there is no process-wide registry.

    Example:
        locks = KeyedLocks("balances")
        async with locks.hold("cUSD"):
            # read-modify-write for cUSD only
            ...
    """

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        """Get or create the lock for a key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(
        self,
        key: Hashable,
        timeout: Optional[float] = 30.0,
        operation: str = "operation",
    ):
        """Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Resource key
            timeout: Maximum time to wait for the lock (None = wait forever)
            operation: Description for logging

        Raises:
            LockTimeoutError: If the lock could not be acquired in time
        """
        lock = self.get(key)
        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] lock timeout for {key!r}: {operation}")
            raise LockTimeoutError(
                f"Could not acquire {self.name} lock for {key!r} within {timeout}s"
            )

        logger.debug(f"[{self.name}] lock acquired for {key!r}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"[{self.name}] lock released for {key!r}: {operation}")

    def clear(self) -> None:
        """Forget all idle locks."""
        self._locks = {k: v for k, v in self._locks.items() if v.locked()}
