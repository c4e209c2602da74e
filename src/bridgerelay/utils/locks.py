"""Concurrency control for the relay authority's submissions.

One identity signs every mint on a ledger, so its nonce sequence is shared by
all in-flight mints for that ledger. Submissions are serialized per
destination ledger while event detection stays concurrent.
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: ledger name -> asyncio.Lock
_ledger_locks: dict[str, asyncio.Lock] = {}
_registry_lock = asyncio.Lock()


async def get_ledger_lock(ledger: str) -> asyncio.Lock:
    """Get or create the submission lock for a ledger.

    Args:
        ledger: Ledger name ("A" or "B")

    Returns:
        asyncio.Lock for the ledger
    """
    async with _registry_lock:
        key = ledger.upper()
        if key not in _ledger_locks:
            _ledger_locks[key] = asyncio.Lock()
        return _ledger_locks[key]


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class LedgerSubmissionLock:
    """Context manager for exclusive use of the relay identity on a ledger.

    Example:
        async with LedgerSubmissionLock("B", operation="mint"):
            handle = await client.call("mint", (account, amount))
    """

    def __init__(
        self,
        ledger: str,
        timeout: Optional[float] = 30.0,
        operation: str = "submission",
    ):
        """Initialize the lock.

        Args:
            ledger: Destination ledger name
            timeout: Maximum time to wait for lock (None = wait forever)
            operation: Description of the operation for logging
        """
        self.ledger = ledger.upper()
        self.timeout = timeout
        self.operation = operation
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "LedgerSubmissionLock":
        """Acquire the lock."""
        self._lock = await get_ledger_lock(self.ledger)

        try:
            if self.timeout:
                self._acquired = await asyncio.wait_for(
                    self._lock.acquire(),
                    timeout=self.timeout,
                )
            else:
                await self._lock.acquire()
                self._acquired = True

            logger.debug(f"Lock acquired for ledger {self.ledger}: {self.operation}")
            return self

        except asyncio.TimeoutError:
            logger.warning(
                f"Lock timeout for ledger {self.ledger} after {self.timeout}s: {self.operation}"
            )
            raise LockTimeoutError(
                f"Could not acquire submission lock for ledger {self.ledger} within {self.timeout}s"
            )

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Release the lock."""
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            logger.debug(f"Lock released for ledger {self.ledger}: {self.operation}")
        return False


def clear_ledger_locks() -> None:
    """Clear all ledger locks (useful for testing)."""
    _ledger_locks.clear()
