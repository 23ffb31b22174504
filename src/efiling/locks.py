"""
Per-filing serialization.

Mutating operations on one filing run one at a time; different filings never
contend. Waiting longer than the configured timeout fails fast with
FILING_BUSY instead of queueing indefinitely.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from .errors import FilingBusyError

logger = logging.getLogger(__name__)


class FilingLockManager:
    """
    Holds one asyncio.Lock per filing id.

    Usage:
        async with locks.hold(filing_id):
            ...
    """

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def _lock_for(self, filing_id: str) -> asyncio.Lock:
        lock = self._locks.get(filing_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[filing_id] = lock
        return lock

    def is_locked(self, filing_id: str) -> bool:
        lock = self._locks.get(filing_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, filing_id: str) -> AsyncIterator[None]:
        lock = self._lock_for(filing_id)
        self._waiters[filing_id] = self._waiters.get(filing_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    f"[LOCK] Timed out waiting for filing lock | filing={filing_id} | "
                    f"timeout={self.timeout_seconds}s"
                )
                raise FilingBusyError(
                    "Another operation is in progress for this filing",
                    details={"filing_id": filing_id},
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[filing_id] -= 1
            if self._waiters[filing_id] == 0:
                # Nobody holds or waits on it; drop so idle filings cost nothing.
                self._waiters.pop(filing_id, None)
                if not lock.locked():
                    self._locks.pop(filing_id, None)
