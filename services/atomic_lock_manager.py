"""
Atomic Lock Manager Service
Keyed mutual exclusion for escrow and balance operations.

Trades are serialized on "trade:{id}:{token}" for the whole transition
(including the settlement round-trip); balance mutation is serialized on
"account:{id}", held by the escrow engine from the local reservation
until the final commit. Multi-key acquisition always happens in sorted
order, and acquisition is bounded: on timeout ConcurrencyConflict is
raised instead of waiting forever.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import Dict, List, Optional

from services.exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)


class LockOperationType(Enum):
    """Types of operations that require atomic locking"""
    ESCROW_TRANSITION = "escrow_transition"
    BALANCE_UPDATE = "balance_update"
    RECONCILIATION = "reconciliation"
    DISPUTE_WORKFLOW = "dispute_workflow"


def trade_lock_key(trade_id: int, token: str) -> str:
    return f"trade:{trade_id}:{token}"


def account_lock_key(account_id: int) -> str:
    return f"account:{account_id}"


class _KeyedLock:
    __slots__ = ("lock", "waiters")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.waiters = 0


class AtomicLockManager:
    """
    In-process keyed lock manager.

    A single authoritative instance owns the ledger, so asyncio locks keyed by
    resource name give exclusive access without a round-trip to the database.
    """

    def __init__(self, default_timeout: float = 10.0):
        self.default_timeout = default_timeout
        self._locks: Dict[str, _KeyedLock] = {}
        self._holders: Dict[str, str] = {}

        # Performance metrics
        self.metrics = {
            'locks_acquired': 0,
            'locks_failed': 0,
            'locks_released': 0,
            'lock_contentions': 0,
        }

    def is_locked(self, key: str) -> bool:
        entry = self._locks.get(key)
        return bool(entry and entry.lock.locked())

    async def acquire_lock(
        self,
        key: str,
        operation_type: LockOperationType = LockOperationType.ESCROW_TRANSITION,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """
        Acquire a keyed lock, returning an owner token for release_lock.

        Raises:
            ConcurrencyConflict: if the lock could not be taken within the timeout
        """
        timeout = self.default_timeout if timeout_seconds is None else timeout_seconds
        entry = self._locks.setdefault(key, _KeyedLock())
        if entry.lock.locked():
            self.metrics['lock_contentions'] += 1
            logger.debug(f"⏳ ATOMIC_LOCK_CONTENTION: {key} already held [{operation_type.value}]")

        entry.waiters += 1
        started = time.monotonic()
        try:
            await asyncio.wait_for(entry.lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            self.metrics['locks_failed'] += 1
            logger.warning(f"⚠️ ATOMIC_LOCK_TIMEOUT: {key} not acquired within {timeout}s [{operation_type.value}]")
            raise ConcurrencyConflict(
                f"Resource {key} is busy, try again", resource=key, timeout_seconds=timeout
            )
        finally:
            entry.waiters -= 1

        owner_token = uuid.uuid4().hex
        self._holders[key] = owner_token
        self.metrics['locks_acquired'] += 1
        logger.debug(
            f"🔒 ATOMIC_LOCK_ACQUIRED: {key} [{operation_type.value}] token={owner_token[:8]}... "
            f"waited={time.monotonic() - started:.3f}s"
        )
        return owner_token

    def release_lock(self, key: str, owner_token: str) -> bool:
        """Release a keyed lock held with owner_token"""
        entry = self._locks.get(key)
        if entry is None or self._holders.get(key) != owner_token:
            logger.warning(f"⚠️ ATOMIC_LOCK_NOT_FOUND: Cannot release {key} token={owner_token[:8]}...")
            return False

        del self._holders[key]
        entry.lock.release()
        if entry.waiters == 0 and not entry.lock.locked():
            self._locks.pop(key, None)
        self.metrics['locks_released'] += 1
        logger.debug(f"🔓 ATOMIC_LOCK_RELEASED: {key} token={owner_token[:8]}...")
        return True

    @asynccontextmanager
    async def acquire(
        self,
        *keys: str,
        operation_type: LockOperationType = LockOperationType.ESCROW_TRANSITION,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Hold every key for the duration of the block.

        Keys are de-duplicated and taken in sorted order so two callers locking
        overlapping sets can never deadlock.
        """
        ordered = sorted(set(keys))
        held: List[tuple] = []
        try:
            for key in ordered:
                token = await self.acquire_lock(key, operation_type, timeout_seconds)
                held.append((key, token))
            yield
        finally:
            for key, token in reversed(held):
                self.release_lock(key, token)

    def get_metrics(self) -> Dict[str, int]:
        return dict(self.metrics, active_locks=len(self._holders))
