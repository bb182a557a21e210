"""
Per-Entity Lock Registry
Serializes mutations of a single escrow, dispute or profile inside this process.
Different entities never contend with each other. Cross-process safety comes from
the status/version guarded UPDATE in utils.optimistic_locking.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from config import Config
from utils.exception_handler import OperationTimeout

logger = logging.getLogger(__name__)


class EntityLockRegistry:
    """Keyed re-entrant locks with bounded acquisition"""

    def __init__(self, default_timeout: Optional[float] = None):
        self.default_timeout = (
            Config.ENTITY_LOCK_TIMEOUT_SECONDS if default_timeout is None else default_timeout
        )
        # key -> [lock, holders and waiters]; entries are dropped when the count reaches zero
        self._locks: Dict[Tuple[str, str], List] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, key: Tuple[str, str]) -> threading.RLock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Tuple[str, str]) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def tracked_keys(self) -> int:
        """Entities currently held or waited on"""
        with self._registry_lock:
            return len(self._locks)

    @contextmanager
    def hold(self, kind: str, entity_id, timeout: Optional[float] = None):
        """
        Hold the lock for one entity.

        Usage:
            with entity_locks.hold("escrow", escrow_id):
                # read, validate and commit the transition
                ...

        Raises:
            OperationTimeout: if the lock is not acquired within the timeout
        """
        wait = self.default_timeout if timeout is None else timeout
        key = (kind, str(entity_id))
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=wait):
                logger.warning(f"⏱️ ENTITY_LOCK_TIMEOUT: {kind} {entity_id} not acquired within {wait}s")
                raise OperationTimeout(f"Timed out acquiring lock for {kind} {entity_id}")
            logger.debug(f"🔒 ENTITY_LOCK_ACQUIRED: {kind} {entity_id}")
            try:
                yield
            finally:
                lock.release()
                logger.debug(f"🔓 ENTITY_LOCK_RELEASED: {kind} {entity_id}")
        finally:
            self._checkin(key)


# Shared registry so every engine in the process serializes on the same keys
entity_locks = EntityLockRegistry()
