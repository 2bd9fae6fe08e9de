"""
Per-item locks — serialize writers to one (store_id, part_number) key.

Keys are independent: there is no lock shared by all items. Locks are
re-entrant so a thread holding an order's keys can submit movements for them.
"""

import threading
import time
from contextlib import contextmanager

from stockledger.exceptions import LedgerError

# Granularity for noticing a cancel request while waiting
CANCEL_POLL_SECONDS = 0.05


class KeyedLocks:
    """
    Registry of re-entrant locks, one per key.

    A key's lock exists only while some thread holds or waits for it, so the
    registry does not grow with the number of items ever touched.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders and waiters]
        self._locks: dict = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if not entry[1]:
                del self._locks[key]

    @contextmanager
    def hold(self, keys, timeout: float, cancel: threading.Event | None = None):
        """
        Acquire every key (sorted, to avoid lock-order deadlocks) or none.

        Raises:
            LedgerError('TIMEOUT'): A key was not acquired within timeout seconds
            LedgerError('CANCELLED'): cancel was set while waiting
        """
        deadline = time.monotonic() + timeout
        checked_out, acquired = [], []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                checked_out.append(key)
                if not self._acquire(lock, deadline, cancel):
                    raise LedgerError('TIMEOUT', key=list(key), timeout=timeout)
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)

    @staticmethod
    def _acquire(lock, deadline, cancel) -> bool:
        while True:
            if cancel is not None and cancel.is_set():
                raise LedgerError('CANCELLED')
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return lock.acquire(blocking=False)
            wait = remaining if cancel is None else min(remaining, CANCEL_POLL_SECONDS)
            if lock.acquire(timeout=wait):
                return True
