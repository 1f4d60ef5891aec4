"""
Per-Loan Locking

The loan aggregate (loan + installments) is the unit of mutual exclusion.
Operations on one loan are serialized; different loans proceed in parallel.
"""

from contextlib import contextmanager
from typing import Dict
from threading import Lock, RLock


class LoanLockRegistry:
    """Hands out one re-entrant lock per loan id"""

    def __init__(self):
        self._locks: Dict[str, RLock] = {}
        self._guard = Lock()

    def lock_for(self, loan_id: str) -> RLock:
        with self._guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = RLock()
                self._locks[loan_id] = lock
            return lock

    @contextmanager
    def hold(self, loan_id: str):
        """Serialize work on a single loan aggregate"""
        lock = self.lock_for(loan_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
