"""
Process-local mutual exclusion for shared test accounts.

Two concurrent runs must never drive the same credential at once. Claims
live in memory only, so exclusion holds within one process and not across
independent instances.
"""

import threading
from typing import Optional, Set


class AccountLock:
    """Registry of account ids currently claimed by an execution or login."""

    def __init__(self):
        self._in_use: Set[str] = set()
        self._lock = threading.Lock()

    def is_in_use(self, account_id: Optional[str]) -> bool:
        if not account_id:
            return False
        with self._lock:
            return account_id in self._in_use

    def try_acquire(self, account_id: str) -> bool:
        """Claim ``account_id``. True iff it was free and now belongs to the caller."""
        if not account_id:
            return False
        with self._lock:
            if account_id in self._in_use:
                return False
            self._in_use.add(account_id)
            return True

    def release(self, account_id: Optional[str]) -> None:
        """Drop a claim. Releasing an unheld or empty id is a no-op."""
        if not account_id:
            return
        with self._lock:
            self._in_use.discard(account_id)

    def held(self) -> Set[str]:
        with self._lock:
            return set(self._in_use)


_default_lock = AccountLock()


def get_account_lock() -> AccountLock:
    """Return the lock shared by every run in this process."""
    return _default_lock
