# rap/sync.py
"""Fine-grained locking keyed by actor id, destination or dedup key."""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class KeyedLocks:
    """
    One lock per key, created on demand and dropped when idle.

    Unrelated keys never contend with each other.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: Hashable):
        with self._guard:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Block until the lock for key is held."""
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    def try_acquire(self, key: Hashable) -> bool:
        """Acquire the lock for key without blocking. Pair with release()."""
        lock = self._checkout(key)
        if lock.acquire(blocking=False):
            return True
        self._checkin(key)
        return False

    def release(self, key: Hashable):
        """Release a lock taken with try_acquire()."""
        with self._guard:
            lock = self._locks[key]
        lock.release()
        self._checkin(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
