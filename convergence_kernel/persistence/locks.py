"""Per-key lock registry for atomic read-modify-write on keyed stores."""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLocks:
    """
    Hands out one re-entrant lock per key.

    Locks for different keys never contend, so work on one token or entity
    does not block progress on another.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    def discard(self, key: str) -> None:
        """Forget the lock for a key that no longer exists in the store."""
        with self._registry_lock:
            self._locks.pop(key, None)
