"""
Keyed mutex table — bounded, in-process, oldest entry evicted first.

Serializes same-process callers that share a key (the legacy password to
next-code path). It is not a correctness mechanism: a restart, a second
instance, or an eviction while held all lose mutual exclusion. Usage limits
are enforced by the store's atomic conditional update regardless.
"""

import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Iterator


class KeyedMutexTable:
    """In-memory lock-per-key table with a size cap."""

    def __init__(self, max_size: int = 1000):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._locks: "OrderedDict[str, threading.Lock]" = OrderedDict()
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is not None:
                return lock
            lock = threading.Lock()
            self._locks[key] = lock
            while len(self._locks) > self.max_size:
                self._locks.popitem(last=False)
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: str) -> bool:
        return key in self._locks
