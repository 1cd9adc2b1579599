import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List


class KeyedLock:
    """A registry of mutexes addressed by key.

    Locks are created on first use and dropped once nobody holds or waits
    for them, so the registry only grows with the number of keys that are
    busy at the same moment.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._refcounts: Dict[Hashable, int] = {}

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                self._refcounts[key] = 0
            self._refcounts[key] += 1
            return lock

    def _checkin(self, key: Hashable) -> None:
        with self._registry_lock:
            self._refcounts[key] -= 1
            if self._refcounts[key] == 0:
                del self._refcounts[key]
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        """Hold the locks for all ``keys`` for the duration of the block.

        Keys are acquired in sorted order so that two callers asking for
        overlapping key sets can never deadlock.
        """
        ordered = sorted(set(keys), key=repr)
        acquired: List[Hashable] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                with self._registry_lock:
                    lock = self._locks[key]
                lock.release()
                self._checkin(key)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
