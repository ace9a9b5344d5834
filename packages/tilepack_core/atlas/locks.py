"""Per-atlas and object-index locks serializing packing operations."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable, Iterator
import threading

INDEX_LOCK_KEY = "__object_index__"


class AtlasLockRegistry:
    """Hands out one re-entrant lock per key while somebody holds or waits on it.

    ``hold`` always acquires in sorted key order so two operations touching
    overlapping atlases cannot deadlock. An entry is dropped once its last
    holder or waiter leaves.
    """

    def __init__(self) -> None:
        # key -> [lock, holders + waiters]
        self._locks: dict[str, list] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, key: str) -> threading.RLock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def active_keys(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._locks)

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        ordered = sorted(set(keys))
        checked_out: list[str] = []
        acquired: list[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)

    @contextmanager
    def hold_index(self) -> Iterator[None]:
        with self.hold([INDEX_LOCK_KEY]):
            yield
