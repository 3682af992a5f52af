from __future__ import annotations

import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager


class _RouteLock:
    # threading.Lock objects cannot be weakly referenced.
    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire()

    def release(self) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class RouteLockRegistry:
    """In-process exclusive locks keyed by route id.

    Callers name every route an operation touches up front; locks are always
    taken in ascending route id order so two multi-route operations cannot
    deadlock each other. A lock lives only while some caller holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, _RouteLock] = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def _lock_for(self, route_id: int) -> _RouteLock:
        with self._guard:
            lock = self._locks.get(route_id)
            if lock is None:
                lock = _RouteLock()
                self._locks[route_id] = lock
            return lock

    def tracked(self) -> list[int]:
        with self._guard:
            return sorted(self._locks.keys())

    @contextmanager
    def hold(self, *route_ids: int) -> Iterator[list[int]]:
        ordered = sorted({int(route_id) for route_id in route_ids})
        acquired: list[_RouteLock] = []
        try:
            for route_id in ordered:
                lock = self._lock_for(route_id)
                lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()


_REGISTRY = RouteLockRegistry()


def get_route_locks() -> RouteLockRegistry:
    return _REGISTRY
