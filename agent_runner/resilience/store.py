"""Keyed state store with one lock per key.

Circuit breaker and budget ledger entries are shared by every concurrent
execution that maps to the same key. Each mutation goes through ``update``,
which runs the read-modify-write under that key's lock, so concurrent
branches never lose increments.
"""

import threading
from typing import Callable, Generic, Hashable, Iterator, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")
R = TypeVar("R")


class KeyedStateStore(Generic[K, V]):
    """Dict of state values guarded by per-key locks."""

    def __init__(self, factory: Callable[[], V]):
        self._factory = factory
        self._values: dict[K, V] = {}
        self._locks: dict[K, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: K) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                self._values[key] = self._factory()
            return lock

    def update(self, key: K, fn: Callable[[V], R]) -> R:
        """Run ``fn(state)`` atomically for ``key`` and return its result.

        ``fn`` mutates the state in place. It must not call back into the
        store for the same key.
        """
        lock = self._lock_for(key)
        with lock:
            with self._registry_lock:
                state = self._values.get(key)
                if state is None:
                    # Cleared between lock lookup and acquisition
                    state = self._values[key] = self._factory()
            return fn(state)

    def get(self, key: K) -> Optional[V]:
        with self._registry_lock:
            return self._values.get(key)

    def __contains__(self, key: object) -> bool:
        with self._registry_lock:
            return key in self._values

    def keys(self) -> list[K]:
        with self._registry_lock:
            return list(self._values)

    def items(self) -> Iterator[tuple[K, V]]:
        for key in self.keys():
            value = self.get(key)
            if value is not None:
                yield key, value

    def clear(self) -> None:
        """Drop every value. Per-key locks are kept for in-flight updates."""
        with self._registry_lock:
            self._values.clear()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._values)
