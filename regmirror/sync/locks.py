"""Process-wide mutual exclusion per package name.

Two sync runs may target the same package at the same time. Holding the
name's lock while reconciling makes them take turns instead of racing on
the local store and the backup keys.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class NameLockRegistry:
    """Reference-counted registry of per-name locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        """Block until ``name`` is free, then hold it for the with-block."""
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
            self._waiters[name] = self._waiters.get(name, 0) + 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[name] -= 1
                if self._waiters[name] == 0:
                    del self._waiters[name]
                    del self._locks[name]

    def is_held(self, name: str) -> bool:
        with self._guard:
            lock = self._locks.get(name)
            return lock is not None and lock.locked()

    def active_names(self) -> List[str]:
        with self._guard:
            return sorted(self._locks)


# Shared by every SyncModuleWorker in the process
_name_locks = NameLockRegistry()


def get_name_locks() -> NameLockRegistry:
    """Get the process-wide name lock registry."""
    return _name_locks
