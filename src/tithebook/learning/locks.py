"""Per-scope write serialization for learned state."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from ..state_store import GLOBAL_SCOPE


class ScopeLocks:
    """Registry of one lock per learned-state scope.

    Writes to the same assembly (or the global scope) run one at a time so
    occurrence counts and promotion checks see each other's effects; writes
    to different scopes proceed in parallel. Reads do not take the lock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def get(self, scope: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(scope)
            if lock is None:
                lock = threading.Lock()
                self._locks[scope] = lock
            return lock

    @contextmanager
    def hold(self, scope: str) -> Iterator[None]:
        lock = self.get(scope)
        with lock:
            yield


def scope_key(scope: str | None) -> str:
    """Canonical learned-state scope: lowercased assembly name or the global sentinel."""
    text = (scope or "").strip()
    if text.upper() == GLOBAL_SCOPE:
        return GLOBAL_SCOPE
    return text.lower()


class TrainingGuard:
    """At most one in-flight training job per scope.

    ``try_hold`` never blocks: an overlapping trigger gets False and is
    expected to drop its retrain request.
    """

    def __init__(self) -> None:
        self._locks = ScopeLocks()

    @contextmanager
    def try_hold(self, scope: str) -> Iterator[bool]:
        lock = self._locks.get(scope)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()


# Shared by every model instance in the process
TRAINING_GUARD = TrainingGuard()
