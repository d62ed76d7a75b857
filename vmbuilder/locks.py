"""In-process locks keyed by resource name, and cooperative cancellation."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from vmbuilder.exceptions import CreationCancelled


class KeyedLocks:
    """Hand out one re-entrant lock per key (image checksum, VM id, ...).

    Entries are reference counted and dropped once nobody holds or waits on
    them, so the registry does not grow with every VM ever created.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._refs: Dict[str, int] = {}

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _release(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._release(key)


class CancellationToken:
    """Flag checked between blocking steps of a creation pipeline."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CreationCancelled(f"Creation cancelled: {self.reason}")


IMAGE_LOCKS = KeyedLocks()
VM_LOCKS = KeyedLocks()
