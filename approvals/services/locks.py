"""In-process lock registry serializing work on one approval request or expense."""
from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Iterator

from approvals.errors import ConflictError

logger = logging.getLogger(__name__)


class LockRegistry:
    """Hands out one ``threading.Lock`` per key.

    Locks live only while someone holds or waits on them; the registry keeps
    weak references, so keys of finished work drop out on their own.
    """

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._locks)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self.timeout):
            logger.warning(f"Timed out after {self.timeout}s waiting for lock {key}")
            raise ConflictError("The record is busy, please retry.", lock=key)
        try:
            yield
        finally:
            lock.release()

    def request(self, request_id: int):
        return self.hold(f"request:{request_id}")

    def expense(self, expense_id: int):
        return self.hold(f"expense:{expense_id}")
