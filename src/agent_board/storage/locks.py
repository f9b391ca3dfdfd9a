"""Per-key write serialization.

Every mutation of a project's board runs under ``project:<id>``; the project
registry runs under ``workspace``.  Different keys never block each other,
and writers on the same key are admitted in arrival order.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from loguru import logger


class _TicketLock:
    """FIFO mutex: waiters are admitted in the order they arrived. Not reentrant."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0

    def acquire(self) -> None:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._cond.wait()

    def release(self) -> None:
        with self._cond:
            self._now_serving += 1
            self._cond.notify_all()

    @property
    def waiting(self) -> int:
        with self._cond:
            return self._next_ticket - self._now_serving


class KeyedLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _TicketLock] = {}

    def _lock_for(self, key: str) -> _TicketLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = _TicketLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        thread_id = threading.current_thread().name
        logger.debug("Thread {} waiting for write lock ({}, {} ahead)", thread_id, key, lock.waiting)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            logger.debug("Thread {} released write lock ({})", thread_id, key)


def project_key(project_id: str) -> str:
    return f"project:{project_id}"
