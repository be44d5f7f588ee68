from __future__ import annotations

from contextlib import contextmanager
from typing import Hashable, Iterator
import threading

from .errors import ReservationTimeoutError


class KeyedLockRegistry:
    """One lock per key, created on demand and dropped when nobody holds or waits on it.

    Holders of different keys never contend with each other.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: float | None = None) -> Iterator[None]:
        effective_timeout = self.timeout if timeout is None else timeout
        lock = self._checkout(key)
        try:
            acquired = lock.acquire(timeout=-1 if effective_timeout is None else effective_timeout)
            if not acquired:
                raise ReservationTimeoutError(f"Timed out waiting for reservation lock on {key!r}.")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._users[key]
                del self._locks[key]
