"""
Per-key lock table with bounded acquisition.
"""

import threading
import time
from collections.abc import Hashable, Iterator
from contextlib import contextmanager

from medallion.core.errors import Timeout


class KeyLockTable:
    """
    Hands out one mutex per key; unused mutexes are dropped.

    Usage:
        locks = KeyLockTable()
        with locks.hold(("customer", "CUST-007"), timeout=5.0) as waited:
            ...
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: float) -> Iterator[float]:
        """
        Hold the lock for ``key``, waiting at most ``timeout`` seconds.

        Yields:
            Seconds spent waiting for the lock

        Raises:
            Timeout: If the lock could not be acquired in time
        """
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1

        started = time.monotonic()
        try:
            if not lock.acquire(timeout=timeout):
                raise Timeout(f"lock {key!r}", timeout)
            try:
                yield time.monotonic() - started
            finally:
                lock.release()
        finally:
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
