"""
Thread synchronization helpers.

- ReadWriteLock: many concurrent readers, one writer. Writers are given
  priority once waiting so a steady stream of readers cannot starve them.
- KeyedLock: one mutex per key (e.g. per user id), created on demand.

Usage:
    lock = ReadWriteLock()
    with lock.read():
        ...
    with lock.write():
        ...

    user_locks = KeyedLock()
    with user_locks("alice"):
        ...
"""

import threading
from contextlib import contextmanager


class ReadWriteLock:
    """Writer-preferring reader/writer lock."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class KeyedLock:
    """Registry of per-key mutexes.

    Locks are never evicted; the key space is the set of principals, which
    is bounded by the user base.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def __call__(self, key: str) -> threading.Lock:
        return self.get(key)
