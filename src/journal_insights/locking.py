"""Locking utilities for the single-writer storage discipline."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import portalocker

from .errors import StorageError


@contextmanager
def file_lock(path: Path, timeout: float = 10.0) -> Generator[None, None, None]:
    """Hold the cross-process lock guarding ``path``.

    The lock lives in a sibling ``<name>.lock`` file so the database file
    itself is never opened by portalocker.

    Raises:
        StorageError: the lock was not acquired within ``timeout`` seconds
    """
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.touch(exist_ok=True)

    try:
        lock = portalocker.Lock(lock_path, timeout=timeout)
        lock.acquire()
    except portalocker.LockException as e:
        raise StorageError(f"Timed out waiting for writer lock on {path}") from e
    try:
        yield
    finally:
        lock.release()


class WriterLock:
    """Serializes writers within a process and across processes.

    Threads queue on an in-process RLock first, so the file lock is only ever
    contended by other processes sharing the same database file. Nested
    ``hold()`` calls from the owning thread take the file lock once.
    """

    def __init__(self, path: Path, timeout: float = 10.0):
        self.path = path
        self.timeout = timeout
        self._thread_lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def hold(self) -> Generator[None, None, None]:
        with self._thread_lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            with file_lock(self.path, timeout=self.timeout):
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0
