"""Per-store lock: in-process re-entrant lock plus an advisory file lock."""

import fcntl
import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from beads.errors import LockError

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.01


class StoreLock:
    """Exclusive/shared lock over one .beads directory.

    Re-entrant within a thread: nested acquisitions reuse the held file lock.
    A shared request nested inside an exclusive hold is satisfied by it.
    """

    def __init__(self, path: Path, timeout: float = 5.0):
        self.path = path
        self.timeout = timeout
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._mode: int | None = None
        self._fd = None

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._acquire(fcntl.LOCK_EX):
            yield

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._acquire(fcntl.LOCK_SH):
            yield

    @contextmanager
    def _acquire(self, mode: int) -> Iterator[None]:
        if not self._thread_lock.acquire(timeout=self.timeout):
            raise LockError(str(self.path), self.timeout)
        try:
            if self._depth == 0:
                self._lock_file(mode)
            elif mode == fcntl.LOCK_EX and self._mode == fcntl.LOCK_SH:
                # Upgrading shared -> exclusive under the same thread.
                self._flock(fcntl.LOCK_EX)
                self._mode = fcntl.LOCK_EX
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0:
                    self._unlock_file()
        finally:
            self._thread_lock.release()

    def _lock_file(self, mode: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fd = open(self.path, "a")
        try:
            self._flock(mode)
        except LockError:
            self._fd.close()
            self._fd = None
            raise
        self._mode = mode
        log.debug("Acquired %s lock on %s", "exclusive" if mode == fcntl.LOCK_EX else "shared", self.path)

    def _flock(self, mode: int) -> None:
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(self._fd.fileno(), mode | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() - start >= self.timeout:
                    raise LockError(str(self.path), self.timeout) from None
                time.sleep(_POLL_INTERVAL)

    def _unlock_file(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
        self._fd.close()
        self._fd = None
        self._mode = None
        log.debug("Released lock on %s", self.path)
