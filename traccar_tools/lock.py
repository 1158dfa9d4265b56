"""Exclusive lock held for the duration of every mutating operation."""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO

from .errors import LockHeld

LOGGER = logging.getLogger(__name__)


class OperationLock:
    """Non-blocking ``flock`` on a lock file; usable as a re-entrant context manager."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._depth = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> None:
        if self._fh is not None:
            self._depth += 1
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self._path, "a+", encoding="utf-8")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.seek(0)
            holder = fh.read().strip() or "unknown"
            fh.close()
            raise LockHeld(
                f"Another traccar-tools operation is running (pid {holder})",
                remediation=f"Wait for it to finish or remove {self._path} if it is stale.",
            ) from None
        fh.seek(0)
        fh.truncate()
        fh.write(str(os.getpid()))
        fh.flush()
        self._fh = fh
        self._depth = 1
        LOGGER.debug("Acquired lock %s", self._path)

    def release(self) -> None:
        if self._fh is None:
            return
        self._depth -= 1
        if self._depth > 0:
            return
        fh, self._fh = self._fh, None
        try:
            fh.seek(0)
            fh.truncate()
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
        LOGGER.debug("Released lock %s", self._path)

    def __enter__(self) -> OperationLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
