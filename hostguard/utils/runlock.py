"""
Run-level mutual exclusion.

Only one mutating hostguard command may run on a host at a time. The marker
file holds the owner's pid; the advisory ``flock`` on it is what actually
excludes a second invocation, so a stale marker left by a crashed run never
blocks the next one.
"""

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class RunLockError(RuntimeError):
    """Raised when another hostguard run already holds the lock."""
    pass


class RunLock:
    """Exclusive, non-blocking lock on a marker file."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self):
        """
        Take the lock.

        Raises:
            RunLockError: If another process holds it
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, 'a+')

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.seek(0)
            owner = handle.read().strip() or 'unknown'
            handle.close()
            raise RunLockError(f"Another run is in progress (pid {owner}, lock {self.path})")

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug(f"Acquired run lock {self.path}")

    def release(self):
        if not self.held:
            return
        try:
            self._handle.seek(0)
            self._handle.truncate()
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug(f"Released run lock {self.path}")

    def owner(self) -> Optional[str]:
        try:
            return self.path.read_text().strip() or None
        except FileNotFoundError:
            return None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
