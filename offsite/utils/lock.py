"""
Run-level advisory lock.

Guarantees at most one backup or restore per configuration at a time.
"""

import os
import fcntl
import logging

from offsite.errors import LockError


logger = logging.getLogger(__name__)


class RunLock:
    """
    Non-blocking exclusive flock on a lock file.

    Usable as a context manager. The lock file itself is left in place; the
    kernel drops the lock when the holder exits, even after a crash.
    """

    def __init__(self, path: str):
        self.path = path
        self._fd = None

    def acquire(self):
        parent = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(parent, exist_ok=True)

        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockError(f"Another backup or restore run holds the lock: {self.path}")
        except OSError:
            os.close(fd)
            raise

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug(f"Acquired run lock {self.path}")

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released run lock {self.path}")

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
