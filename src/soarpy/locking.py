import fcntl
import os
from pathlib import Path
from typing import Optional

from .errors import LockContentionError
from .logger import setup_logger
from .utils import safe_component

_logger = setup_logger()


class PackageLock:
    """
    Advisory, non-blocking per-package lock (flock on <locks>/<key>.lock).

    Usage:
        with PackageLock(config.locks_path, pkg_id):
            ...
    Raises LockContentionError when another process (or another
    operation in this process) holds the same key.
    """

    def __init__(self, locks_dir: Path, key: str) -> None:
        self.key = key
        self.path = Path(locks_dir) / f"{safe_component(key)}.lock"
        self._fd = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = open(self.path, "a+")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = self._holder_pid(fd)
            fd.close()
            raise LockContentionError(self.key, holder) from None
        except BaseException:
            fd.close()
            raise
        # Got the lock - write our PID
        fd.seek(0)
        fd.truncate(0)
        fd.write(str(os.getpid()))
        fd.flush()
        self._fd = fd
        _logger.debug("Acquired lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fd = self._fd
            fd.seek(0)
            fd.truncate(0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            self._fd.close()
            self._fd = None
        _logger.debug("Released lock %s", self.path)

    @property
    def locked(self) -> bool:
        return self._fd is not None

    @staticmethod
    def _holder_pid(fd) -> Optional[int]:
        try:
            fd.seek(0)
            return int(fd.read().strip())
        except (OSError, ValueError):
            return None

    def __enter__(self) -> "PackageLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
