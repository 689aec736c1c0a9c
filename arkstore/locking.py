"""
File locks and atomic file publishing.

Writers serialize on a lock file next to the data they modify. The lock is
an ``fcntl.flock`` held for the duration of a ``with`` block and released on
every exit path. Acquisition retries without blocking until a deadline, then
raises Locked, so a peer that hangs while holding the lock cannot block
callers forever. flock is per open file description, so threads of one
process are serialized by an in-process lock keyed on the same path.

Readers never lock. They only ever see files that were fully written to a
temporary name and then published with a single link or rename.
"""

import fcntl
import logging
import os
import tempfile
import threading
import time
import weakref
from pathlib import Path
from typing import Optional

from .errors import AlreadyExists, Locked

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 0.01

# Entries live as long as some FileLock for the path does
_thread_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_thread_locks_guard = threading.Lock()


def _thread_lock_for(path: Path) -> threading.Lock:
    key = os.path.abspath(path)
    with _thread_locks_guard:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = _thread_locks[key] = threading.Lock()
        return lock


class FileLock:
    """
    Exclusive lock on a single lock file.

    Example:
        with FileLock(history_dir / ".lock", timeout=5):
            ...  # read max version, publish next version
    """

    def __init__(
        self,
        path: Path,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None
        self._thread_lock = _thread_lock_for(self.path)

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        deadline = time.monotonic() + self.timeout
        if not self._thread_lock.acquire(timeout=max(self.timeout, 0)):
            raise Locked(f"Timed out after {self.timeout}s waiting for {self.path}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except BaseException:
            self._thread_lock.release()
            raise
        attempts = 0
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                attempts += 1
                if time.monotonic() >= deadline:
                    os.close(fd)
                    self._thread_lock.release()
                    logger.warning("Lock timeout after %d attempts: %s", attempts, self.path)
                    raise Locked(f"Timed out after {self.timeout}s waiting for {self.path}")
                time.sleep(self.poll_interval)
            except BaseException:
                os.close(fd)
                self._thread_lock.release()
                raise
        if attempts:
            logger.debug("Lock acquired after %d retries: %s", attempts, self.path)
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
            self._thread_lock.release()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def _write_temp(directory: Path, data: bytes) -> str:
    """Write data to a fsynced temp file in directory, return its path."""
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return tmp_path


def publish_new(target: Path, data: bytes) -> None:
    """Atomically create target with data; never overwrites.

    Raises:
        AlreadyExists: If target already exists
    """
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _write_temp(target.parent, data)
    try:
        os.link(tmp_path, target)
    except FileExistsError:
        raise AlreadyExists(f"{target} already exists") from None
    finally:
        os.unlink(tmp_path)


def replace_atomic(target: Path, data: bytes) -> None:
    """Atomically replace target with data (temp file + rename)."""
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _write_temp(target.parent, data)
    try:
        os.replace(tmp_path, target)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
