"""
Advisory File Locking
=====================

In-process mutual exclusion over canonical paths. Locks are advisory: they
coordinate callers sharing one ``LockRegistry`` (one per StorageContext)
and do not stop other processes from touching the file.

Usage:
    result = locker.try_lock(target, timeout=5.0)
    if not result.ok:
        return result.error
    with result.value:
        ...  # exclusive section
"""

from __future__ import annotations

import logging
import os
import secrets
import threading
import time
from typing import Final, Optional

from securestore.core.errors import LockError, LockErrorKind
from securestore.core.result import Result
from securestore.utils.validators import ValidatedPath


_POLL_INTERVAL: Final[float] = 0.01


class LockRegistry:
    """Thread-safe map of canonical path -> holder token."""

    __slots__ = ("_mutex", "_holders")

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._holders: dict[str, str] = {}

    def acquire(self, key: str, holder: str) -> bool:
        with self._mutex:
            if key in self._holders:
                return False
            self._holders[key] = holder
            return True

    def release(self, key: str, holder: str) -> bool:
        """Remove the entry only if ``holder`` still owns it."""
        with self._mutex:
            if self._holders.get(key) != holder:
                return False
            del self._holders[key]
            return True

    def is_locked(self, key: str) -> bool:
        with self._mutex:
            return key in self._holders

    def __len__(self) -> int:
        with self._mutex:
            return len(self._holders)


class FileLock:
    """
    A held (or trivially granted) lock on one canonical path.

    ``release()`` is idempotent; leaving a ``with`` block releases.
    """

    __slots__ = ("canonical_path", "holder", "_registry", "_released")

    def __init__(self, canonical_path: str, holder: str, registry: Optional[LockRegistry]) -> None:
        self.canonical_path = canonical_path
        self.holder = holder
        self._registry = registry
        self._released = registry is None

    @property
    def registered(self) -> bool:
        """False for the lock granted on a path that did not exist."""
        return self._registry is not None

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._registry is not None:
            self._registry.release(self.canonical_path, self.holder)

    def __enter__(self) -> FileLock:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"FileLock({self.canonical_path!r}, {state})"


class FileLocker:
    """Acquires FileLocks from a shared LockRegistry."""

    __slots__ = ("_registry", "_poll_interval", "_log")

    def __init__(self, registry: LockRegistry, poll_interval: float = _POLL_INTERVAL) -> None:
        self._registry = registry
        self._poll_interval = poll_interval
        self._log = logging.getLogger("securestore.locks")

    def try_lock(self, path: ValidatedPath, timeout: float = 0.0) -> Result[FileLock, LockError]:
        """
        Lock ``path``.

        Args:
            path: Target file
            timeout: Seconds to keep polling; 0 fails at once

        Returns:
            Result holding the FileLock, or ALREADY_LOCKED (timeout 0) /
            TIMEOUT (deadline passed)
        """
        key = os.path.normcase(path.path)
        holder = secrets.token_hex(8)

        if not os.path.exists(path.path):
            # Nothing on disk to protect yet
            return Result.success(FileLock(key, holder, None))

        if self._registry.acquire(key, holder):
            return Result.success(FileLock(key, holder, self._registry))

        if timeout <= 0:
            self._log.debug(f"Lock busy: {path.path}")
            return Result.failure(LockError(LockErrorKind.ALREADY_LOCKED, "file is locked"))

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            time.sleep(min(self._poll_interval, max(0.0, deadline - time.monotonic())))
            if self._registry.acquire(key, holder):
                return Result.success(FileLock(key, holder, self._registry))

        self._log.warning(f"Timed out after {timeout:.2f}s waiting for lock: {path.path}")
        return Result.failure(LockError(LockErrorKind.TIMEOUT, "timed out waiting for file lock"))

    def unlock(self, lock: FileLock) -> None:
        lock.release()

    def is_locked(self, path: ValidatedPath) -> bool:
        return self._registry.is_locked(os.path.normcase(path.path))
