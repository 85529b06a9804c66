"""
Secure Deletion Module
======================

Provides quick and overwrite-before-unlink deletion, plus a background
retry queue for files another process is holding open.

Security Properties:
- Deterministic overwrite patterns, fsync after every pass
- Symlinks are never followed (the link itself is removed)
- Paths outside the storage root are refused unless explicitly allowed
- Deletions that fail are retried, never silently dropped

Retry Model:
    quick_delete -> unlink -> delete-on-close -> CleanupQueue
    The queue runs at most one daemon worker at a time. The worker waits
    briefly, then retries with exponential backoff until the queue drains,
    and resets its flag so the next failure starts a new worker.
"""

from __future__ import annotations

import atexit
import logging
import os
import stat
import threading
import time
import weakref
from dataclasses import dataclass
from typing import Final, Optional, TYPE_CHECKING

from securestore.utils.paths import is_path_within_directory

if TYPE_CHECKING:
    from securestore.core.context import StorageContext
    from securestore.core.file_ops.os_ops import OsFileOps


BLOCK_SIZE: Final[int] = 64 * 1024

# Pass N uses _OVERWRITE_PATTERNS[N % 4]
_OVERWRITE_PATTERNS: Final[tuple[int, ...]] = (0x00, 0xFF, 0x55, 0xAA)

# Every Nth secure_delete nudges the retry worker
_PENDING_KICK_INTERVAL: Final[int] = 10

_O_NOFOLLOW: Final[int] = getattr(os, "O_NOFOLLOW", 0)
_O_BINARY: Final[int] = getattr(os, "O_BINARY", 0)


@dataclass(slots=True)
class PendingDeletion:
    """A file whose deletion failed and is waiting for a retry."""

    path: str
    enqueue_time: float
    attempts: int = 0


# Queues that get a final pass at interpreter exit. Weak, so a context that
# is never shut down can still be collected.
_LIVE_QUEUES: "weakref.WeakSet[CleanupQueue]" = weakref.WeakSet()


def _shutdown_live_queues() -> None:
    for queue in list(_LIVE_QUEUES):
        queue.shutdown()


atexit.register(_shutdown_live_queues)


class CleanupQueue:
    """
    Pending deletions plus the single background worker that retries them.

    The queue is not durable: whatever is left when the process exits is
    handled by the startup temp-folder sweep.
    """

    def __init__(
        self,
        os_ops: OsFileOps,
        initial_delay: float = 0.1,
        retry_delay: float = 1.0,
        max_delay: float = 30.0,
        register_atexit: bool = True,
    ) -> None:
        self._os = os_ops
        self._initial_delay = initial_delay
        self._retry_delay = retry_delay
        self._max_delay = max_delay

        self._mutex = threading.Lock()
        self._pending: list[PendingDeletion] = []
        self._scheduled = False
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._log = logging.getLogger("securestore.delete")

        if register_atexit:
            _LIVE_QUEUES.add(self)

    def enqueue(self, path: str) -> None:
        """Queue ``path`` for retry and make sure a worker is running."""
        with self._mutex:
            if not any(entry.path == path for entry in self._pending):
                self._pending.append(PendingDeletion(path=path, enqueue_time=time.time()))
                self._log.info(f"Queued for deferred deletion: {path}")
            self._schedule_locked()

    def kick(self) -> None:
        """Start a worker if work is pending and none is running."""
        with self._mutex:
            self._schedule_locked()

    def _schedule_locked(self) -> None:
        # Caller holds self._mutex; test-and-set keeps the worker single-flight
        if self._scheduled or not self._pending or self._stop_event.is_set():
            return
        self._scheduled = True
        self._worker = threading.Thread(
            target=self._run,
            name="securestore-cleanup",
            daemon=True,
        )
        self._worker.start()

    def _run(self) -> None:
        delay = self._initial_delay
        next_delay = self._retry_delay
        while not self._stop_event.wait(delay):
            self.process_pending()
            with self._mutex:
                if not self._pending:
                    self._scheduled = False
                    return
            delay = next_delay
            next_delay = min(next_delay * 2, self._max_delay)

        with self._mutex:
            self._scheduled = False

    def process_pending(self) -> int:
        """
        Retry every queued deletion once.

        Returns:
            Number of files removed (or handed to delete-on-close)
        """
        with self._mutex:
            snapshot = [entry.path for entry in self._pending]

        if not snapshot:
            return 0

        done: set[str] = set()
        for path in snapshot:
            if self._try_remove(path):
                done.add(path)

        with self._mutex:
            remaining: list[PendingDeletion] = []
            for entry in self._pending:
                if entry.path in done:
                    continue
                if entry.path in snapshot:
                    entry.attempts += 1
                remaining.append(entry)
            self._pending = remaining

        if done:
            self._log.info(f"Deferred deletion completed for {len(done)} file(s)")
        return len(done)

    def _try_remove(self, path: str) -> bool:
        if not os.path.lexists(path):
            return True
        try:
            self._os.remove(path)
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            self._log.debug(f"Retry of deletion failed for {path}: {e.strerror}")
        return self._os.mark_delete_on_close(path)

    def contains(self, path: str) -> bool:
        with self._mutex:
            return any(entry.path == path for entry in self._pending)

    def pending(self) -> list[PendingDeletion]:
        """Snapshot copy of the queue."""
        with self._mutex:
            return [
                PendingDeletion(entry.path, entry.enqueue_time, entry.attempts)
                for entry in self._pending
            ]

    @property
    def worker_active(self) -> bool:
        with self._mutex:
            return self._scheduled

    def shutdown(self, timeout: float = 2.0) -> None:
        """Stop the worker and make one final best-effort pass."""
        self._stop_event.set()
        worker = self._worker
        if worker is not None and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout)

        remaining = len(self)
        if remaining:
            self.process_pending()
            left = len(self)
            if left:
                self._log.warning(f"{left} file(s) still pending deletion at shutdown")

        _LIVE_QUEUES.discard(self)

    def __len__(self) -> int:
        with self._mutex:
            return len(self._pending)


class SecureDeleter:
    """
    Quick and secure (overwrite) deletion bound to a StorageContext.

    Usage:
        deleter = SecureDeleter(context)
        deleter.secure_delete(temp_path, passes=1)
        deleter.quick_delete(staging_path)
    """

    def __init__(self, context: StorageContext) -> None:
        self._context = context
        self._os = context.os_ops
        self._queue = context.cleanup_queue
        self._limits = context.limits
        self._counter_lock = threading.Lock()
        self._call_count = 0
        self._log = logging.getLogger("securestore.delete")

    @property
    def queue(self) -> CleanupQueue:
        return self._queue

    def quick_delete(self, path: str | os.PathLike[str]) -> bool:
        """
        Unlink ``path``, falling back to delete-on-close and then the retry
        queue.

        Returns:
            True if the file is gone (or will be once its handles close),
            False if it was queued for retry or is not a file
        """
        path = os.fspath(path)
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return True
        except OSError as e:
            self._log.warning(f"Cannot inspect {path} for deletion: {e.strerror}")
            st = None

        if st is not None and stat.S_ISDIR(st.st_mode):
            self._log.warning(f"Refusing to quick-delete a directory: {path}")
            return False

        try:
            self._os.remove(path)
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            self._log.debug(f"Unlink failed for {path}: {e.strerror}")

        if self._os.mark_delete_on_close(path):
            self._log.debug(f"Marked for delete-on-close: {path}")
            return True

        self._queue.enqueue(path)
        return False

    def secure_delete(
        self,
        path: str | os.PathLike[str],
        passes: Optional[int] = None,
        allow_outside_root: bool = False,
    ) -> bool:
        """
        Overwrite a file in place, then delete it.

        Args:
            path: File to delete
            passes: Overwrite passes (default from limits); reduced to 1 for
                files below the minimum size and capped at the maximum
            allow_outside_root: Permit files outside the context data root

        Returns:
            True if the file is gone, False if refused or queued for retry
        """
        path = os.fspath(path)
        self._maybe_kick_pending()

        if not allow_outside_root and not is_path_within_directory(path, self._context.data_root):
            self._log.warning(f"Refusing secure delete outside storage root: {path}")
            return False

        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return True
        except OSError as e:
            self._log.warning(f"Cannot inspect {path}: {e.strerror}")
            return self.quick_delete(path)

        if stat.S_ISLNK(st.st_mode):
            # Remove the link, never what it points at
            return self.quick_delete(path)
        if not stat.S_ISREG(st.st_mode):
            self._log.warning(f"Refusing secure delete of non-regular file: {path}")
            return False

        size = st.st_size
        if size == 0:
            return self.quick_delete(path)

        effective = passes if passes is not None else self._limits.secure_delete_passes
        if size < self._limits.secure_delete_min_size:
            effective = 1
        effective = max(1, min(effective, self._limits.max_overwrite_passes))

        try:
            self._overwrite(path, size, effective)
        except OSError as e:
            # Locked or vanished mid-way: fall back to plain deletion
            self._log.warning(f"Overwrite failed for {path}: {e}")

        return self.quick_delete(path)

    def _overwrite(self, path: str, size: int, passes: int) -> None:
        fd = os.open(path, os.O_WRONLY | _O_NOFOLLOW | _O_BINARY)
        try:
            for pass_num in range(passes):
                block = bytes([_OVERWRITE_PATTERNS[pass_num % len(_OVERWRITE_PATTERNS)]]) * BLOCK_SIZE
                os.lseek(fd, 0, os.SEEK_SET)
                remaining = size
                while remaining > 0:
                    chunk = block if remaining >= BLOCK_SIZE else block[:remaining]
                    written = os.write(fd, chunk)
                    if written <= 0:
                        raise OSError("short write during overwrite")
                    remaining -= written
                os.fsync(fd)
        finally:
            os.close(fd)

    def _maybe_kick_pending(self) -> None:
        with self._counter_lock:
            self._call_count += 1
            kick = self._call_count % _PENDING_KICK_INTERVAL == 0
        if kick and len(self._queue):
            self._queue.kick()

    def process_pending_deletions(self) -> int:
        """Synchronously retry every queued deletion once."""
        return self._queue.process_pending()
