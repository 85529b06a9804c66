"""
Storage Context
===============

Explicit per-user state for the storage layer: who the user is, where the
data root is, and the shared registries every component needs. Components
receive the context instead of reaching for module globals, so several
contexts (e.g. one per test) can coexist in one process.

Layout:
    <data_root>/<user>/...        user files
    <data_root>/<user>/Temp/      scratch files (quota-managed)
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional

from securestore.core.config import SecureConfig, StorageLimits
from securestore.core.file_ops.locking import LockRegistry
from securestore.core.file_ops.os_ops import OsFileOps, default_os_ops
from securestore.core.file_ops.secure_delete import CleanupQueue
from securestore.security import constants
from securestore.utils.validators import validate_path_component


class StorageContext:
    """
    Usage:
        context = StorageContext("alice", "/var/lib/app/Data")
        ...
        context.shutdown()
    """

    __slots__ = (
        "_user",
        "_data_root",
        "_limits",
        "_os",
        "_lock_registry",
        "_cleanup_queue",
        "_active_lock",
        "_active_temp",
        "_log",
    )

    def __init__(
        self,
        user: str,
        data_root: str | os.PathLike[str],
        limits: Optional[StorageLimits] = None,
        os_ops: Optional[OsFileOps] = None,
        lock_registry: Optional[LockRegistry] = None,
        cleanup_queue: Optional[CleanupQueue] = None,
    ) -> None:
        """
        Args:
            user: User name; must be a single safe path component
            data_root: Absolute (or resolvable) data directory
            limits: Resource policy (defaults to the fixed production limits)
            os_ops: Platform primitives (defaults to the running platform)
            lock_registry: Shared lock registry (new one if omitted)
            cleanup_queue: Shared retry queue (new one if omitted)

        Raises:
            ValidationError: If ``user`` is not a safe name
        """
        self._user = validate_path_component(user, field_name="user")
        self._data_root = os.path.abspath(os.fspath(data_root))
        self._limits = limits or StorageLimits()
        self._os = os_ops or default_os_ops()
        self._lock_registry = lock_registry or LockRegistry()
        self._cleanup_queue = cleanup_queue or CleanupQueue(
            self._os,
            initial_delay=self._limits.retry_initial_delay,
            retry_delay=self._limits.retry_delay,
            max_delay=self._limits.retry_max_delay,
        )
        self._active_lock = threading.Lock()
        self._active_temp: set[str] = set()
        self._log = logging.getLogger("securestore.storage")

    @classmethod
    def from_config(cls, user: str, config: Optional[SecureConfig] = None, **kwargs) -> StorageContext:
        """Build a context on the configured data directory and limits."""
        config = config or SecureConfig.get_instance()
        return cls(user, config.paths.data_dir, limits=config.limits, **kwargs)

    @property
    def user(self) -> str:
        return self._user

    @property
    def data_root(self) -> str:
        return self._data_root

    @property
    def limits(self) -> StorageLimits:
        return self._limits

    @property
    def os_ops(self) -> OsFileOps:
        return self._os

    @property
    def lock_registry(self) -> LockRegistry:
        return self._lock_registry

    @property
    def cleanup_queue(self) -> CleanupQueue:
        return self._cleanup_queue

    @property
    def user_dir(self) -> str:
        return os.path.join(self._data_root, self._user)

    @property
    def temp_dir(self) -> str:
        return self.temp_dir_for(self._user)

    def temp_dir_for(self, user: Optional[str] = None) -> str:
        """Scratch directory of ``user`` (default: this context's user)."""
        if user is None:
            user = self._user
        else:
            validate_path_component(user, field_name="user")
        return os.path.join(self._data_root, user, constants.TEMP_DIRECTORY_NAME)

    # Live scratch files, excluded from quota cleanup. Keys are resolved so a
    # symlinked data root matches the validator's canonical paths.

    @staticmethod
    def _temp_key(path: str) -> str:
        return os.path.normcase(os.path.realpath(path))

    def register_temp(self, path: str) -> None:
        with self._active_lock:
            self._active_temp.add(self._temp_key(path))

    def release_temp(self, path: str) -> None:
        with self._active_lock:
            self._active_temp.discard(self._temp_key(path))

    def is_active_temp(self, path: str) -> bool:
        with self._active_lock:
            return self._temp_key(path) in self._active_temp

    def active_temp_files(self) -> frozenset[str]:
        with self._active_lock:
            return frozenset(self._active_temp)

    def shutdown(self) -> None:
        """Stop the retry worker after a final deletion pass."""
        self._cleanup_queue.shutdown()
        self._log.debug(f"Storage context for {self._user} shut down")

    def __repr__(self) -> str:
        return f"StorageContext(user={self._user!r}, data_root={self._data_root!r})"
