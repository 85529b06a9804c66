"""
Temp Directory Quota
====================

Bounds the per-user scratch area and keeps a free-disk floor on the data
volume. Every check rescans the directory; nothing is cached.

Check order (``check_and_reserve``):
    1. Estimate alone above the maximum -> QUOTA_EXCEEDED, nothing deleted
    2. current + estimate above the maximum -> delete oldest, rescan,
       still above -> QUOTA_EXCEEDED
    3. current above the cleanup threshold -> opportunistic cleanup
    4. free disk - estimate below the floor -> INSUFFICIENT_DISK

Known limitation: the check and the caller's file creation are not atomic,
so concurrent callers can together overshoot the maximum by their
estimates. Scratch files still in use are never removed by cleanup.
"""

from __future__ import annotations

import logging
import math
import os
import stat
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from securestore.core.errors import QuotaError, QuotaErrorKind
from securestore.core.result import Result

if TYPE_CHECKING:
    from securestore.core.context import StorageContext
    from securestore.core.file_ops.secure_delete import SecureDeleter
    from securestore.utils.validators import ValidatedPath


@dataclass(frozen=True, slots=True)
class QuotaState:
    """Snapshot taken by a successful quota check."""

    current_size: int
    max_size: int
    cleanup_threshold: int
    min_free_disk: int
    available_disk: int

    @property
    def usage_ratio(self) -> float:
        return self.current_size / self.max_size if self.max_size else 0.0


class TempDirectoryQuotaManager:
    """
    Usage:
        quota = TempDirectoryQuotaManager(context, deleter)
        result = quota.check_and_reserve(len(content))
        if not result.ok:
            return result.error
    """

    def __init__(self, context: StorageContext, deleter: SecureDeleter) -> None:
        self._context = context
        self._deleter = deleter
        self._limits = context.limits
        self._log = logging.getLogger("securestore.quota")

    def _scan(self, temp_dir: str) -> list[tuple[str, int, float]]:
        """(path, size, mtime) for every regular file below ``temp_dir``."""
        entries: list[tuple[str, int, float]] = []
        if not os.path.isdir(temp_dir):
            return entries
        for dirpath, dirnames, filenames in os.walk(temp_dir, followlinks=False):
            for filename in filenames:
                full = os.path.join(dirpath, filename)
                try:
                    st = os.lstat(full)
                except OSError:
                    continue
                if not stat.S_ISREG(st.st_mode):
                    continue
                entries.append((full, st.st_size, st.st_mtime))
        return entries

    def get_temp_directory_size(self, user: Optional[str] = None) -> int:
        """Total size of regular files in the user's temp directory (symlinks ignored)."""
        return sum(size for _, size, _ in self._scan(self._context.temp_dir_for(user)))

    def get_available_disk_space(self, path: Optional[str] = None) -> int:
        """
        Free bytes on the volume holding ``path`` (default: the data root).

        Walks up to the nearest existing directory, since the target itself
        may not exist yet.
        """
        probe = os.path.abspath(path or self._context.data_root)
        while not os.path.exists(probe):
            parent = os.path.dirname(probe)
            if parent == probe:
                break
            probe = parent
        return self._context.os_ops.available_disk_space(probe)

    def cleanup_oldest(self, target_bytes: int, user: Optional[str] = None) -> int:
        """
        Delete the oldest scratch files until ``target_bytes`` are freed.

        Files owned by live temp handles are skipped.

        Returns:
            Bytes actually freed
        """
        candidates = sorted(self._scan(self._context.temp_dir_for(user)), key=lambda entry: entry[2])
        freed = 0
        removed = 0
        for path, size, _ in candidates:
            if freed >= target_bytes:
                break
            if self._context.is_active_temp(path):
                continue
            if self._deleter.secure_delete(path, passes=self._limits.temp_overwrite_passes):
                freed += size
                removed += 1

        if removed:
            self._log.info(f"Quota cleanup removed {removed} file(s), freed {freed} bytes")
        return freed

    def check_and_reserve(self, estimated_bytes: int, user: Optional[str] = None) -> Result[QuotaState, QuotaError]:
        """
        Verify there is room for ``estimated_bytes`` of scratch data.

        Args:
            estimated_bytes: Size of the scratch file about to be created
            user: User whose temp directory is checked (default: context user)

        Returns:
            Result holding the QuotaState, or QUOTA_EXCEEDED / INSUFFICIENT_DISK
        """
        max_size = self._limits.max_temp_directory_size
        threshold = self._limits.temp_cleanup_threshold
        estimated_bytes = max(0, estimated_bytes)

        if estimated_bytes > max_size:
            self._log.warning(f"Requested {estimated_bytes} bytes exceeds temp quota of {max_size}")
            return Result.failure(QuotaError(QuotaErrorKind.QUOTA_EXCEEDED, "request larger than temp quota"))

        current = self.get_temp_directory_size(user)

        if current + estimated_bytes > max_size:
            self._log.info(f"Temp quota pressure: {current} + {estimated_bytes} > {max_size}, cleaning up")
            self.cleanup_oldest(estimated_bytes, user)
            current = self.get_temp_directory_size(user)
            if current + estimated_bytes > max_size:
                self._log.warning(f"Temp quota exceeded after cleanup: {current} + {estimated_bytes} > {max_size}")
                return Result.failure(QuotaError(QuotaErrorKind.QUOTA_EXCEEDED, "temp directory quota exceeded"))
        elif current > threshold:
            self._log.debug(f"Temp usage {current} above threshold {threshold}, cleaning up")
            self.cleanup_oldest(current - threshold, user)
            current = self.get_temp_directory_size(user)

        try:
            available = self.get_available_disk_space()
        except OSError as e:
            self._log.error(f"Cannot determine free disk space: {e}")
            return Result.failure(QuotaError(QuotaErrorKind.INSUFFICIENT_DISK, "free disk space unknown", cause=e))

        if available - estimated_bytes < self._limits.min_disk_space_required:
            self._log.warning(f"Insufficient disk space: {available} available, {estimated_bytes} requested")
            return Result.failure(QuotaError(QuotaErrorKind.INSUFFICIENT_DISK, "insufficient free disk space"))

        return Result.success(QuotaState(
            current_size=current,
            max_size=max_size,
            cleanup_threshold=threshold,
            min_free_disk=self._limits.min_disk_space_required,
            available_disk=available,
        ))

    def estimate_decrypted_size(self, encrypted_size: int) -> int:
        return math.ceil(encrypted_size * self._limits.decrypt_size_factor)

    def can_decrypt_to_temp(self, source: ValidatedPath | str, user: Optional[str] = None) -> Result[QuotaState, QuotaError]:
        """Quota check for decrypting ``source`` (estimate: 1.1 x its size)."""
        try:
            size = os.path.getsize(os.fspath(source))
        except OSError as e:
            self._log.warning(f"Cannot size {os.fspath(source)} for decryption: {e.strerror}")
            return Result.failure(QuotaError(QuotaErrorKind.QUOTA_EXCEEDED, "cannot determine source size", cause=e))
        return self.check_and_reserve(self.estimate_decrypted_size(size), user)
