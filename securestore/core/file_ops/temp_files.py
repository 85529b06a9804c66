"""
Secure Temporary Files
======================

Quota-checked, owner-only scratch files under ``<data_root>/<user>/Temp``.

Security Properties:
- Exclusive creation (O_CREAT | O_EXCL | O_NOFOLLOW), mode 0600
- Permissions re-read after creation; any mismatch is fatal
- Path re-validated after creation
- Deleted (overwritten first) on every exit path of the owning scope

Usage:
    result = temp_files.create(estimated_bytes=len(content))
    if not result.ok:
        return result.error
    with result.value as temp:
        write(temp.path, content)
    # temp file is gone (or queued for deferred deletion)
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import stat
from typing import Callable, Final, Optional, TYPE_CHECKING

from securestore.core.errors import StorageError, TempFileError, TempFileErrorKind
from securestore.core.result import Result
from securestore.security import constants
from securestore.utils.paths import ensure_private_directory, sanitize_filename

if TYPE_CHECKING:
    from securestore.core.context import StorageContext
    from securestore.core.file_ops.quota import TempDirectoryQuotaManager
    from securestore.core.file_ops.secure_delete import SecureDeleter
    from securestore.utils.validators import PathValidator, ValidatedPath


_MAX_NAME_ATTEMPTS: Final[int] = 16
_MAX_PREFIX_LENGTH: Final[int] = 32
_PREFIX_UNSAFE: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9_-]")

_O_NOFOLLOW: Final[int] = getattr(os, "O_NOFOLLOW", 0)
_O_BINARY: Final[int] = getattr(os, "O_BINARY", 0)

_log = logging.getLogger("securestore.temp")


class ScopeGuard:
    """
    Runs a callback once when its scope ends, unless disarmed.

    Usage:
        with ScopeGuard(lambda: deleter.quick_delete(staging)) as guard:
            publish(staging)
            guard.disarm()
    """

    __slots__ = ("_callback", "_armed")

    def __init__(self, callback: Callable[[], object]) -> None:
        self._callback = callback
        self._armed = True

    @property
    def armed(self) -> bool:
        return self._armed

    def disarm(self) -> None:
        self._armed = False

    def fire(self) -> None:
        if not self._armed:
            return
        self._armed = False
        self._callback()

    def __enter__(self) -> ScopeGuard:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.fire()


class TempFileHandle:
    """
    Ownership of one scratch file.

    The file is securely deleted when the ``with`` block ends, when
    ``cleanup()`` is called, or (as a last resort) when the handle is
    garbage collected, unless ``disarm()`` handed ownership elsewhere.
    """

    __slots__ = ("_path", "_guard")

    def __init__(self, path: ValidatedPath, on_cleanup: Callable[[], object]) -> None:
        self._path = path
        self._guard = ScopeGuard(on_cleanup)

    @property
    def path(self) -> ValidatedPath:
        return self._path

    @property
    def armed(self) -> bool:
        return self._guard.armed

    def disarm(self) -> ValidatedPath:
        """Give up ownership; the caller is now responsible for the file."""
        self._guard.disarm()
        return self._path

    def cleanup(self) -> None:
        self._guard.fire()

    def __enter__(self) -> TempFileHandle:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()

    def __del__(self) -> None:
        guard = getattr(self, "_guard", None)
        if guard is None or not guard.armed:
            return
        _log.warning(f"Temp file handle collected without cleanup: {self._path.path}")
        try:
            guard.fire()
        except OSError as e:
            _log.error(f"Finalizer cleanup failed for {self._path.path}: {e}")

    def __repr__(self) -> str:
        state = "armed" if self._guard.armed else "disarmed"
        return f"TempFileHandle({self._path.name!r}, {state})"


class SecureTempFileManager:
    """Creates and disposes of scratch files for one StorageContext."""

    def __init__(
        self,
        context: StorageContext,
        validator: PathValidator,
        quota: TempDirectoryQuotaManager,
        deleter: SecureDeleter,
    ) -> None:
        self._context = context
        self._validator = validator
        self._quota = quota
        self._deleter = deleter
        self._limits = context.limits
        self._log = _log

    def _prefix_for(self, template_hint: Optional[str]) -> str:
        if template_hint:
            try:
                stem = os.path.splitext(sanitize_filename(os.path.basename(template_hint)))[0]
            except ValueError:
                stem = ""
            prefix = _PREFIX_UNSAFE.sub("_", stem)[:_MAX_PREFIX_LENGTH]
            if prefix.strip("_"):
                return prefix
        return self._context.user[:_MAX_PREFIX_LENGTH]

    def create(
        self,
        template_hint: Optional[str] = None,
        estimated_bytes: Optional[int] = None,
        quota_checked: bool = False,
    ) -> Result[TempFileHandle, StorageError]:
        """
        Create an empty, owner-only scratch file.

        Args:
            template_hint: Name hint for the file prefix (sanitized)
            estimated_bytes: Expected size for the quota check
                (default: the maximum content size)
            quota_checked: The caller already ran the quota check for
                this file (e.g. ``can_decrypt_to_temp``); skip it here

        Returns:
            Result holding the TempFileHandle, or a QuotaError /
            TempFileError / PathError
        """
        if not quota_checked:
            estimate = self._limits.max_content_size if estimated_bytes is None else estimated_bytes
            quota = self._quota.check_and_reserve(estimate)
            if not quota.ok:
                return Result.failure(quota.error)

        temp_dir = self._context.temp_dir
        try:
            if not ensure_private_directory(temp_dir, self._limits.dir_permissions, self._context.os_ops):
                self._log.error(f"Temp directory is not owner-only: {temp_dir}")
                return Result.failure(TempFileError(TempFileErrorKind.PERMISSION_ERROR, "temp directory permissions"))
        except OSError as e:
            self._log.error(f"Cannot create temp directory {temp_dir}: {e.strerror}")
            return Result.failure(TempFileError(TempFileErrorKind.IO_ERROR, "cannot create temp directory", cause=e))

        prefix = self._prefix_for(template_hint)
        flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | _O_NOFOLLOW | _O_BINARY
        path = None
        fd = -1
        for _ in range(_MAX_NAME_ATTEMPTS):
            candidate = os.path.join(temp_dir, f"{prefix}_{secrets.token_hex(8)}.tmp")
            try:
                fd = os.open(candidate, flags, self._limits.file_permissions)
            except FileExistsError:
                continue
            except OSError as e:
                self._log.error(f"Cannot create temp file in {temp_dir}: {e.strerror}")
                return Result.failure(TempFileError(TempFileErrorKind.IO_ERROR, "cannot create temp file", cause=e))
            path = candidate
            break

        if path is None:
            return Result.failure(TempFileError(TempFileErrorKind.IO_ERROR, "no unique temp file name available"))

        self._context.register_temp(path)
        try:
            os.fsync(fd)
        except OSError as e:
            self._log.debug(f"fsync of new temp file failed: {e.strerror}")
        finally:
            os.close(fd)

        os_ops = self._context.os_ops
        mode = self._limits.file_permissions
        if not os_ops.set_owner_only(path, mode) or not os_ops.verify_owner_only(path, mode):
            self._log.error(f"Temp file permissions could not be verified: {path}")
            self._discard(path)
            return Result.failure(TempFileError(TempFileErrorKind.PERMISSION_ERROR, "temp file permissions mismatch"))

        validated = self._validator.validate(path, self._context.data_root)
        if not validated.ok:
            self._discard(path)
            return Result.failure(validated.error)

        temp_path = validated.value
        self._log.debug(f"Created temp file {temp_path.name}")
        return Result.success(TempFileHandle(temp_path, lambda: self._dispose(temp_path.path)))

    def _discard(self, path: str) -> None:
        self._context.release_temp(path)
        self._deleter.quick_delete(path)

    def _dispose(self, path: str) -> None:
        self._context.release_temp(path)
        if not self._deleter.secure_delete(path, passes=self._limits.temp_overwrite_passes):
            self._log.warning(f"Temp file deletion deferred: {path}")

    def cleanup_all_user_temp_folders(self) -> int:
        """
        Remove the contents of every ``<data_root>/*/Temp`` directory.

        Meant for application startup, to catch scratch files left behind by
        a crash. Symlinks are removed without following them; live temp files
        of this context are kept.

        Returns:
            Number of files removed
        """
        root = self._context.data_root
        if not os.path.isdir(root):
            return 0

        removed = 0
        with os.scandir(root) as users:
            for user_entry in users:
                if not user_entry.is_dir(follow_symlinks=False):
                    continue
                temp_dir = os.path.join(user_entry.path, constants.TEMP_DIRECTORY_NAME)
                try:
                    st = os.lstat(temp_dir)
                except FileNotFoundError:
                    continue
                if not stat.S_ISDIR(st.st_mode):
                    self._log.warning(f"Skipping non-directory temp folder: {temp_dir}")
                    continue
                removed += self._purge_directory(temp_dir)

        if removed:
            self._log.info(f"Startup temp cleanup removed {removed} file(s)")
        return removed

    def _purge_directory(self, directory: str) -> int:
        removed = 0
        for dirpath, dirnames, filenames in os.walk(directory, topdown=False, followlinks=False):
            for filename in filenames:
                full = os.path.join(dirpath, filename)
                if self._context.is_active_temp(full):
                    continue
                if self._deleter.secure_delete(full, passes=self._limits.temp_overwrite_passes):
                    removed += 1
            for dirname in dirnames:
                full = os.path.join(dirpath, dirname)
                if os.path.islink(full):
                    if self._deleter.quick_delete(full):
                        removed += 1
                    continue
                try:
                    os.rmdir(full)
                except OSError:
                    # Still holds files that could not be removed
                    continue
        return removed
