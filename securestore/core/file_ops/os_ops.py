"""
Platform Filesystem Primitives
==============================

The storage layer never branches on the platform itself; everything that
differs between Windows and POSIX goes through an ``OsFileOps`` object held
by the ``StorageContext``. Tests inject fakes (e.g. to simulate low disk
space or a permission mismatch).

Security Features:
- Owner-only permission set + exact re-read verification on POSIX
- Delete-on-close fallback for files held open by other processes (Windows)
- Extended-length path escape for long Windows paths
"""

from __future__ import annotations

import ctypes
import logging
import os
import platform
import shutil
import stat
from typing import Final, Protocol, runtime_checkable

from securestore.security import constants


IS_WINDOWS: Final[bool] = platform.system() == "Windows"

_log = logging.getLogger("securestore.os")

# Win32 constants for CreateFileW
_DELETE: Final[int] = 0x00010000
_FILE_SHARE_ALL: Final[int] = 0x00000001 | 0x00000002 | 0x00000004
_OPEN_EXISTING: Final[int] = 3
_FILE_FLAG_DELETE_ON_CLOSE: Final[int] = 0x04000000
_INVALID_HANDLE_VALUE: Final[int] = -1

_EXTENDED_PREFIX: Final[str] = "\\\\?\\"
_EXTENDED_UNC_PREFIX: Final[str] = "\\\\?\\UNC\\"


@runtime_checkable
class OsFileOps(Protocol):
    """Filesystem primitives whose behaviour depends on the platform."""

    short_path_limit: int

    def remove(self, path: str) -> None:
        """Unlink a file. Raises OSError on failure."""
        ...

    def mark_delete_on_close(self, path: str) -> bool:
        """Ask the OS to delete ``path`` once every open handle is closed."""
        ...

    def set_owner_only(self, path: str, mode: int) -> bool:
        ...

    def verify_owner_only(self, path: str, mode: int) -> bool:
        ...

    def available_disk_space(self, path: str) -> int:
        """Free bytes available to the caller on the volume holding ``path``."""
        ...

    def to_long_path(self, path: str) -> str:
        ...


class PosixFileOps:
    """Linux / macOS implementation."""

    __slots__ = ("short_path_limit",)

    def __init__(self, short_path_limit: int = constants.POSIX_PATH_LIMIT) -> None:
        self.short_path_limit = short_path_limit

    def remove(self, path: str) -> None:
        os.unlink(path)

    def mark_delete_on_close(self, path: str) -> bool:
        # POSIX unlink already succeeds while a file is open; nothing to defer to.
        return False

    def set_owner_only(self, path: str, mode: int) -> bool:
        try:
            if stat.S_ISLNK(os.lstat(path).st_mode):
                _log.warning(f"Refusing to set permissions through symlink: {path}")
                return False
            os.chmod(path, mode)
        except OSError as e:
            _log.warning(f"Failed to set permissions on {path}: {e.strerror}")
            return False
        return True

    def verify_owner_only(self, path: str, mode: int) -> bool:
        try:
            st = os.lstat(path)
        except OSError:
            return False
        if stat.S_ISLNK(st.st_mode):
            return False
        return stat.S_IMODE(st.st_mode) == mode

    def available_disk_space(self, path: str) -> int:
        return shutil.disk_usage(path).free

    def to_long_path(self, path: str) -> str:
        return path


class WindowsFileOps:
    """
    Windows implementation.

    NTFS ACLs are not managed here; ``set_owner_only`` only clears the
    read-only attribute so the file stays writable by its owner, and
    ``verify_owner_only`` accepts any regular file. Per-user data directories
    under ``%LOCALAPPDATA%`` already inherit an owner-only ACL.
    """

    __slots__ = ("short_path_limit",)

    def __init__(self, short_path_limit: int = constants.WINDOWS_SHORT_PATH_LIMIT) -> None:
        self.short_path_limit = short_path_limit

    def remove(self, path: str) -> None:
        os.remove(path)

    def mark_delete_on_close(self, path: str) -> bool:
        """
        Open the file with FILE_FLAG_DELETE_ON_CLOSE and close it again.

        The file disappears once the last process holding it open closes its
        handle, which covers files locked by scanners or indexers.
        """
        try:
            kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
            create_file = kernel32.CreateFileW
            create_file.restype = ctypes.c_void_p
            handle = create_file(
                ctypes.c_wchar_p(self.to_long_path(os.path.abspath(path))),
                _DELETE,
                _FILE_SHARE_ALL,
                None,
                _OPEN_EXISTING,
                _FILE_FLAG_DELETE_ON_CLOSE,
                None,
            )
            if handle is None or handle == ctypes.c_void_p(_INVALID_HANDLE_VALUE).value:
                return False
            kernel32.CloseHandle(ctypes.c_void_p(handle))
            return True
        except (AttributeError, OSError) as e:
            _log.debug(f"Delete-on-close unavailable for {path}: {e}")
            return False

    def set_owner_only(self, path: str, mode: int) -> bool:
        try:
            os.chmod(path, stat.S_IREAD | stat.S_IWRITE)
        except OSError as e:
            _log.warning(f"Failed to set permissions on {path}: {e.strerror}")
            return False
        return True

    def verify_owner_only(self, path: str, mode: int) -> bool:
        try:
            st = os.lstat(path)
        except OSError:
            return False
        return not stat.S_ISLNK(st.st_mode)

    def available_disk_space(self, path: str) -> int:
        return shutil.disk_usage(path).free

    def to_long_path(self, path: str) -> str:
        if path.startswith(_EXTENDED_PREFIX):
            return path
        if path.startswith("\\\\"):
            return _EXTENDED_UNC_PREFIX + path[2:]
        return _EXTENDED_PREFIX + path


def default_os_ops() -> OsFileOps:
    """Return the primitives for the running platform."""
    if IS_WINDOWS:
        return WindowsFileOps()
    return PosixFileOps()
