"""
Path Utilities
==============

Filename cleanup, containment checks and owner-only directory creation
shared by the writer, the temp file manager and the deleter.
"""

from __future__ import annotations

import os
import re
import stat
from pathlib import Path
from typing import Final, TYPE_CHECKING

if TYPE_CHECKING:
    from securestore.core.file_ops.os_ops import OsFileOps

# Reserved on Windows or separators anywhere, plus control characters
_UNSAFE_CHARS: Final[re.Pattern[str]] = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_MAX_NAME_LENGTH: Final[int] = 200


def sanitize_filename(filename: str, replacement: str = "_") -> str:
    """
    Reduce ``filename`` to a single portable component.

    Unsafe characters become ``replacement``, surrounding dots and blanks
    are dropped and the result is cut to 200 characters.

    Raises:
        ValueError: If nothing usable is left
    """
    if not filename:
        raise ValueError("Filename cannot be empty")

    cleaned = _UNSAFE_CHARS.sub(replacement, filename).strip(". ")
    if not cleaned:
        raise ValueError("Filename becomes empty after sanitization")
    return cleaned[:_MAX_NAME_LENGTH]


def is_path_within_directory(path: str | Path, directory: str | Path) -> bool:
    """
    Check if a path lies below a directory without following the path itself.

    The directory is compared both as given and fully resolved, so a root
    reached through a symlinked parent (``/tmp`` on macOS) still matches.

    Args:
        path: The path to check
        directory: The containing directory

    Returns:
        True if path is strictly within directory
    """
    candidate = os.path.normcase(os.path.abspath(path))
    for base in {os.path.abspath(directory), os.path.realpath(directory)}:
        base_cmp = os.path.normcase(base)
        if candidate == base_cmp:
            continue
        try:
            if os.path.commonpath([candidate, base_cmp]) == base_cmp:
                return True
        except ValueError:
            continue
    return False


def ensure_private_directory(path: str | Path, mode: int, os_ops: OsFileOps) -> bool:
    """
    Create ``path`` and any missing parents with owner-only permissions.

    Directories that already exist are left as they are, but must be real
    directories (not symlinks). Every directory this call creates has its
    permissions set and verified.

    Returns:
        True if the directory exists and every created level verified,
        False on a permission mismatch or an existing non-directory

    Raises:
        OSError: If a directory cannot be created
    """
    target = os.path.abspath(path)

    missing: list[str] = []
    current = target
    while True:
        try:
            st = os.lstat(current)
        except FileNotFoundError:
            missing.append(current)
            parent = os.path.dirname(current)
            if parent == current:
                break
            current = parent
            continue
        if not stat.S_ISDIR(st.st_mode):
            return False
        break

    for directory in reversed(missing):
        try:
            os.mkdir(directory, mode)
        except FileExistsError:
            if not os.path.isdir(directory) or os.path.islink(directory):
                return False
            continue
        if not os_ops.set_owner_only(directory, mode):
            return False
        if not os_ops.verify_owner_only(directory, mode):
            return False

    return True
