"""
Path Validation
===============

Turns untrusted, user-relative path strings into ``ValidatedPath`` objects
confined to an allowed root.

Checks run in a fixed order and stop at the first failure:

    1. MALFORMED         empty string or embedded NUL
    2. TRAVERSAL         "..", percent-encoded / double-encoded / overlong
                         forms, backslash variants, up to 3 decode rounds
    3. SPOOFING          bidirectional override controls
    4. RESERVED_NAME     CON, PRN, AUX, NUL, COM1-9, LPT1-9
    5. ADS_DETECTED      ":" outside the drive-letter position
    6. TOO_LONG          absolute ceiling, or short limit without escape
    7. SYMLINK_DETECTED  a link between the root and the target
       OUTSIDE_ROOT      canonical path not strictly below the root

Callers must re-run the pipeline (``PathValidator.revalidate``) after any
filesystem mutation that could have been raced.
"""

from __future__ import annotations

import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Optional, TYPE_CHECKING
from urllib.parse import unquote

from securestore.core.errors import PathError, PathErrorKind
from securestore.core.result import Result
from securestore.security import constants

if TYPE_CHECKING:
    from securestore.core.file_ops.os_ops import OsFileOps


_log = logging.getLogger("securestore.paths")

_RESERVED_DEVICE_NAMES: Final[frozenset[str]] = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{i}" for i in range(1, 10)}
    | {f"LPT{i}" for i in range(1, 10)}
)

_ENCODED_TRAVERSAL: Final[tuple[str, ...]] = (
    "%2e%2e",
    "%2e.",
    ".%2e",
    "%252e",
    "%c0%ae",
    "%e0%80%ae",
    "%u002e",
)

_BIDI_CONTROLS: Final[frozenset[str]] = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)

_DECODE_ROUNDS: Final[int] = 3
_MAX_COMPONENT_LENGTH: Final[int] = 255
_COMPONENT_SPLIT: Final[re.Pattern[str]] = re.compile(r"[/\\]")
_CONTROL_CHARS: Final[re.Pattern[str]] = re.compile(r"[\x00-\x1f\x7f]")


class ValidationError(ValueError):
    """Raised when a single name or string fails validation."""
    pass


# Only PathValidator holds this, so ValidatedPath cannot be forged elsewhere.
_CONSTRUCTION_TOKEN: Final[object] = object()


@dataclass(frozen=True, slots=True)
class ValidatedPath:
    """
    Canonical absolute path proven to lie strictly below ``root``.

    Attributes:
        path: Canonical absolute path (extended-length form where needed)
        root: Canonical allowed root
        relative: Path relative to ``root``, OS separators
    """

    path: str
    root: str
    relative: str
    _token: object = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self._token is not _CONSTRUCTION_TOKEN:
            raise TypeError("ValidatedPath can only be created by PathValidator")

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def parent(self) -> str:
        return os.path.dirname(self.path)

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def __fspath__(self) -> str:
        return self.path

    def __str__(self) -> str:
        return self.path


def _decoded_variants(raw: str) -> list[str]:
    """The raw string plus up to three rounds of percent-decoding."""
    variants = [raw]
    current = raw
    for _ in range(_DECODE_ROUNDS):
        decoded = unquote(current)
        if decoded == current:
            break
        variants.append(decoded)
        current = decoded
    return variants


def contains_traversal(raw: str) -> bool:
    """
    Check for raw or encoded parent-directory references anywhere in ``raw``.

    Backslashes are treated as separators and matching is case-insensitive,
    so ``%2E%2E``, ``..\\`` and ``%252e%252e`` are all caught.
    """
    lowered = raw.replace("\\", "/").lower()
    if any(marker in lowered for marker in _ENCODED_TRAVERSAL):
        return True
    return any(".." in variant.replace("\\", "/") for variant in _decoded_variants(lowered))


def contains_bidi_controls(raw: str) -> bool:
    """Check for Unicode direction overrides, raw or percent-encoded."""
    return any(
        ch in _BIDI_CONTROLS
        for variant in _decoded_variants(raw)
        for ch in variant
    )


def is_reserved_device_name(name: str) -> bool:
    """
    Check whether a single component names a Windows device.

    ``con``, ``CON.txt`` and ``Con . `` all match; ``CONSOLE`` does not.
    """
    stripped = name.rstrip(". ")
    base = stripped.split(".", 1)[0].rstrip(" ")
    return base.upper() in _RESERVED_DEVICE_NAMES


def _has_reserved_component(raw: str) -> bool:
    return any(is_reserved_device_name(part) for part in _COMPONENT_SPLIT.split(raw) if part)


def _has_stream_marker(raw: str) -> bool:
    """Any ":" except the drive letter one (``C:``) marks an NTFS stream."""
    candidate = raw
    for prefix in ("\\\\?\\", "//?/"):
        if candidate.startswith(prefix):
            candidate = candidate[len(prefix):]
            break
    for index, ch in enumerate(candidate):
        if ch != ":":
            continue
        if index == 1 and candidate[0].isascii() and candidate[0].isalpha():
            continue
        return True
    return False


def validate_string_safe(
    value: str,
    min_length: int = 0,
    max_length: int = 1000,
    allow_empty: bool = False,
    field_name: str = "value",
) -> str:
    """
    Validate a string value for safety.

    Args:
        value: The string to validate
        min_length: Minimum allowed length
        max_length: Maximum allowed length
        allow_empty: If False, empty strings are rejected
        field_name: Name of the field for error messages

    Returns:
        Validated string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")

    if not allow_empty and not value:
        raise ValidationError(f"{field_name} cannot be empty")

    if len(value) < min_length:
        raise ValidationError(
            f"{field_name} must be at least {min_length} characters"
        )

    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} must be at most {max_length} characters"
        )

    # Check for null bytes (security risk)
    if "\x00" in value:
        raise ValidationError(f"{field_name} contains invalid characters")

    return value


def validate_path_component(name: str, field_name: str = "component") -> str:
    """
    Validate a single directory or file name.

    Used for user names and hierarchy levels: no separators, no traversal,
    no stream marker, no device name, no control or direction characters.

    Raises:
        ValidationError: If ``name`` is not a safe single component
    """
    validate_string_safe(name, min_length=1, max_length=_MAX_COMPONENT_LENGTH, field_name=field_name)

    if _COMPONENT_SPLIT.search(name):
        raise ValidationError(f"{field_name} cannot contain path separators")
    if name in (".", "..") or contains_traversal(name):
        raise ValidationError(f"{field_name} contains path traversal")
    if _CONTROL_CHARS.search(name) or contains_bidi_controls(name):
        raise ValidationError(f"{field_name} contains invalid characters")
    if ":" in name:
        raise ValidationError(f"{field_name} cannot contain ':'")
    if is_reserved_device_name(name):
        raise ValidationError(f"{field_name} is a reserved device name")
    if name != name.rstrip(". "):
        raise ValidationError(f"{field_name} cannot end with a dot or space")

    return name


def secure_path_join(base: str | Path, component: str) -> Path:
    """
    Join one validated component onto ``base``.

    Raises:
        ValidationError: If the component is unsafe or the result escapes ``base``
    """
    validate_path_component(component)
    base_path = Path(os.path.abspath(base))
    joined = base_path / component
    if joined.parent != base_path:
        raise ValidationError("Joined path escapes its base directory")
    return joined


def _is_strictly_under(path: str, root: str) -> bool:
    path_cmp = os.path.normcase(path)
    root_cmp = os.path.normcase(root)
    if path_cmp == root_cmp:
        return False
    try:
        return os.path.commonpath([path_cmp, root_cmp]) == root_cmp
    except ValueError:
        # Different drives on Windows
        return False


class PathValidator:
    """
    Validates raw paths against an allowed root.

    Usage:
        validator = PathValidator(os_ops=default_os_ops())
        result = validator.validate("diary/2024/01.enc", data_root)
        if not result.ok:
            log(result.error.kind)
        target = result.value
    """

    __slots__ = ("_os", "_allow_long_paths", "_log")

    def __init__(self, os_ops: OsFileOps, allow_long_paths: bool = True) -> None:
        """
        Args:
            os_ops: Platform primitives (short path limit, long-path escape)
            allow_long_paths: Apply the extended-length escape instead of
                rejecting paths above the platform short limit
        """
        self._os = os_ops
        self._allow_long_paths = allow_long_paths
        self._log = _log

    def validate(self, raw_path: str | os.PathLike[str], allowed_root: str | os.PathLike[str]) -> Result[ValidatedPath, PathError]:
        """
        Validate ``raw_path`` (relative to, or absolute below, ``allowed_root``).

        Returns:
            Result holding the ValidatedPath, or the first PathError found
        """
        try:
            raw = os.fspath(raw_path)
            root = os.fspath(allowed_root)
        except TypeError:
            return self._reject(PathErrorKind.MALFORMED, "path is not a string")

        if not isinstance(raw, str) or not isinstance(root, str):
            return self._reject(PathErrorKind.MALFORMED, "path is not a string")
        if not raw or "\x00" in raw:
            return self._reject(PathErrorKind.MALFORMED, "empty path or embedded NUL")
        if not root or "\x00" in root:
            return self._reject(PathErrorKind.MALFORMED, "invalid allowed root")

        if contains_traversal(raw):
            return self._reject(PathErrorKind.TRAVERSAL, "traversal sequence in path", raw)
        if contains_bidi_controls(raw):
            return self._reject(PathErrorKind.SPOOFING, "bidirectional control character in path", raw)
        if _has_reserved_component(raw):
            return self._reject(PathErrorKind.RESERVED_NAME, "reserved device name in path", raw)
        if _has_stream_marker(raw):
            return self._reject(PathErrorKind.ADS_DETECTED, "alternate data stream marker in path", raw)

        root_abs = os.path.abspath(root)
        candidate = raw if os.path.isabs(raw) else os.path.join(root_abs, raw)
        longest = max(len(raw), len(candidate))
        if longest > constants.ABSOLUTE_PATH_CEILING:
            return self._reject(PathErrorKind.TOO_LONG, "path exceeds absolute length ceiling")
        if longest > self._os.short_path_limit and not self._allow_long_paths:
            return self._reject(PathErrorKind.TOO_LONG, "path exceeds platform length limit")

        return self._canonicalize(raw, root_abs)

    def revalidate(self, validated: ValidatedPath) -> Result[ValidatedPath, PathError]:
        """Re-run the full pipeline, e.g. after creating the file or its parent."""
        return self.validate(validated.relative, validated.root)

    def _canonicalize(self, raw: str, root_abs: str) -> Result[ValidatedPath, PathError]:
        root_real = os.path.realpath(root_abs)

        if os.path.isabs(raw):
            normalized = os.path.normpath(raw)
            relative = None
            for base in (root_real, root_abs):
                if _is_strictly_under(normalized, base):
                    relative = os.path.relpath(normalized, base)
                    break
            if relative is None:
                return self._reject(PathErrorKind.OUTSIDE_ROOT, "absolute path outside allowed root", raw)
        else:
            relative = os.path.normpath(raw)

        if relative in (os.curdir, "") or os.path.isabs(relative):
            return self._reject(PathErrorKind.OUTSIDE_ROOT, "path does not name an entry below the root", raw)

        # Walk existing components from the root down; stop at the first missing one
        current = root_real
        for part in relative.split(os.sep):
            if not part or part == os.curdir:
                continue
            current = os.path.join(current, part)
            try:
                st = os.lstat(current)
            except FileNotFoundError:
                break
            except OSError as e:
                return self._reject(PathErrorKind.MALFORMED, f"cannot inspect path component: {e.strerror}", raw)
            if stat.S_ISLNK(st.st_mode):
                return self._reject(PathErrorKind.SYMLINK_DETECTED, "symbolic link in path", raw)

        canonical = os.path.realpath(os.path.join(root_real, relative))
        if not _is_strictly_under(canonical, root_real):
            return self._reject(PathErrorKind.OUTSIDE_ROOT, "canonical path outside allowed root", raw)

        final = canonical
        if self._allow_long_paths and len(canonical) > self._os.short_path_limit:
            final = self._os.to_long_path(canonical)

        return Result.success(ValidatedPath(
            path=final,
            root=root_real,
            relative=os.path.relpath(canonical, root_real),
            _token=_CONSTRUCTION_TOKEN,
        ))

    def _reject(self, kind: PathErrorKind, message: str, raw: Optional[str] = None) -> Result[ValidatedPath, PathError]:
        if raw is not None:
            self._log.warning(f"Path rejected ({kind.name}): {message}: {raw[:200]!r}")
        else:
            self._log.warning(f"Path rejected ({kind.name}): {message}")
        return Result.failure(PathError(kind, message))
