"""
Storage Error Taxonomy
======================

Every expected failure of the storage layer is a ``StorageError`` subclass
carrying a ``kind`` enum member. Operations return these inside a
``Result`` instead of raising them; ``Result.unwrap()`` raises the carried
error for callers that prefer exceptions.

Error messages never contain key material or file content.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class PathErrorKind(Enum):
    """Reasons a raw path is rejected, in validation order."""
    MALFORMED = "MALFORMED"
    TRAVERSAL = "TRAVERSAL"
    SPOOFING = "SPOOFING"
    RESERVED_NAME = "RESERVED_NAME"
    ADS_DETECTED = "ADS_DETECTED"
    TOO_LONG = "TOO_LONG"
    SYMLINK_DETECTED = "SYMLINK_DETECTED"
    OUTSIDE_ROOT = "OUTSIDE_ROOT"


class QuotaErrorKind(Enum):
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    INSUFFICIENT_DISK = "INSUFFICIENT_DISK"


class LockErrorKind(Enum):
    ALREADY_LOCKED = "ALREADY_LOCKED"
    TIMEOUT = "TIMEOUT"


class TempFileErrorKind(Enum):
    IO_ERROR = "IO_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"


class WriteErrorKind(Enum):
    WEAK_KEY = "WEAK_KEY"
    TOO_LARGE = "TOO_LARGE"
    IO_ERROR = "IO_ERROR"
    CIPHER_ERROR = "CIPHER_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    INVALID_PATH = "INVALID_PATH"
    LOCKED = "LOCKED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"


class ReadErrorKind(Enum):
    NOT_FOUND = "NOT_FOUND"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    CIPHER_ERROR = "CIPHER_ERROR"
    CONTENT_TOO_LARGE = "CONTENT_TOO_LARGE"
    IO_ERROR = "IO_ERROR"
    INVALID_PATH = "INVALID_PATH"
    LOCKED = "LOCKED"


class ProcessingErrorKind(Enum):
    ABORTED = "ABORTED"
    CALLBACK_FAILED = "CALLBACK_FAILED"
    INVALID_PATTERN = "INVALID_PATTERN"
    TYPE_MISMATCH = "TYPE_MISMATCH"


class StorageError(Exception):
    """
    Base class for all storage layer errors.

    Attributes:
        kind: The specific failure reason
        cause: The underlying error, if this one wraps another
    """

    kind: Enum

    def __init__(self, kind: Enum, message: str = "", cause: Optional[BaseException] = None) -> None:
        self.kind = kind
        self.cause = cause
        super().__init__(message or kind.value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.name}: {self})"


class PathError(StorageError):
    """Raised when a path fails validation."""
    kind: PathErrorKind


class QuotaError(StorageError):
    """Raised when temp space or free disk space is insufficient."""
    kind: QuotaErrorKind


class LockError(StorageError):
    """Raised when an advisory file lock cannot be acquired."""
    kind: LockErrorKind


class TempFileError(StorageError):
    """Raised when a secure scratch file cannot be created."""
    kind: TempFileErrorKind


class WriteError(StorageError):
    """Raised when an atomic encrypted write fails."""
    kind: WriteErrorKind


class ReadError(StorageError):
    """Raised when an atomic encrypted read fails."""
    kind: ReadErrorKind


class ProcessingError(StorageError):
    """Raised when a caller-supplied callback, pattern or type check fails."""
    kind: ProcessingErrorKind
