"""
Operation Results
=================

Expected failures (weak key, quota, cipher failure, ...) are returned as
values rather than raised, so callers handle them explicitly.

Usage:
    result = storage.read_encrypted("diary/2024.enc", key)
    if result.ok:
        process(result.value)
    elif result.error.kind is ReadErrorKind.NOT_FOUND:
        start_fresh()

    # Or, where an exception is the right tool:
    data = storage.read_encrypted("diary/2024.enc", key).unwrap()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from securestore.core.errors import StorageError

T = TypeVar("T")
E = TypeVar("E", bound=StorageError)


@dataclass(frozen=True, slots=True)
class Result(Generic[T, E]):
    """
    Immutable outcome of a storage operation.

    Exactly one of ``value`` / ``error`` is meaningful: ``error`` is None on
    success.
    """

    value: Optional[T] = None
    error: Optional[E] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> Result[T, E]:
        return cls(value=value, error=None)

    @classmethod
    def failure(cls, error: E) -> Result[T, E]:
        if error is None:
            raise ValueError("failure() requires an error")
        return cls(value=None, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def __bool__(self) -> bool:
        return self.ok

    def __repr__(self) -> str:
        # Never show the value: it may be decrypted plaintext.
        if self.error is None:
            return "Result(ok)"
        return f"Result(error={self.error!r})"
