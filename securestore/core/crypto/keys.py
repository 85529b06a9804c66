"""
Encryption Keys
===============

Caller-owned 32-byte keys, borrowed for a single operation and never logged
or persisted by the storage layer.

A key is WEAK when any of these hold:
    - every byte is identical
    - the bytes form a strictly sequential run (each byte = previous +/- 1, mod 256)
    - any single byte value occurs more than 8 times

The writer accepts only STRONG keys.
"""

from __future__ import annotations

import secrets
from collections import Counter
from enum import Enum, auto
from typing import Final

from securestore.core.memory.zeroization import secure_zero
from securestore.security import constants


class KeyStrength(Enum):
    STRONG = auto()
    WEAK = auto()
    INVALID_LENGTH = auto()


_MAX_KEY_GENERATION_ATTEMPTS: Final[int] = 16


def _is_sequential(key: bytes, step: int) -> bool:
    return all(key[i] == (key[i - 1] + step) % 256 for i in range(1, len(key)))


def classify_key(key: bytes | bytearray) -> KeyStrength:
    """Classify raw key bytes."""
    if len(key) != constants.KEY_LENGTH_BYTES:
        return KeyStrength.INVALID_LENGTH

    raw = bytes(key)
    if len(set(raw)) == 1:
        return KeyStrength.WEAK
    if _is_sequential(raw, 1) or _is_sequential(raw, -1):
        return KeyStrength.WEAK
    if max(Counter(raw).values()) > constants.MAX_REPEATED_KEY_BYTE:
        return KeyStrength.WEAK

    return KeyStrength.STRONG


def is_weak_encryption_key(key: bytes | bytearray | EncryptionKey) -> bool:
    """True for anything the writer would refuse (weak or wrong length)."""
    return classify_key(bytes(key)) is not KeyStrength.STRONG


class EncryptionKey:
    """
    Mutable holder for 32 bytes of key material.

    The bytes are kept in a bytearray so ``wipe()`` can zero them; the
    representation never shows key material.

    Usage:
        with generate_key() as key:
            storage.write_encrypted("notes.enc", key, data)
        # key bytes are zeroed
    """

    __slots__ = ("_key",)

    def __init__(self, key: bytes | bytearray) -> None:
        if len(key) != constants.KEY_LENGTH_BYTES:
            raise ValueError(f"Key must be exactly {constants.KEY_LENGTH_BYTES} bytes")
        self._key = bytearray(key)

    @property
    def strength(self) -> KeyStrength:
        return classify_key(self._key)

    @property
    def wiped(self) -> bool:
        return not any(self._key)

    def wipe(self) -> None:
        secure_zero(self._key)

    def __bytes__(self) -> bytes:
        return bytes(self._key)

    def __len__(self) -> int:
        return len(self._key)

    def __enter__(self) -> EncryptionKey:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return "EncryptionKey(<redacted>)"

    __str__ = __repr__


def generate_key() -> EncryptionKey:
    """
    Generate a random STRONG key.

    Raises:
        RuntimeError: If the CSPRNG keeps producing weak keys
    """
    for _ in range(_MAX_KEY_GENERATION_ATTEMPTS):
        candidate = bytearray(secrets.token_bytes(constants.KEY_LENGTH_BYTES))
        try:
            if classify_key(candidate) is KeyStrength.STRONG:
                return EncryptionKey(candidate)
        finally:
            secure_zero(candidate)
    raise RuntimeError("Failed to generate a strong key")
