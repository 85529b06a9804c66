"""
AES-256-GCM Primitive
=====================

Bytes-in, bytes-out AEAD used by ``AesGcmFileCipher``. Keys are passed in
per call and never kept on the object.

Parameters:
    - 32-byte key, 12-byte random nonce, 16-byte tag appended to ciphertext
    - Optional associated data (the file header) bound into the tag

A (key, nonce) pair must never repeat; nonces come from ``secrets`` and are
fresh for every call to ``encrypt``.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Final, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

AES_KEY_SIZE: Final[int] = 32
AES_NONCE_SIZE: Final[int] = 12
AES_TAG_SIZE: Final[int] = 16


@dataclass(frozen=True, slots=True)
class AesGcmResult:
    """Ciphertext (tag appended) and the nonce it was sealed with."""

    ciphertext: bytes
    nonce: bytes

    def __repr__(self) -> str:
        return f"AesGcmResult(ciphertext_len={len(self.ciphertext)}, nonce_len={len(self.nonce)})"


def _check_key(key: bytes) -> None:
    if len(key) != AES_KEY_SIZE:
        raise ValueError(f"Key must be exactly {AES_KEY_SIZE} bytes")


class AesGcmCipher:
    """
    Usage:
        cipher = AesGcmCipher()
        sealed = cipher.encrypt(plaintext, key, aad=header)
        plaintext = cipher.decrypt(sealed.ciphertext, sealed.nonce, key, aad=header)
    """

    __slots__ = ()

    @staticmethod
    def generate_nonce() -> bytes:
        return secrets.token_bytes(AES_NONCE_SIZE)

    def encrypt(self, plaintext: bytes, key: bytes, aad: Optional[bytes] = None) -> AesGcmResult:
        """
        Seal ``plaintext`` (may be empty) under ``key``.

        Raises:
            ValueError: If the key is not 32 bytes
        """
        _check_key(key)
        nonce = self.generate_nonce()
        return AesGcmResult(ciphertext=AESGCM(bytes(key)).encrypt(nonce, plaintext, aad), nonce=nonce)

    def decrypt(self, ciphertext: bytes, nonce: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
        """
        Open a sealed message; the tag is checked before anything is returned.

        Raises:
            ValueError: On a bad key, nonce or ciphertext length
            cryptography.exceptions.InvalidTag: Wrong key, wrong AAD or tampering
        """
        _check_key(key)
        if len(nonce) != AES_NONCE_SIZE:
            raise ValueError(f"Nonce must be exactly {AES_NONCE_SIZE} bytes")
        if len(ciphertext) < AES_TAG_SIZE:
            raise ValueError("Ciphertext too short (missing authentication tag)")
        return AESGCM(bytes(key)).decrypt(nonce, ciphertext, aad)
