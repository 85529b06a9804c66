"""
File Cipher Boundary
====================

The storage core never encrypts anything itself: it hands files to an
``Encryptor`` / ``Decryptor`` and only looks at the boolean outcome. This
module defines those protocols and ships one implementation,
``AesGcmFileCipher``.

File Format:
    MAGIC(4) = b"SSEF" | VERSION(2, little-endian) | NONCE(12) | CIPHERTEXT+TAG

    The 6-byte header is passed as AAD, so changing magic or version breaks
    authentication.

Contract:
    - Destination is all-or-nothing (sibling staging file + os.replace)
    - Failures return False; no exception escapes
"""

from __future__ import annotations

import logging
import os
import secrets
import struct
from enum import Enum, auto
from typing import Final, Protocol, runtime_checkable

from cryptography.exceptions import InvalidTag

from securestore.core.crypto.aes_gcm import AES_NONCE_SIZE, AES_TAG_SIZE, AesGcmCipher
from securestore.security import constants


MAGIC_BYTES: Final[bytes] = b"SSEF"  # SecureStore Encrypted File
FILE_FORMAT_VERSION: Final[int] = 1
_HEADER: Final[struct.Struct] = struct.Struct("<4sH")
HEADER_SIZE: Final[int] = _HEADER.size
MIN_FILE_SIZE: Final[int] = HEADER_SIZE + AES_NONCE_SIZE + AES_TAG_SIZE

_O_NOFOLLOW: Final[int] = getattr(os, "O_NOFOLLOW", 0)
_O_BINARY: Final[int] = getattr(os, "O_BINARY", 0)


class FileType(Enum):
    """Kinds of user file a TypeValidator can check."""
    GENERIC = auto()
    DIARY = auto()
    PASSWORD = auto()
    TASK_LIST = auto()


@runtime_checkable
class Encryptor(Protocol):
    def encrypt_file(self, key: bytes, source_plaintext_path: str, dest_path: str) -> bool:
        """Encrypt a plaintext file; ``dest_path`` is written all-or-nothing."""
        ...


@runtime_checkable
class Decryptor(Protocol):
    def decrypt_file(self, key: bytes, source_path: str, dest_plaintext_path: str) -> bool:
        ...


@runtime_checkable
class TypeValidator(Protocol):
    def validate(self, path: str, file_type: FileType) -> bool:
        """Check that the file at ``path`` holds content of ``file_type``."""
        ...


def _pack_header(version: int = FILE_FORMAT_VERSION) -> bytes:
    return _HEADER.pack(MAGIC_BYTES, version)


class AesGcmFileCipher:
    """
    AES-256-GCM implementation of Encryptor and Decryptor.

    Usage:
        cipher = AesGcmFileCipher()
        if not cipher.encrypt_file(key, "plain.tmp", "notes.enc"):
            handle_failure()
    """

    __slots__ = ("_cipher", "_max_plaintext", "_max_ciphertext", "_file_mode", "_log")

    def __init__(
        self,
        max_plaintext_size: int = constants.MAX_CONTENT_SIZE,
        max_ciphertext_size: int = constants.MAX_ENCRYPTED_FILE_SIZE + constants.CIPHERTEXT_OVERHEAD_ALLOWANCE,
        file_permissions: int = constants.DEFAULT_FILE_PERMISSIONS,
    ) -> None:
        """
        Args:
            max_plaintext_size: Largest plaintext accepted for encryption
            max_ciphertext_size: Largest encrypted file accepted for decryption
            file_permissions: Mode of the files this cipher creates
        """
        self._cipher = AesGcmCipher()
        self._max_plaintext = max_plaintext_size
        self._max_ciphertext = max_ciphertext_size
        self._file_mode = file_permissions
        self._log = logging.getLogger("securestore.crypto")

    def encrypt_file(self, key: bytes, source_plaintext_path: str, dest_path: str) -> bool:
        try:
            plaintext = self._read_limited(source_plaintext_path, self._max_plaintext)
            if plaintext is None:
                self._log.warning("Refusing to encrypt: source exceeds maximum size")
                return False

            header = _pack_header()
            result = self._cipher.encrypt(plaintext, bytes(key), aad=header)
            self._write_atomic(dest_path, header + result.nonce + result.ciphertext)
            return True
        except (OSError, ValueError, TypeError) as e:
            self._log.error(f"Encryption failed: {type(e).__name__}: {e}")
            return False

    def decrypt_file(self, key: bytes, source_path: str, dest_plaintext_path: str) -> bool:
        try:
            data = self._read_limited(source_path, self._max_ciphertext)
            if data is None:
                self._log.warning("Refusing to decrypt: file exceeds maximum size")
                return False
            if len(data) < MIN_FILE_SIZE:
                self._log.warning("Refusing to decrypt: file too short")
                return False

            magic, version = _HEADER.unpack_from(data)
            if magic != MAGIC_BYTES:
                self._log.warning("Refusing to decrypt: bad magic bytes")
                return False
            if version != FILE_FORMAT_VERSION:
                self._log.warning(f"Refusing to decrypt: unsupported format version {version}")
                return False

            nonce = data[HEADER_SIZE:HEADER_SIZE + AES_NONCE_SIZE]
            ciphertext = data[HEADER_SIZE + AES_NONCE_SIZE:]
            plaintext = self._cipher.decrypt(ciphertext, nonce, bytes(key), aad=data[:HEADER_SIZE])

            self._write_atomic(dest_plaintext_path, plaintext)
            return True
        except InvalidTag:
            self._log.warning("Decryption failed: authentication tag mismatch (wrong key or tampered file)")
            return False
        except (OSError, ValueError, TypeError, struct.error) as e:
            self._log.error(f"Decryption failed: {type(e).__name__}: {e}")
            return False

    @staticmethod
    def _read_limited(path: str, limit: int) -> bytes | None:
        """File contents, or None if the file is larger than ``limit``."""
        with open(path, "rb") as f:
            data = f.read(limit + 1)
        if len(data) > limit:
            return None
        return data

    def _write_atomic(self, dest: str, data: bytes) -> None:
        directory = os.path.dirname(os.path.abspath(dest))
        staging = os.path.join(directory, f".{os.path.basename(dest)[:64]}.{secrets.token_hex(6)}.part")

        fd = os.open(staging, os.O_WRONLY | os.O_CREAT | os.O_EXCL | _O_NOFOLLOW | _O_BINARY, self._file_mode)
        try:
            try:
                view = memoryview(data)
                while view:
                    written = os.write(fd, view)
                    view = view[written:]
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(staging, dest)
        except BaseException:
            try:
                os.unlink(staging)
            except FileNotFoundError:
                pass
            raise
