"""
Atomic Encrypted Write
======================

Writes content to an encrypted file so the target either keeps its old
bytes or holds the complete new ciphertext, never anything in between.

Pipeline:
    key check -> size check -> re-validate -> lock -> parent dir (0700)
    -> re-validate -> temp file -> plaintext write -> encrypt to a staging
    sibling -> owner-only permissions on staging -> os.replace -> verify

Security Properties:
- Weak keys refused before any filesystem access
- Plaintext exists only in an owner-only scratch file, deleted on every path
- Cipher failures and permission failures leave the target untouched
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Final, TYPE_CHECKING

from securestore.core.crypto.keys import KeyStrength, classify_key
from securestore.core.errors import (
    QuotaError,
    TempFileError,
    TempFileErrorKind,
    WriteError,
    WriteErrorKind,
)
from securestore.core.file_ops.temp_files import ScopeGuard
from securestore.core.result import Result
from securestore.utils.paths import ensure_private_directory

if TYPE_CHECKING:
    from securestore.core.context import StorageContext
    from securestore.core.crypto.file_cipher import Encryptor
    from securestore.core.crypto.keys import EncryptionKey
    from securestore.core.file_ops.locking import FileLocker
    from securestore.core.file_ops.secure_delete import SecureDeleter
    from securestore.core.file_ops.temp_files import SecureTempFileManager
    from securestore.utils.validators import PathValidator, ValidatedPath


_O_NOFOLLOW: Final[int] = getattr(os, "O_NOFOLLOW", 0)
_O_BINARY: Final[int] = getattr(os, "O_BINARY", 0)
_STAGING_NAME_LIMIT: Final[int] = 100


def write_fully(path: str, content: bytes | bytearray | memoryview) -> None:
    """
    Write ``content`` to an existing file, truncating it first.

    Raises:
        OSError: On open/write failure or a write that makes no progress
    """
    fd = os.open(path, os.O_WRONLY | os.O_TRUNC | _O_NOFOLLOW | _O_BINARY)
    try:
        view = memoryview(content)
        while view:
            written = os.write(fd, view)
            if written <= 0:
                raise OSError("short write")
            view = view[written:]
        os.fsync(fd)
    finally:
        os.close(fd)


def _fsync_directory(directory: str) -> None:
    if os.name == "nt":
        return
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


class AtomicEncryptedWriter:
    """
    Usage:
        writer = AtomicEncryptedWriter(context, validator, locker, temp_files, deleter, cipher)
        result = writer.write_encrypted(target, key, content)
    """

    def __init__(
        self,
        context: StorageContext,
        validator: PathValidator,
        locker: FileLocker,
        temp_files: SecureTempFileManager,
        deleter: SecureDeleter,
        encryptor: Encryptor,
    ) -> None:
        self._context = context
        self._validator = validator
        self._locker = locker
        self._temp_files = temp_files
        self._deleter = deleter
        self._encryptor = encryptor
        self._limits = context.limits
        self._log = logging.getLogger("securestore.writer")

    def _fail(self, kind: WriteErrorKind, message: str, cause: BaseException | None = None) -> Result[None, WriteError]:
        self._log.warning(f"Encrypted write failed ({kind.name}): {message}")
        return Result.failure(WriteError(kind, message, cause=cause))

    def write_encrypted(
        self,
        target: ValidatedPath,
        key: bytes | bytearray | EncryptionKey,
        content: bytes | bytearray | memoryview,
    ) -> Result[None, WriteError]:
        """
        Encrypt ``content`` into ``target`` atomically.

        Args:
            target: Validated destination path
            key: 32-byte STRONG key
            content: Plaintext, at most ``max_content_size`` bytes

        Returns:
            Empty success, or a WriteError (WEAK_KEY, TOO_LARGE, INVALID_PATH,
            LOCKED, QUOTA_EXCEEDED, IO_ERROR, CIPHER_ERROR, PERMISSION_ERROR)
        """
        key_bytes = bytes(key)
        if classify_key(key_bytes) is not KeyStrength.STRONG:
            return self._fail(WriteErrorKind.WEAK_KEY, "encryption key rejected as weak")

        if len(content) > self._limits.max_content_size:
            return self._fail(
                WriteErrorKind.TOO_LARGE,
                f"content of {len(content)} bytes exceeds {self._limits.max_content_size}",
            )

        revalidated = self._validator.revalidate(target)
        if not revalidated.ok:
            return self._fail(WriteErrorKind.INVALID_PATH, "target failed re-validation", revalidated.error)
        target = revalidated.value

        lock_result = self._locker.try_lock(target, timeout=self._limits.lock_timeout_seconds)
        if not lock_result.ok:
            return self._fail(WriteErrorKind.LOCKED, "target is locked", lock_result.error)

        with lock_result.value:
            return self._write_locked(target, key_bytes, content)

    def _write_locked(self, target: ValidatedPath, key: bytes, content: bytes | bytearray | memoryview) -> Result[None, WriteError]:
        os_ops = self._context.os_ops
        parent = target.parent

        try:
            if not ensure_private_directory(parent, self._limits.dir_permissions, os_ops):
                return self._fail(WriteErrorKind.PERMISSION_ERROR, "cannot secure parent directory")
        except OSError as e:
            return self._fail(WriteErrorKind.IO_ERROR, f"cannot create parent directory: {e.strerror}", e)

        revalidated = self._validator.revalidate(target)
        if not revalidated.ok:
            return self._fail(WriteErrorKind.INVALID_PATH, "target changed after directory creation", revalidated.error)
        target = revalidated.value

        temp_result = self._temp_files.create(template_hint=target.name, estimated_bytes=len(content))
        if not temp_result.ok:
            error = temp_result.error
            if isinstance(error, QuotaError):
                return self._fail(WriteErrorKind.QUOTA_EXCEEDED, "no temp space for write", error)
            if isinstance(error, TempFileError) and error.kind is TempFileErrorKind.PERMISSION_ERROR:
                return self._fail(WriteErrorKind.PERMISSION_ERROR, "temp file permissions", error)
            return self._fail(WriteErrorKind.IO_ERROR, "cannot create temp file", error)

        with temp_result.value as temp:
            try:
                write_fully(temp.path.path, content)
            except OSError as e:
                return self._fail(WriteErrorKind.IO_ERROR, f"plaintext write failed: {e}", e)

            staging = os.path.join(
                parent,
                f".{target.name[:_STAGING_NAME_LIMIT]}.{uuid.uuid4().hex}.staging",
            )
            with ScopeGuard(lambda: self._discard(staging)) as staging_guard:
                try:
                    encrypted = self._encryptor.encrypt_file(key, temp.path.path, staging)
                except Exception as e:
                    self._log.error(f"Encryptor raised {type(e).__name__}")
                    return self._fail(WriteErrorKind.CIPHER_ERROR, "encryptor raised an exception", e)

                if not encrypted or not os.path.isfile(staging):
                    return self._fail(WriteErrorKind.CIPHER_ERROR, "encryption failed")

                mode = self._limits.file_permissions
                if not os_ops.set_owner_only(staging, mode) or not os_ops.verify_owner_only(staging, mode):
                    return self._fail(WriteErrorKind.PERMISSION_ERROR, "cannot set owner-only permissions on staging file")

                try:
                    os.replace(staging, target.path)
                except OSError as e:
                    return self._fail(WriteErrorKind.IO_ERROR, f"cannot publish encrypted file: {e.strerror}", e)
                staging_guard.disarm()

            _fsync_directory(parent)

            # The previous version is gone; the new file is left in place
            if not os_ops.verify_owner_only(target.path, self._limits.file_permissions):
                return self._fail(WriteErrorKind.PERMISSION_ERROR, "published file permissions could not be verified")

        self._log.debug(f"Encrypted write completed: {target.relative}")
        return Result.success()

    def _discard(self, staging: str) -> None:
        if os.path.lexists(staging):
            self._deleter.quick_delete(staging)
