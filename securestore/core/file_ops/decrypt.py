"""
Atomic Encrypted Read
=====================

Decrypts a file through an owner-only scratch copy and returns the
plaintext, deleting the scratch copy on every path.

Pipeline:
    exists -> re-validate -> ciphertext size -> lock -> quota (1.1 x size)
    -> temp file -> decrypt -> bounded read -> size re-check
"""

from __future__ import annotations

import logging
import os
from typing import BinaryIO, Callable, Final, TypeVar, TYPE_CHECKING

from securestore.core.errors import QuotaError, ReadError, ReadErrorKind
from securestore.core.memory.zeroization import secure_zero
from securestore.core.result import Result

if TYPE_CHECKING:
    from securestore.core.context import StorageContext
    from securestore.core.crypto.file_cipher import Decryptor
    from securestore.core.crypto.keys import EncryptionKey
    from securestore.core.file_ops.locking import FileLocker
    from securestore.core.file_ops.quota import TempDirectoryQuotaManager
    from securestore.core.file_ops.temp_files import SecureTempFileManager
    from securestore.utils.validators import PathValidator, ValidatedPath


T = TypeVar("T")

_READ_CHUNK: Final[int] = 64 * 1024


class _ContentTooLarge(Exception):
    pass


class AtomicEncryptedReader:
    """
    Usage:
        reader = AtomicEncryptedReader(context, validator, locker, quota, temp_files, cipher)
        result = reader.read_encrypted(source, key)
    """

    def __init__(
        self,
        context: StorageContext,
        validator: PathValidator,
        locker: FileLocker,
        quota: TempDirectoryQuotaManager,
        temp_files: SecureTempFileManager,
        decryptor: Decryptor,
    ) -> None:
        self._context = context
        self._validator = validator
        self._locker = locker
        self._quota = quota
        self._temp_files = temp_files
        self._decryptor = decryptor
        self._limits = context.limits
        self._log = logging.getLogger("securestore.reader")

    def _fail(self, kind: ReadErrorKind, message: str, cause: BaseException | None = None) -> Result[T, ReadError]:
        if kind is ReadErrorKind.NOT_FOUND:
            self._log.debug(f"Encrypted read: {message}")
        else:
            self._log.warning(f"Encrypted read failed ({kind.name}): {message}")
        return Result.failure(ReadError(kind, message, cause=cause))

    def read_encrypted(self, source: ValidatedPath, key: bytes | bytearray | EncryptionKey) -> Result[bytes, ReadError]:
        """
        Decrypt ``source`` and return its plaintext.

        Returns:
            Result holding the plaintext, or a ReadError (NOT_FOUND,
            INVALID_PATH, CONTENT_TOO_LARGE, LOCKED, QUOTA_EXCEEDED,
            CIPHER_ERROR, IO_ERROR)
        """
        return self._with_decrypted_temp(source, key, self._read_bounded)

    def decrypt_to_temp_and_process(
        self,
        source: ValidatedPath,
        key: bytes | bytearray | EncryptionKey,
        processor: Callable[[BinaryIO], T],
    ) -> Result[T, ReadError]:
        """
        Decrypt ``source`` to a scratch file and hand ``processor`` a
        read-only binary handle on it.

        The scratch file is deleted when ``processor`` returns or raises.
        An exception from ``processor`` is returned as IO_ERROR with the
        exception as cause.
        """
        def consume(path: str) -> T:
            with open(path, "rb") as f:
                return processor(f)

        return self._with_decrypted_temp(source, key, consume, wrap_errors=True)

    def _with_decrypted_temp(
        self,
        source: ValidatedPath,
        key: bytes | bytearray | EncryptionKey,
        consumer: Callable[[str], T],
        wrap_errors: bool = False,
    ) -> Result[T, ReadError]:
        if not os.path.isfile(source.path):
            return self._fail(ReadErrorKind.NOT_FOUND, f"no such file: {source.relative}")

        revalidated = self._validator.revalidate(source)
        if not revalidated.ok:
            return self._fail(ReadErrorKind.INVALID_PATH, "source failed re-validation", revalidated.error)
        source = revalidated.value

        try:
            encrypted_size = os.path.getsize(source.path)
        except FileNotFoundError as e:
            return self._fail(ReadErrorKind.NOT_FOUND, f"no such file: {source.relative}", e)
        except OSError as e:
            return self._fail(ReadErrorKind.IO_ERROR, f"cannot stat source: {e.strerror}", e)

        if encrypted_size > self._limits.max_ciphertext_size:
            return self._fail(
                ReadErrorKind.CONTENT_TOO_LARGE,
                f"encrypted file of {encrypted_size} bytes exceeds {self._limits.max_ciphertext_size}",
            )

        lock_result = self._locker.try_lock(source, timeout=self._limits.lock_timeout_seconds)
        if not lock_result.ok:
            return self._fail(ReadErrorKind.LOCKED, "source is locked", lock_result.error)

        with lock_result.value:
            quota = self._quota.can_decrypt_to_temp(source)
            if not quota.ok:
                return self._fail(ReadErrorKind.QUOTA_EXCEEDED, "no temp space for decryption", quota.error)

            temp_result = self._temp_files.create(template_hint=source.name, quota_checked=True)
            if not temp_result.ok:
                if isinstance(temp_result.error, QuotaError):
                    return self._fail(ReadErrorKind.QUOTA_EXCEEDED, "no temp space for decryption", temp_result.error)
                return self._fail(ReadErrorKind.IO_ERROR, "cannot create temp file", temp_result.error)

            with temp_result.value as temp:
                try:
                    decrypted = self._decryptor.decrypt_file(bytes(key), source.path, temp.path.path)
                except Exception as e:
                    self._log.error(f"Decryptor raised {type(e).__name__}")
                    return self._fail(ReadErrorKind.CIPHER_ERROR, "decryptor raised an exception", e)
                if not decrypted:
                    return self._fail(ReadErrorKind.CIPHER_ERROR, "decryption failed")

                try:
                    value = consumer(temp.path.path)
                except _ContentTooLarge:
                    return self._fail(
                        ReadErrorKind.CONTENT_TOO_LARGE,
                        f"decrypted content exceeds {self._limits.max_content_size} bytes",
                    )
                except OSError as e:
                    return self._fail(ReadErrorKind.IO_ERROR, f"cannot read decrypted content: {e}", e)
                except Exception as e:
                    if not wrap_errors:
                        raise
                    self._log.error(f"Decrypted-file processor raised {type(e).__name__}")
                    return self._fail(ReadErrorKind.IO_ERROR, "processor raised an exception", e)

        return Result.success(value)

    def _read_bounded(self, path: str) -> bytes:
        """Read at most max_content_size + 1 bytes; oversize buffers are wiped."""
        limit = self._limits.max_content_size
        buffer = bytearray()
        with open(path, "rb") as f:
            while len(buffer) <= limit:
                chunk = f.read(min(_READ_CHUNK, limit + 1 - len(buffer)))
                if not chunk:
                    break
                buffer += chunk

        try:
            if len(buffer) > limit:
                raise _ContentTooLarge()
            return bytes(buffer)
        finally:
            secure_zero(buffer)
