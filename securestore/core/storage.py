"""
Secure File Storage
===================

Facade wiring the storage components for one user and offering the
file-level operations applications use: encrypted bytes, text and line
files, in-place transforms, searching, hierarchical directories and
cleanup.

Usage:
    with SecureFileStorage(StorageContext("alice", data_root)) as storage:
        storage.cleanup_all_user_temp_folders()
        storage.write_encrypted_text("alice/Diary/2024/01/15.enc", key, entry).unwrap()
        entry = storage.read_encrypted_text("alice/Diary/2024/01/15.enc", key).unwrap()

All operations accept either raw strings (validated against the data root)
or ValidatedPath objects, and return a Result.
"""

from __future__ import annotations

import logging
import os
import re
from typing import BinaryIO, Callable, Iterable, Optional, Pattern, Sequence, TypeVar, Union

from securestore.core.context import StorageContext
from securestore.core.crypto.file_cipher import AesGcmFileCipher, Decryptor, Encryptor, FileType, TypeValidator
from securestore.core.crypto.keys import EncryptionKey
from securestore.core.errors import (
    PathError,
    PathErrorKind,
    ProcessingError,
    ProcessingErrorKind,
    ReadError,
    ReadErrorKind,
    StorageError,
    WriteError,
    WriteErrorKind,
)
from securestore.core.file_ops.decrypt import AtomicEncryptedReader
from securestore.core.file_ops.encrypt import AtomicEncryptedWriter
from securestore.core.file_ops.locking import FileLocker
from securestore.core.file_ops.quota import TempDirectoryQuotaManager
from securestore.core.file_ops.secure_delete import SecureDeleter
from securestore.core.file_ops.temp_files import SecureTempFileManager
from securestore.core.memory.zeroization import ZeroizeContext
from securestore.core.result import Result
from securestore.utils.paths import ensure_private_directory
from securestore.utils.validators import (
    PathValidator,
    ValidatedPath,
    ValidationError,
    validate_path_component,
)


T = TypeVar("T")
PathLike = Union[str, os.PathLike, ValidatedPath]
KeyLike = Union[bytes, bytearray, EncryptionKey]

# Files whose absence is a valid state (nothing saved yet)
_OPTIONAL_FILE_TYPES = frozenset({FileType.PASSWORD, FileType.TASK_LIST})


class SecureFileStorage:
    """
    Encrypted file storage for one StorageContext.

    Args:
        context: User, data root, limits and shared registries
        encryptor: File encryptor (default: AES-256-GCM file cipher)
        decryptor: File decryptor (default: the same cipher)
        type_validator: Optional content check used by validate_file_path
        allow_long_paths: Apply the extended-length escape to long paths
    """

    def __init__(
        self,
        context: StorageContext,
        encryptor: Optional[Encryptor] = None,
        decryptor: Optional[Decryptor] = None,
        type_validator: Optional[TypeValidator] = None,
        allow_long_paths: bool = True,
    ) -> None:
        limits = context.limits
        default_cipher = None
        if encryptor is None or decryptor is None:
            default_cipher = AesGcmFileCipher(
                max_plaintext_size=limits.max_content_size,
                max_ciphertext_size=limits.max_ciphertext_size,
                file_permissions=limits.file_permissions,
            )

        self._context = context
        self._type_validator = type_validator
        self._validator = PathValidator(context.os_ops, allow_long_paths=allow_long_paths)
        self._locker = FileLocker(context.lock_registry)
        self._deleter = SecureDeleter(context)
        self._quota = TempDirectoryQuotaManager(context, self._deleter)
        self._temp_files = SecureTempFileManager(context, self._validator, self._quota, self._deleter)
        self._writer = AtomicEncryptedWriter(
            context,
            self._validator,
            self._locker,
            self._temp_files,
            self._deleter,
            encryptor or default_cipher,
        )
        self._reader = AtomicEncryptedReader(
            context,
            self._validator,
            self._locker,
            self._quota,
            self._temp_files,
            decryptor or default_cipher,
        )
        self._log = logging.getLogger("securestore.storage")

    @property
    def context(self) -> StorageContext:
        return self._context

    @property
    def validator(self) -> PathValidator:
        return self._validator

    @property
    def locker(self) -> FileLocker:
        return self._locker

    @property
    def deleter(self) -> SecureDeleter:
        return self._deleter

    @property
    def quota(self) -> TempDirectoryQuotaManager:
        return self._quota

    @property
    def temp_files(self) -> SecureTempFileManager:
        return self._temp_files

    # Validation

    def validate(self, raw_path: PathLike) -> Result[ValidatedPath, PathError]:
        """Validate a path against the data root."""
        if isinstance(raw_path, ValidatedPath):
            return self._validator.revalidate(raw_path)
        return self._validator.validate(raw_path, self._context.data_root)

    def validate_file_path(self, path: PathLike, file_type: FileType = FileType.GENERIC) -> Result[ValidatedPath, StorageError]:
        """
        Validate a path and, if a TypeValidator is configured, its content.

        A missing PASSWORD or TASK_LIST file is accepted (nothing saved yet);
        any other missing file is NOT_FOUND.
        """
        validated = self.validate(path)
        if not validated.ok:
            return Result.failure(validated.error)
        target = validated.value

        if not os.path.isfile(target.path):
            if file_type in _OPTIONAL_FILE_TYPES:
                return Result.success(target)
            return Result.failure(ReadError(ReadErrorKind.NOT_FOUND, f"no such file: {target.relative}"))

        if self._type_validator is None:
            return Result.success(target)

        try:
            valid = self._type_validator.validate(target.path, file_type)
        except Exception as e:
            self._log.error(f"Type validator raised {type(e).__name__} for {target.relative}")
            return Result.failure(ProcessingError(ProcessingErrorKind.CALLBACK_FAILED, "type validator raised", cause=e))

        if not valid:
            self._log.warning(f"File content does not match type {file_type.name}: {target.relative}")
            return Result.failure(ProcessingError(ProcessingErrorKind.TYPE_MISMATCH, f"not a valid {file_type.name} file"))
        return Result.success(target)

    # Encrypted bytes

    def write_encrypted(self, path: PathLike, key: KeyLike, content: bytes | bytearray | memoryview) -> Result[None, WriteError]:
        validated = self.validate(path)
        if not validated.ok:
            return Result.failure(WriteError(WriteErrorKind.INVALID_PATH, "invalid target path", cause=validated.error))
        return self._writer.write_encrypted(validated.value, key, content)

    def read_encrypted(self, path: PathLike, key: KeyLike) -> Result[bytes, ReadError]:
        validated = self.validate(path)
        if not validated.ok:
            return Result.failure(ReadError(ReadErrorKind.INVALID_PATH, "invalid source path", cause=validated.error))
        return self._reader.read_encrypted(validated.value, key)

    def decrypt_to_temp_and_process(
        self,
        path: PathLike,
        key: KeyLike,
        processor: Callable[[BinaryIO], T],
    ) -> Result[T, ReadError]:
        """
        Decrypt to an owner-only scratch file and pass ``processor`` an open,
        read-only binary handle. The scratch file is always deleted.
        """
        validated = self.validate(path)
        if not validated.ok:
            return Result.failure(ReadError(ReadErrorKind.INVALID_PATH, "invalid source path", cause=validated.error))
        return self._reader.decrypt_to_temp_and_process(validated.value, key, processor)

    # Encrypted text

    def write_encrypted_text(self, path: PathLike, key: KeyLike, text: str, encoding: str = "utf-8") -> Result[None, WriteError]:
        buffer = bytearray(text.encode(encoding))
        with ZeroizeContext(buffer):
            return self.write_encrypted(path, key, buffer)

    def read_encrypted_text(self, path: PathLike, key: KeyLike, encoding: str = "utf-8") -> Result[str, ReadError]:
        result = self.read_encrypted(path, key)
        if not result.ok:
            return Result.failure(result.error)
        buffer = bytearray(result.value)
        with ZeroizeContext(buffer):
            try:
                return Result.success(buffer.decode(encoding))
            except UnicodeDecodeError as e:
                self._log.warning(f"Decrypted content is not valid {encoding}")
                return Result.failure(ReadError(ReadErrorKind.IO_ERROR, f"content is not valid {encoding}", cause=e))

    def write_encrypted_lines(self, path: PathLike, key: KeyLike, lines: Iterable[str]) -> Result[None, WriteError]:
        """Write lines joined by newlines; lines must not contain newlines themselves."""
        return self.write_encrypted_text(path, key, "\n".join(lines))

    def read_encrypted_lines(self, path: PathLike, key: KeyLike) -> Result[list[str], ReadError]:
        result = self.read_encrypted_text(path, key)
        if not result.ok:
            return Result.failure(result.error)
        if not result.value:
            return Result.success([])
        return Result.success(result.value.split("\n"))

    def process_encrypted_file(
        self,
        path: PathLike,
        key: KeyLike,
        transform: Callable[[str], Optional[str] | bool],
    ) -> Result[None, StorageError]:
        """
        Read, transform and write back an encrypted text file.

        ``transform`` receives the decrypted text and returns the new text.
        Returning None or False aborts (ABORTED); raising aborts
        (CALLBACK_FAILED). The file is only rewritten on success.
        """
        validated = self.validate(path)
        if not validated.ok:
            return Result.failure(validated.error)
        target = validated.value

        content = self.read_encrypted_text(target, key)
        if not content.ok:
            return Result.failure(content.error)

        try:
            updated = transform(content.value)
        except Exception as e:
            self._log.error(f"Content transform raised {type(e).__name__} for {target.relative}")
            return Result.failure(ProcessingError(ProcessingErrorKind.CALLBACK_FAILED, "content transform raised", cause=e))

        if not isinstance(updated, str):
            self._log.info(f"Content transform aborted for {target.relative}")
            return Result.failure(ProcessingError(ProcessingErrorKind.ABORTED, "content transform aborted"))

        written = self.write_encrypted_text(target, key, updated)
        if not written.ok:
            return Result.failure(written.error)
        return Result.success()

    def search_encrypted_file(self, path: PathLike, key: KeyLike, pattern: str | Pattern[str]) -> Result[list[str], StorageError]:
        """Return every match of ``pattern`` in the decrypted text, in order."""
        try:
            compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        except re.error as e:
            return Result.failure(ProcessingError(ProcessingErrorKind.INVALID_PATTERN, f"invalid search pattern: {e}", cause=e))

        content = self.read_encrypted_text(path, key)
        if not content.ok:
            return Result.failure(content.error)
        return Result.success([match.group(0) for match in compiled.finditer(content.value)])

    # Directories

    def ensure_directory(self, path: PathLike) -> Result[ValidatedPath, StorageError]:
        """Create a directory (and missing parents) owner-only, then re-validate it."""
        validated = self.validate(path)
        if not validated.ok:
            return Result.failure(validated.error)
        directory = validated.value

        try:
            if not ensure_private_directory(directory.path, self._context.limits.dir_permissions, self._context.os_ops):
                self._log.warning(f"Directory permissions could not be secured: {directory.relative}")
                return Result.failure(WriteError(WriteErrorKind.PERMISSION_ERROR, "cannot secure directory"))
        except OSError as e:
            self._log.error(f"Cannot create directory {directory.relative}: {e.strerror}")
            return Result.failure(WriteError(WriteErrorKind.IO_ERROR, "cannot create directory", cause=e))

        revalidated = self._validator.revalidate(directory)
        if not revalidated.ok:
            return Result.failure(revalidated.error)
        return Result.success(revalidated.value)

    def create_hierarchical_directory(self, components: Sequence[str], base: Optional[PathLike] = None) -> Result[ValidatedPath, StorageError]:
        """
        Create ``base/<c1>/<c2>/...`` (e.g. Diary/2024/01), each level owner-only.

        Args:
            components: Directory names, each a single safe component
            base: Starting directory (default: the user's directory)
        """
        if not components:
            return Result.failure(PathError(PathErrorKind.MALFORMED, "no directory components given"))
        try:
            for component in components:
                validate_path_component(component, field_name="directory level")
        except ValidationError as e:
            self._log.warning(f"Rejected hierarchy component: {e}")
            return Result.failure(PathError(PathErrorKind.MALFORMED, str(e), cause=e))

        base_result = self._resolve_base(base)
        if not base_result.ok:
            return Result.failure(base_result.error)

        return self.ensure_directory(os.path.join(base_result.value, *components))

    def delete_file_and_clean_empty_dirs(
        self,
        path: PathLike,
        hierarchy_levels: Sequence[str] = (),
        base: Optional[PathLike] = None,
    ) -> Result[bool, StorageError]:
        """
        Delete a file, then remove the now-empty hierarchy directories
        (``base/<level1>/<level2>/...``) deepest first, stopping at the first
        one that still has entries.

        Returns:
            Result holding True if the file was removed, False if its
            deletion was deferred to the retry queue
        """
        validated = self.validate(path)
        if not validated.ok:
            return Result.failure(validated.error)
        target = validated.value

        if not os.path.isfile(target.path):
            return Result.failure(ReadError(ReadErrorKind.NOT_FOUND, f"no such file: {target.relative}"))

        try:
            for level in hierarchy_levels:
                validate_path_component(level, field_name="hierarchy level")
        except ValidationError as e:
            return Result.failure(PathError(PathErrorKind.MALFORMED, str(e), cause=e))

        base_result = self._resolve_base(base)
        if not base_result.ok:
            return Result.failure(base_result.error)

        deleted = self._deleter.quick_delete(target.path)
        if not deleted:
            self._log.warning(f"Deletion of {target.relative} deferred; directories kept")
            return Result.success(False)

        levels = [os.path.join(base_result.value, *hierarchy_levels[:depth]) for depth in range(1, len(hierarchy_levels) + 1)]
        for directory in reversed(levels):
            if not os.path.isdir(directory) or os.path.islink(directory):
                continue
            try:
                with os.scandir(directory) as entries:
                    if any(entries):
                        break
                os.rmdir(directory)
                self._log.debug(f"Removed empty directory {directory}")
            except OSError as e:
                self._log.warning(f"Cannot remove directory {directory}: {e.strerror}")
                break

        return Result.success(True)

    def _resolve_base(self, base: Optional[PathLike]) -> Result[str, PathError]:
        if base is None:
            # The user directory itself; it sits directly below the data root
            user_dir = self.validate(self._context.user)
            if not user_dir.ok:
                return Result.failure(user_dir.error)
            return Result.success(user_dir.value.path)
        validated = self.validate(base)
        if not validated.ok:
            return Result.failure(validated.error)
        return Result.success(validated.value.path)

    # Cleanup

    def cleanup_all_user_temp_folders(self) -> int:
        """Startup sweep of every user's Temp directory."""
        return self._temp_files.cleanup_all_user_temp_folders()

    def process_pending_deletions(self) -> int:
        return self._deleter.process_pending_deletions()

    def shutdown(self) -> None:
        self._context.shutdown()

    def __enter__(self) -> SecureFileStorage:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        return f"SecureFileStorage({self._context!r})"
