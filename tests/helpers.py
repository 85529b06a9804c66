"""Test doubles and filesystem helpers shared by the test modules."""

from __future__ import annotations

import os

import pytest

from securestore.core.context import StorageContext
from securestore.core.crypto.file_cipher import AesGcmFileCipher
from securestore.core.file_ops.os_ops import PosixFileOps


posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX permission semantics")


class FakeOsFileOps(PosixFileOps):
    """PosixFileOps with controllable disk space and injectable failures."""

    def __init__(self, free_space: int = 10**12) -> None:
        super().__init__()
        self.free_space = free_space
        self.fail_remove: set[str] = set()
        self.fail_remove_under: str | None = None
        self.fail_verify_suffix: str | None = None
        self.fail_verify_paths: set[str] = set()
        self.delete_on_close_result = False
        self.delete_on_close_calls: list[str] = []

    def remove(self, path: str) -> None:
        if path in self.fail_remove or (self.fail_remove_under and path.startswith(self.fail_remove_under)):
            raise PermissionError(13, "Permission denied", path)
        super().remove(path)

    def mark_delete_on_close(self, path: str) -> bool:
        self.delete_on_close_calls.append(path)
        if self.delete_on_close_result:
            super().remove(path)
            return True
        return False

    def verify_owner_only(self, path: str, mode: int) -> bool:
        if path in self.fail_verify_paths:
            return False
        if self.fail_verify_suffix and path.endswith(self.fail_verify_suffix):
            return False
        return super().verify_owner_only(path, mode)

    def available_disk_space(self, path: str) -> int:
        return self.free_space


class FailingEncryptor:
    """Writes partial garbage to the destination, then reports failure."""

    def __init__(self) -> None:
        self.calls = 0

    def encrypt_file(self, key: bytes, source_plaintext_path: str, dest_path: str) -> bool:
        self.calls += 1
        with open(dest_path, "wb") as f:
            f.write(b"partial")
        return False


class RaisingCipher:
    def encrypt_file(self, key: bytes, source_plaintext_path: str, dest_path: str) -> bool:
        raise RuntimeError("cipher backend crashed")

    def decrypt_file(self, key: bytes, source_path: str, dest_plaintext_path: str) -> bool:
        raise RuntimeError("cipher backend crashed")


class RecordingCipher(AesGcmFileCipher):
    """Real cipher that remembers which scratch files it was handed."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.seen_plaintext_paths: list[str] = []

    def encrypt_file(self, key: bytes, source_plaintext_path: str, dest_path: str) -> bool:
        self.seen_plaintext_paths.append(source_plaintext_path)
        return super().encrypt_file(key, source_plaintext_path, dest_path)

    def decrypt_file(self, key: bytes, source_path: str, dest_plaintext_path: str) -> bool:
        self.seen_plaintext_paths.append(dest_plaintext_path)
        return super().decrypt_file(key, source_path, dest_plaintext_path)


class OversizeDecryptor:
    """Ignores the source and writes ``size`` bytes of plaintext."""

    def __init__(self, size: int) -> None:
        self.size = size

    def decrypt_file(self, key: bytes, source_path: str, dest_plaintext_path: str) -> bool:
        with open(dest_plaintext_path, "wb") as f:
            f.write(b"A" * self.size)
        return True


def fill_temp(context: StorageContext, count: int, size: int, prefix: str = "filler") -> list[str]:
    """Create ``count`` files of ``size`` bytes in the context's temp dir, oldest first."""
    os.makedirs(context.temp_dir, mode=0o700, exist_ok=True)
    paths = []
    for i in range(count):
        path = os.path.join(context.temp_dir, f"{prefix}_{i}.tmp")
        with open(path, "wb") as f:
            f.write(b"x" * size)
        os.utime(path, (1_000_000 + i, 1_000_000 + i))
        paths.append(path)
    return paths


def temp_files_left(context: StorageContext) -> list[str]:
    if not os.path.isdir(context.temp_dir):
        return []
    return sorted(os.listdir(context.temp_dir))
