"""
SecureStore File Operations Module
==================================

Security Features:
- Advisory per-path locking
- Quota-checked, owner-only scratch files
- Atomic encrypt-then-publish writes with full rollback
- Overwrite-before-delete with deferred retry for held files

Components:
- os_ops.py: Platform filesystem primitives
- locking.py: FileLocker and LockRegistry
- secure_delete.py: SecureDeleter and the retry CleanupQueue
- quota.py: Temp directory quota and disk-space floor
- temp_files.py: Secure scratch files and ScopeGuard
- encrypt.py / decrypt.py: Atomic encrypted write and read
"""

from securestore.core.file_ops.os_ops import (
    OsFileOps,
    PosixFileOps,
    WindowsFileOps,
    default_os_ops,
)
from securestore.core.file_ops.locking import FileLock, FileLocker, LockRegistry
from securestore.core.file_ops.secure_delete import CleanupQueue, PendingDeletion, SecureDeleter
from securestore.core.file_ops.quota import QuotaState, TempDirectoryQuotaManager
from securestore.core.file_ops.temp_files import ScopeGuard, SecureTempFileManager, TempFileHandle
from securestore.core.file_ops.encrypt import AtomicEncryptedWriter
from securestore.core.file_ops.decrypt import AtomicEncryptedReader

__all__ = [
    "OsFileOps",
    "PosixFileOps",
    "WindowsFileOps",
    "default_os_ops",
    "FileLock",
    "FileLocker",
    "LockRegistry",
    "CleanupQueue",
    "PendingDeletion",
    "SecureDeleter",
    "QuotaState",
    "TempDirectoryQuotaManager",
    "ScopeGuard",
    "SecureTempFileManager",
    "TempFileHandle",
    "AtomicEncryptedWriter",
    "AtomicEncryptedReader",
]
