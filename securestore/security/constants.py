"""
Storage Security Constants
==========================

Fixed policy values for the encrypted storage layer.
These values are part of the on-disk and resource contract and should not be
modified without careful security review.
"""

from typing import Final

# Content limits
MAX_CONTENT_SIZE: Final[int] = 50 * 1024 * 1024  # 50 MB plaintext
MAX_ENCRYPTED_FILE_SIZE: Final[int] = 50 * 1024 * 1024  # 50 MB ciphertext
CIPHERTEXT_OVERHEAD_ALLOWANCE: Final[int] = 1024  # Header, nonce and tag on top of the content

# Temp directory resource limits
MAX_TEMP_DIRECTORY_SIZE: Final[int] = 20 * 1024 * 1024 * 1024  # 20 GB
TEMP_CLEANUP_THRESHOLD: Final[int] = 16 * 1024 * 1024 * 1024  # 80% of max
MIN_DISK_SPACE_REQUIRED: Final[int] = 1 * 1024 * 1024 * 1024  # 1 GB floor

# Default permissions (owner only)
DEFAULT_FILE_PERMISSIONS: Final[int] = 0o600
DEFAULT_DIR_PERMISSIONS: Final[int] = 0o700

# Encryption key requirements
KEY_LENGTH_BYTES: Final[int] = 32  # 256 bits
MAX_REPEATED_KEY_BYTE: Final[int] = 8  # More repeats than this = weak key

# Path limits
WINDOWS_SHORT_PATH_LIMIT: Final[int] = 260
POSIX_PATH_LIMIT: Final[int] = 4096
ABSOLUTE_PATH_CEILING: Final[int] = 32767

# Layout
TEMP_DIRECTORY_NAME: Final[str] = "Temp"

# Deletion policy
SECURE_DELETE_MIN_SIZE: Final[int] = 4096  # Below this, a single pass
DEFAULT_SECURE_DELETE_PASSES: Final[int] = 2
MAX_OVERWRITE_PASSES: Final[int] = 3

# Locking
DEFAULT_LOCK_TIMEOUT_SECONDS: Final[float] = 5.0

# Decrypted size estimate relative to ciphertext
DECRYPT_SIZE_FACTOR: Final[float] = 1.1
