"""
SecureStore - Secure Encrypted File Storage
===========================================

Validated, contained and atomic encrypted file operations for per-user
data directories.

Security Notice:
- No keys or plaintext are logged
- Fail-closed design pattern
- All paths are validated against the data root
"""

from securestore.core.config import SecureConfig
from securestore.core.context import StorageContext
from securestore.core.logging import get_secure_logger
from securestore.core.storage import SecureFileStorage

__version__ = "0.1.0"
__author__ = "SecureStore Team"

__all__ = [
    "SecureConfig",
    "StorageContext",
    "SecureFileStorage",
    "get_secure_logger",
    "__version__",
]
