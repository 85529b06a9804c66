"""
Cryptography module - Bundled file cipher and key handling.

The storage core only depends on the Encryptor / Decryptor protocols;
AesGcmFileCipher is the default implementation.
"""

from securestore.core.crypto.aes_gcm import AesGcmCipher
from securestore.core.crypto.file_cipher import (
    AesGcmFileCipher,
    Decryptor,
    Encryptor,
    FileType,
    TypeValidator,
)
from securestore.core.crypto.keys import (
    EncryptionKey,
    KeyStrength,
    classify_key,
    generate_key,
    is_weak_encryption_key,
)

__all__ = [
    "AesGcmCipher",
    "AesGcmFileCipher",
    "Decryptor",
    "Encryptor",
    "FileType",
    "TypeValidator",
    "EncryptionKey",
    "KeyStrength",
    "classify_key",
    "generate_key",
    "is_weak_encryption_key",
]
