"""
Memory module - Best-effort wiping of plaintext and key buffers.
"""

from securestore.core.memory.zeroization import secure_zero, ZeroizeContext

__all__ = ["secure_zero", "ZeroizeContext"]
