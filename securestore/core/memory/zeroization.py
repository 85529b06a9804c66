"""
Buffer Wiping
=============

Plaintext read back from an encrypted file and key material held by
``EncryptionKey`` live in ``bytearray`` buffers so they can be overwritten
once the caller is done with them. Immutable ``bytes`` copies made along
the way cannot be reached and stay until collected.
"""

from __future__ import annotations

import ctypes
from contextlib import contextmanager
from typing import Iterator


def secure_zero(data: bytearray | memoryview) -> None:
    """Overwrite ``data`` with zeros in place (memset, falling back to slicing)."""
    size = len(data)
    if size == 0:
        return

    if isinstance(data, memoryview):
        data[:] = bytes(size)
        return

    try:
        ctypes.memset(ctypes.addressof((ctypes.c_char * size).from_buffer(data)), 0, size)
    except (TypeError, ValueError, BufferError):
        data[:] = bytes(size)


@contextmanager
def ZeroizeContext(*buffers: bytearray) -> Iterator[None]:
    """
    Wipe ``buffers`` when the block exits, even on error.

    Usage:
        buffer = bytearray(content)
        with ZeroizeContext(buffer):
            text = buffer.decode("utf-8")
    """
    try:
        yield
    finally:
        for buf in buffers:
            secure_zero(buf)
