"""
Security module - Fixed security policy for the storage layer.
"""

from securestore.security import constants

__all__ = ["constants"]
