"""
Core module - Configuration, logging, results and the storage facade.
"""

from securestore.core.config import SecureConfig
from securestore.core.logging import get_secure_logger, SecureLogFilter

__all__ = ["SecureConfig", "get_secure_logger", "SecureLogFilter"]
