"""
Utils module - Path validation and path helpers.
"""

from securestore.utils.paths import sanitize_filename, ensure_private_directory
from securestore.utils.validators import (
    PathValidator,
    ValidatedPath,
    ValidationError,
    secure_path_join,
    validate_path_component,
)

__all__ = [
    "sanitize_filename",
    "ensure_private_directory",
    "PathValidator",
    "ValidatedPath",
    "ValidationError",
    "secure_path_join",
    "validate_path_component",
]
