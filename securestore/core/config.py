"""
Storage Configuration
=====================

Frozen configuration objects for the storage layer.

- ``PathConfig``: where user data and logs live (OS-aware defaults)
- ``StorageLimits``: size, permission, locking and deletion policy
- ``LoggingConfig``: log level, rotation and output switches
- ``SecureConfig``: the aggregate, loaded once per process

Only paths and logging can be overridden from the environment. Limits are
policy and stay at their defaults unless a caller constructs them in code.
"""

from __future__ import annotations

import hashlib
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Final, Optional

from securestore.security import constants


# Environment names containing any of these are never read
_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "key", "token", "api_key",
    "private", "credential", "auth", "salt"
})

_APP_DIR_NAME: Final[str] = "SecureStore"


def _is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _local_app_data() -> Path:
    return Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))


def _get_default_data_dir() -> Path:
    """OS-appropriate root holding one directory per user."""
    system = platform.system().lower()
    if system == "windows":
        base = _local_app_data()
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / _APP_DIR_NAME / "Data"


def _get_default_log_dir() -> Path:
    system = platform.system().lower()
    if system == "windows":
        return _local_app_data() / _APP_DIR_NAME / "Logs"
    if system == "darwin":
        return Path.home() / "Library" / "Logs" / _APP_DIR_NAME
    state = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))
    return state / _APP_DIR_NAME / "logs"


@dataclass(frozen=True, slots=True)
class PathConfig:
    """Data and log directories; both must be absolute."""

    data_dir: Path = field(default_factory=_get_default_data_dir)
    log_dir: Path = field(default_factory=_get_default_log_dir)

    def __post_init__(self) -> None:
        for field_name in ("data_dir", "log_dir"):
            path = getattr(self, field_name)
            if not path.is_absolute():
                raise ValueError(f"{field_name} must be an absolute path: {path}")


@dataclass(frozen=True, slots=True)
class StorageLimits:
    """
    Immutable resource and deletion policy for the storage layer.

    Defaults mirror the fixed policy in ``securestore.security.constants``.
    Tests construct scaled-down instances; production code should use the
    defaults.
    """

    max_content_size: int = constants.MAX_CONTENT_SIZE
    max_encrypted_file_size: int = constants.MAX_ENCRYPTED_FILE_SIZE
    max_temp_directory_size: int = constants.MAX_TEMP_DIRECTORY_SIZE
    temp_cleanup_threshold: int = constants.TEMP_CLEANUP_THRESHOLD
    min_disk_space_required: int = constants.MIN_DISK_SPACE_REQUIRED

    file_permissions: int = constants.DEFAULT_FILE_PERMISSIONS
    dir_permissions: int = constants.DEFAULT_DIR_PERMISSIONS

    lock_timeout_seconds: float = constants.DEFAULT_LOCK_TIMEOUT_SECONDS
    decrypt_size_factor: float = constants.DECRYPT_SIZE_FACTOR

    # Deletion
    secure_delete_passes: int = constants.DEFAULT_SECURE_DELETE_PASSES
    max_overwrite_passes: int = constants.MAX_OVERWRITE_PASSES
    temp_overwrite_passes: int = 1
    secure_delete_min_size: int = constants.SECURE_DELETE_MIN_SIZE

    # Background retry of obstructed deletions
    retry_initial_delay: float = 0.1
    retry_delay: float = 1.0
    retry_max_delay: float = 30.0

    def __post_init__(self) -> None:
        """Validate limit relationships."""
        for field_name in (
            "max_content_size",
            "max_encrypted_file_size",
            "max_temp_directory_size",
        ):
            if getattr(self, field_name) <= 0:
                raise ValueError(f"{field_name} must be positive")
        if self.temp_cleanup_threshold > self.max_temp_directory_size:
            raise ValueError("temp_cleanup_threshold cannot exceed max_temp_directory_size")
        if self.min_disk_space_required < 0:
            raise ValueError("min_disk_space_required cannot be negative")
        # SECURITY: plaintext-bearing files must never be group/world accessible
        if self.file_permissions & 0o077:
            raise ValueError("file_permissions must be owner-only")
        if self.dir_permissions & 0o077:
            raise ValueError("dir_permissions must be owner-only")
        if self.secure_delete_passes < 1 or self.max_overwrite_passes < 1:
            raise ValueError("At least one overwrite pass is required")
        if self.decrypt_size_factor < 1.0:
            raise ValueError("decrypt_size_factor must be at least 1.0")
        if self.retry_initial_delay < 0 or self.retry_delay <= 0:
            raise ValueError("Retry delays must be positive")
        if self.retry_max_delay < self.retry_delay:
            raise ValueError("retry_max_delay cannot be below retry_delay")

    @property
    def max_ciphertext_size(self) -> int:
        """Largest encrypted file read; a file holding max_content_size must fit."""
        return max(self.max_encrypted_file_size, self.max_content_size) + constants.CIPHERTEXT_OVERHEAD_ALLOWANCE


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Level, rotation and output switches for ``configure_root_logger``."""

    level: str = "INFO"
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10 MB
    backup_count: int = 5
    format: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    enable_console: bool = True
    enable_file: bool = True

    def __post_init__(self) -> None:
        if self.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {self.level}")


# "<section>.<field>" -> (section, field, converter) for environment overrides
_ENV_FIELDS: Final[dict[str, tuple[str, str, Callable[[str], Any]]]] = {
    "paths.data_dir": ("paths", "data_dir", Path),
    "paths.log_dir": ("paths", "log_dir", Path),
    "logging.level": ("logging", "level", str),
    "logging.enable_console": ("logging", "enable_console", _parse_bool),
    "logging.enable_file": ("logging", "enable_file", _parse_bool),
}


class SecureConfig:
    """
    Process-wide storage configuration.

    Usage:
        config = SecureConfig.load()
        context = StorageContext.from_config("alice", config)
    """

    __slots__ = ("_paths", "_limits", "_logging", "_frozen", "_config_hash")

    _instance: Optional[SecureConfig] = None

    def __init__(
        self,
        paths: Optional[PathConfig] = None,
        limits: Optional[StorageLimits] = None,
        logging: Optional[LoggingConfig] = None,
    ) -> None:
        """Build a configuration directly; ``load()`` adds environment overrides."""
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_paths", paths or PathConfig())
        object.__setattr__(self, "_limits", limits or StorageLimits())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _compute_hash(self) -> str:
        """Short fingerprint of the configuration, shown in logs and repr."""
        config_str = f"{self._paths}|{self._limits}|{self._logging}"
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def paths(self) -> PathConfig:
        return self._paths

    @property
    def limits(self) -> StorageLimits:
        return self._limits

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def config_hash(self) -> str:
        return self._config_hash

    @classmethod
    def load(cls, env_prefix: str = "SECURESTORE") -> SecureConfig:
        """
        Load configuration with environment variable overrides.

        Variables use the prefix plus ``SECTION__FIELD``:

            SECURESTORE_PATHS__DATA_DIR=/srv/securestore/Data
            SECURESTORE_LOGGING__LEVEL=DEBUG
            SECURESTORE_LOGGING__ENABLE_FILE=false

        Storage limits are fixed policy and are never read from the environment.
        """
        sections: dict[str, dict[str, Any]] = {"paths": {}, "logging": {}}
        for config_key, value in cls._parse_env_overrides(env_prefix).items():
            target = _ENV_FIELDS.get(config_key)
            if target is None:
                continue
            section, field_name, convert = target
            sections[section][field_name] = convert(value)

        return cls(
            paths=PathConfig(**sections["paths"]) if sections["paths"] else None,
            logging=LoggingConfig(**sections["logging"]) if sections["logging"] else None,
        )

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Map ``PREFIX_SECTION__FIELD`` variables to ``section.field`` keys."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if not key.startswith(prefix_upper):
                continue
            config_key = key[len(prefix_upper):].lower().replace("__", ".")
            # SECURITY: Skip sensitive keys from environment
            if _is_sensitive_key(config_key):
                continue
            overrides[config_key] = value

        return overrides

    @classmethod
    def get_instance(cls) -> SecureConfig:
        """Get or create the singleton configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance. Use only for testing."""
        cls._instance = None

    def ensure_directories(self) -> None:
        """Create the data and log directories owner-only."""
        for directory in (self._paths.data_dir, self._paths.log_dir):
            directory.mkdir(parents=True, exist_ok=True)
            if platform.system().lower() != "windows":
                directory.chmod(self._limits.dir_permissions)

    def __repr__(self) -> str:
        return f"SecureConfig(hash={self._config_hash}, data_dir={self._paths.data_dir})"

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent modification after initialization."""
        if hasattr(self, "_frozen") and self._frozen:
            raise AttributeError("SecureConfig is immutable after initialization")
        super().__setattr__(name, value)
