"""
Secure Logging Module
=====================

Logging setup for the storage layer. Components log through plain module
loggers (``securestore.paths``, ``securestore.delete``, ...); this module
decides where those records go and scrubs them on the way out.

Security Features:
- Secret-looking text (keys, passwords, tokens, long hex/base64) is redacted
  by a filter on every handler
- Rotating log files with size limits, in an owner-only directory
- Optional JSON output for aggregation
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, Optional, Pattern, TYPE_CHECKING

if TYPE_CHECKING:
    from securestore.core.config import LoggingConfig


ROOT_LOGGER_NAME: Final[str] = "securestore"

_SENSITIVE_PATTERNS: Final[list[tuple[str, Pattern[str]]]] = [
    ("password", re.compile(r'(?i)(password|passwd|pwd)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("key", re.compile(r'(?i)(encryption[_-]?key|secret[_-]?key|key[_-]?bytes)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("token", re.compile(r'(?i)(token|bearer)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("secret", re.compile(r'(?i)(secret|private[_-]?key)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    # repr() of raw key material
    ("bytes_literal", re.compile(r'b["\'](?:\\x[0-9a-fA-F]{2}){8,}[^"\']*["\']')),
    # Not preceded by "/" or a word char, so path components survive
    ("base64_secret", re.compile(r'(?<![/\w])[A-Za-z0-9+]{40,}={0,2}')),
    # 64 hex chars = one 32-byte key
    ("hex_secret", re.compile(r'(?i)\b(?:0x)?[a-f0-9]{64,}\b')),
]

_REDACTED_TEXT: Final[str] = "[REDACTED]"

_CONSOLE_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_FILE_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"


class SecureLogFilter(logging.Filter):
    """
    Replaces secret-looking substrings of a record with [REDACTED].

    Both the message template and string arguments are scrubbed, in place.
    The filter never drops a record.
    """

    def __init__(self, name: str = "", additional_patterns: Optional[list[Pattern[str]]] = None) -> None:
        """
        Args:
            name: Logger name filter (empty string matches all)
            additional_patterns: Extra regexes whose matches are redacted
        """
        super().__init__(name)
        self._additional_patterns = additional_patterns or []

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg and isinstance(record.msg, str):
            record.msg = self._sanitize(record.msg)

        if isinstance(record.args, dict):
            record.args = {k: self._sanitize(v) if isinstance(v, str) else v for k, v in record.args.items()}
        elif isinstance(record.args, tuple) and record.args:
            record.args = tuple(self._sanitize(arg) if isinstance(arg, str) else arg for arg in record.args)

        return True

    def _sanitize(self, text: str) -> str:
        for name, pattern in _SENSITIVE_PATTERNS:
            text = pattern.sub(f"{name}={_REDACTED_TEXT}", text)
        for pattern in self._additional_patterns:
            text = pattern.sub(_REDACTED_TEXT, text)
        return text


class StructuredLogFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class SecureRotatingFileHandler(RotatingFileHandler):
    """
    RotatingFileHandler that refuses ``..`` in the log path and creates the
    log directory owner-only.
    """

    def __init__(
        self,
        filename: str | Path,
        mode: str = "a",
        maxBytes: int = 10 * 1024 * 1024,
        backupCount: int = 5,
        encoding: str = "utf-8",
    ) -> None:
        if ".." in Path(filename).parts:
            raise ValueError("Log path cannot contain path traversal sequences")

        log_path = Path(filename).resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if os.name != "nt":
            os.chmod(log_path.parent, 0o700)

        super().__init__(str(log_path), mode=mode, maxBytes=maxBytes, backupCount=backupCount, encoding=encoding)


def _console_handler(fmt: str, secure_filter: SecureLogFilter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt, datefmt="%H:%M:%S"))
    handler.addFilter(secure_filter)
    return handler


def _file_handler(
    path: Path,
    max_bytes: int,
    backup_count: int,
    formatter: logging.Formatter,
    secure_filter: SecureLogFilter,
) -> logging.Handler:
    handler = SecureRotatingFileHandler(filename=path, maxBytes=max_bytes, backupCount=backup_count)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    handler.addFilter(secure_filter)
    return handler


def get_secure_logger(
    name: str,
    log_dir: Optional[Path] = None,
    level: str = "INFO",
    enable_console: bool = True,
    enable_file: bool = True,
    enable_json: bool = False,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Standalone logger with its own redacting handlers.

    The logger does not propagate, so it suits tools embedding the storage
    layer that want a separate log file. Calling again with the same name
    returns the already configured logger.

    Args:
        name: Logger name
        log_dir: Directory for ``<name>.log`` (no file output without it)
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        enable_json: JSON lines instead of text in the file
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, level.upper()))
    secure_filter = SecureLogFilter()

    if enable_console:
        logger.addHandler(_console_handler(_CONSOLE_FORMAT, secure_filter))

    if enable_file and log_dir:
        formatter = (
            StructuredLogFormatter()
            if enable_json
            else logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        logger.addHandler(_file_handler(
            log_dir / f"{name.replace('.', '_')}.log",
            max_file_size,
            backup_count,
            formatter,
            secure_filter,
        ))

    logger.propagate = False
    return logger


def configure_root_logger(
    config: Optional[LoggingConfig] = None,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    Configure the ``securestore`` package logger.

    Every component logger propagates here, so call this once at application
    startup. Calling it again replaces the previous handlers.

    Args:
        config: Logging configuration (defaults if not provided)
        log_dir: Directory for ``securestore.log``

    Returns:
        The package logger
    """
    if config is None:
        from securestore.core.config import LoggingConfig
        config = LoggingConfig()

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(getattr(logging, config.level.upper()))

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    secure_filter = SecureLogFilter()

    if config.enable_console:
        package_logger.addHandler(_console_handler(config.format, secure_filter))

    if config.enable_file and log_dir:
        package_logger.addHandler(_file_handler(
            log_dir / "securestore.log",
            config.max_file_size_bytes,
            config.backup_count,
            logging.Formatter(_FILE_FORMAT, datefmt=config.date_format),
            secure_filter,
        ))

    return package_logger
