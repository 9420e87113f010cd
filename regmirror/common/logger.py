"""Logging for the regmirror sync engine.

Every component logs through a child of the ``regmirror`` logger
(``regmirror.sync_worker``, ``regmirror.upstream`` ...), so configuring that
one logger covers a whole sync run. Records carry the thread name because
packages of one run are reconciled on pool threads (``sync-<worker>_<n>``)
and lines of different packages interleave.

The per-run trace users read back by log id is kept separately by the
worker in the module log table; this module only covers process logs.
"""

import logging
import logging.handlers
import os
import sys
from typing import Any, Optional

LOGGER_PREFIX = "regmirror"

DEFAULT_LOG_DIR = "/var/log/regmirror"
DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] [%(threadName)s] %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 10


def setup_logger(
    name: str = LOGGER_PREFIX,
    log_dir: str = DEFAULT_LOG_DIR,
    level: str = "INFO",
    log_format: Optional[str] = None,
    file_logging: bool = True,
    console_logging: bool = True,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
) -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to a logger.

    Called once per process on the package logger; component loggers from
    get_logger() propagate to it. The file is ``<log_dir>/<name>.log``.
    Console output goes to stderr; the CLI prints its summary on stdout.

    Args:
        name: Logger to configure, the package logger by default
        log_dir: Directory for the log file, created if missing
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (any case)
        log_format: Record format; defaults to one that includes the thread
        file_logging: Write to the rotating log file
        console_logging: Write to stderr
        max_bytes: Size at which the log file is rotated
        backup_count: Rotated files kept

    Returns:
        The configured logger

    Raises:
        ValueError: If ``level`` is not a logging level name
    """
    logger = logging.getLogger(name)

    level_upper = level.upper()
    if level_upper not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ValueError(
            f"Invalid log level: {level}. "
            f"Must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL"
        )
    logger.setLevel(getattr(logging, level_upper))

    # Already configured in this process
    if logger.handlers:
        return logger

    formatter = logging.Formatter(log_format or DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)

    if file_logging:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, f"{name}.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console_logging:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def setup_from_storage(storage: Any, console_logging: bool = True) -> logging.Logger:
    """Configure the package logger from the ``storage`` config section.

    Args:
        storage: Section exposing ``log_dir`` and ``log_level``
        console_logging: Also write to stderr

    Returns:
        The package logger
    """
    return setup_logger(
        LOGGER_PREFIX,
        log_dir=storage.log_dir,
        level=storage.log_level,
        console_logging=console_logging,
    )


def get_logger(name: str) -> logging.Logger:
    """Get a component logger under the regmirror namespace.

    Args:
        name: Component name (e.g. "sync_worker", "backup_store"); names
            already under the namespace are used as is

    Returns:
        Logger instance
    """
    if name == LOGGER_PREFIX or name.startswith(LOGGER_PREFIX + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")
