"""Common utilities for regmirror."""

from .logger import setup_from_storage, setup_logger, get_logger
from .config import (
    MirrorSyncConfig,
    load_config,
    load_typed_config,
    is_private_package,
)

__all__ = [
    "MirrorSyncConfig",
    "get_logger",
    "is_private_package",
    "load_config",
    "load_typed_config",
    "setup_from_storage",
    "setup_logger",
]
