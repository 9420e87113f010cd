"""Local registry store: versions, dist-tags, users and sync logs."""

from .database import create_session_factory
from .service import (
    LogService,
    ModuleRow,
    PackageService,
    TagRow,
    UserRow,
    UserService,
)

__all__ = [
    "LogService",
    "ModuleRow",
    "PackageService",
    "TagRow",
    "UserRow",
    "UserService",
    "create_session_factory",
]
