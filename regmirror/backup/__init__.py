"""Blob storage for mirrored tarballs and sync backup records."""

from .keys import (
    package_file_key,
    dist_tag_key,
    unpublish_key,
    tarball_key,
)
from .store import BlobStore, LocalBlobStore

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "dist_tag_key",
    "package_file_key",
    "tarball_key",
    "unpublish_key",
]
