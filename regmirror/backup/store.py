"""Blob store contract and a directory-backed implementation.

The sync engine only talks to blob storage through BlobStore. Deployments
can plug in any object store client that implements it; LocalBlobStore
keeps blobs as plain files under a root directory.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Protocol, Union

from ..common.errors import BackupKeyMissing
from ..common.logger import get_logger

logger = get_logger("blob_store")


class BlobStore(Protocol):
    """Key based get/put/delete over durable blob storage."""

    def upload(self, key: str, data: Union[bytes, str]) -> None: ...

    def upload_file(self, key: str, path: Path) -> None: ...

    def download(self, key: str) -> bytes: ...

    def remove(self, key: str) -> None: ...

    def list(self, prefix: str) -> List[str]: ...


class LocalBlobStore:
    """Blob store keeping each key as a file below ``root``.

    Writes go through a temporary file and ``os.replace`` so readers never
    observe a partially written blob.
    """

    def __init__(self, root: Union[str, Path]):
        """Initialize the store.

        Args:
            root: Directory holding the blobs (created if missing)
        """
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        relative = key.lstrip("/")
        if not relative:
            raise ValueError("Empty blob key")
        path = (self.root / relative).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Unsafe blob key: {key}")
        return path

    def upload(self, key: str, data: Union[bytes, str]) -> None:
        """Store ``data`` under ``key``, replacing any existing blob.

        Args:
            key: Blob key
            data: Blob content; strings are stored UTF-8 encoded
        """
        if isinstance(data, str):
            data = data.encode("utf-8")

        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Uploaded {key} ({len(data)} bytes)")

    def upload_file(self, key: str, path: Path) -> None:
        """Store the content of a local file under ``key``.

        Args:
            key: Blob key
            path: Local file to copy
        """
        dest = self._path(key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=".upload-")
        os.close(fd)
        try:
            shutil.copyfile(path, tmp_name)
            os.replace(tmp_name, dest)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Uploaded {key} from {path}")

    def download(self, key: str) -> bytes:
        """Read the blob stored under ``key``.

        Raises:
            BackupKeyMissing: If no blob exists for the key
        """
        path = self._path(key)
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as e:
            raise BackupKeyMissing(key) from e

    def remove(self, key: str) -> None:
        """Delete the blob stored under ``key``.

        Raises:
            BackupKeyMissing: If no blob exists for the key
        """
        path = self._path(key)
        try:
            path.unlink()
        except (FileNotFoundError, IsADirectoryError) as e:
            raise BackupKeyMissing(key) from e
        logger.debug(f"Removed {key}")

    def list(self, prefix: str) -> List[str]:
        """List keys starting with ``prefix``, sorted.

        Only prefixes ending with "/" are supported, matching how the sync
        engine enumerates package-file and dist-tag records.
        """
        directory = self._path(prefix)
        if not directory.is_dir():
            return []

        keys = []
        for path in directory.rglob("*"):
            if path.is_file() and not path.name.startswith(".upload-"):
                keys.append("/" + path.relative_to(self.root).as_posix())
        return sorted(keys)
