"""Rebuild package documents from backup records.

Used when a sync run replays backups instead of talking to upstream.
"""

import json
from typing import Any, Dict, Optional

from ..backup import keys
from ..backup.store import BlobStore
from ..common.errors import BackupKeyMissing, BackupNotFound, MalformedManifest
from ..common.logger import get_logger
from .documents import assemble_document

logger = get_logger("backup_restore")


class BackupRestoreBuilder:
    """Reconstructs canonical package documents from a blob store."""

    def __init__(self, store: BlobStore):
        self.store = store

    def restore(self, name: str) -> Dict[str, Any]:
        """Build the package document of ``name`` from its backup records.

        Args:
            name: Package name

        Returns:
            Package document in the same shape upstream would serve

        Raises:
            BackupNotFound: If no package-file records exist for the name
            BackupKeyMissing: If a listed record vanished before it was read
            MalformedManifest: If a package-file record is not a JSON object
        """
        package_keys = self.store.list(keys.package_file_prefix(name))
        if not package_keys:
            raise BackupNotFound(name)

        versions: Dict[str, Dict[str, Any]] = {}
        for key in package_keys:
            version = keys.version_from_package_file_key(name, key)
            record = self._load_json(name, key)
            record.setdefault("version", version)
            versions[version] = record

        tags: Dict[str, str] = {}
        for key in self.store.list(keys.dist_tag_prefix(name)):
            tag = keys.tag_from_dist_tag_key(name, key)
            target = self.store.download(key).decode("utf-8").strip()
            if target in versions:
                tags[tag] = target
            else:
                logger.warning(f"[{name}] dist-tag {tag} points at missing backup version {target}")

        logger.info(f"[{name}] restored {len(versions)} versions and {len(tags)} tags from backup")
        return assemble_document(name, versions, tags)

    def load_unpublish_record(self, name: str) -> Optional[Dict[str, Any]]:
        """Read the unpublish record of ``name``.

        Returns:
            The unpublish record, or None when the package was never unpublished
        """
        try:
            return self._load_json(name, keys.unpublish_key(name))
        except BackupKeyMissing:
            return None

    def _load_json(self, name: str, key: str) -> Dict[str, Any]:
        raw = self.store.download(key)
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedManifest(name, f"invalid JSON in {key}") from e
        if not isinstance(data, dict):
            raise MalformedManifest(name, f"{key} is not a JSON object")
        return data
