"""Diff upstream package documents against the local store.

The reconciler compares every upstream version with its stored record using
a semantic view that ignores fields only this mirror writes (publish time,
tarball blob key, local-publish flag). Whatever differs is replaced
wholesale, never merged, so a field that disappeared upstream (for example
``deprecated``) disappears locally too.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..common.errors import MalformedManifest
from ..common.logger import get_logger
from ..registry.service import ModuleRow, PackageService, TagRow
from .documents import abbreviate_version, has_install_script, latest_version, parse_time

logger = get_logger("reconciler")

# Written by this mirror, never compared against upstream
VOLATILE_FIELDS = ("publish_time", "_cnpm_publish_time", "_synced_at", "_published_locally")
LOCAL_DIST_FIELDS = ("key", "noattachment")

# Carried over from the stored record when upstream omits them
CARRIED_FIELDS = ("readme", "readmeFilename")

PUBLISHED_LOCALLY = "_published_locally"


def semantic_view(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Strip mirror-owned fields so two records can be compared."""
    view = {k: v for k, v in record.items() if k not in VOLATILE_FIELDS}
    if not view.get("deprecated"):
        view.pop("deprecated", None)
    dist = view.get("dist")
    if isinstance(dist, dict):
        view["dist"] = {k: v for k, v in dist.items() if k not in LOCAL_DIST_FIELDS}
    return view


def unpublished_info(document: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the unpublish event of a document, or None."""
    time_info = document.get("time")
    if isinstance(time_info, dict) and isinstance(time_info.get("unpublished"), dict):
        return time_info["unpublished"]
    return None


@dataclass
class ReconcileResult:
    """Outcome of diffing one package."""

    name: str
    records: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    abbreviateds: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    new_versions: List[str] = field(default_factory=list)
    updated_versions: List[str] = field(default_factory=list)
    removed_versions: List[str] = field(default_factory=list)
    deprecation_changes: Dict[str, Optional[str]] = field(default_factory=dict)
    tags_to_set: Dict[str, str] = field(default_factory=dict)
    tags_to_remove: List[str] = field(default_factory=list)
    latest: Optional[str] = None
    latest_record: Optional[Dict[str, Any]] = None
    abbreviated_enabled: bool = False
    abbreviated_removed: bool = False

    @property
    def changed_versions(self) -> List[str]:
        """Versions written by this reconciliation, sorted."""
        changed = set(self.new_versions) | set(self.updated_versions) | set(self.abbreviateds)
        return sorted(changed)

    @property
    def abbreviated_dirty(self) -> bool:
        return bool(self.abbreviateds) or self.abbreviated_removed

    @property
    def has_changes(self) -> bool:
        return bool(
            self.changed_versions
            or self.removed_versions
            or self.tags_to_set
            or self.tags_to_remove
        )

    def attach_tarball_key(self, version: str, key: str) -> None:
        """Record where a version's tarball was mirrored."""
        record = self.records[version]
        record.setdefault("dist", {})["key"] = key
        if self.abbreviated_enabled:
            self.abbreviateds[version] = abbreviate_version(record)

    def discard(self, version: str) -> None:
        """Drop a version that could not be mirrored from this result."""
        self.records.pop(version, None)
        self.abbreviateds.pop(version, None)
        self.deprecation_changes.pop(version, None)
        if version in self.new_versions:
            self.new_versions.remove(version)
        if version in self.updated_versions:
            self.updated_versions.remove(version)
        self.tags_to_set = {t: v for t, v in self.tags_to_set.items() if v != version}


class DocumentReconciler:
    """Computes and persists the difference between upstream and local state."""

    def __init__(self, package_service: PackageService, enable_abbreviated_metadata: bool = False):
        self.package_service = package_service
        self.enable_abbreviated_metadata = enable_abbreviated_metadata

    def reconcile(self, name: str, upstream_document: Mapping[str, Any]) -> ReconcileResult:
        """Load the local state of ``name`` and diff it against upstream.

        Raises:
            MalformedManifest: If the upstream document is unusable
        """
        local_versions = self.package_service.list_modules_by_name(name)
        local_abbreviateds = None
        if self.enable_abbreviated_metadata:
            local_abbreviateds = self.package_service.list_module_abbreviateds_by_name(name)
        local_tags = self.package_service.list_module_tags(name)
        return self.diff(name, upstream_document, local_versions, local_abbreviateds, local_tags)

    def diff(
        self,
        name: str,
        upstream_document: Mapping[str, Any],
        local_versions: Iterable[ModuleRow],
        local_abbreviateds: Optional[Iterable[ModuleRow]] = None,
        local_tags: Optional[Iterable[TagRow]] = None,
    ) -> ReconcileResult:
        """Diff an upstream document against local rows.

        Args:
            name: Package name
            upstream_document: Full package document from upstream or backup
            local_versions: Stored full version records
            local_abbreviateds: Stored abbreviated records; None disables
                abbreviated reconciliation
            local_tags: Stored dist-tags

        Returns:
            ReconcileResult describing every write needed

        Raises:
            MalformedManifest: If the upstream document is unusable
        """
        versions = upstream_document.get("versions")
        if not isinstance(versions, dict):
            raise MalformedManifest(name, "missing versions mapping")

        local_map = {row.version: row for row in local_versions}
        result = ReconcileResult(
            name=name, abbreviated_enabled=local_abbreviateds is not None
        )

        prepared = {}
        for version, record in versions.items():
            if not isinstance(record, dict):
                raise MalformedManifest(name, f"version {version} is not an object")
            prepared[version] = self._prepare_version(
                name, version, record, upstream_document, local_map.get(version)
            )

        upstream_tags = {
            tag: target
            for tag, target in (upstream_document.get("dist-tags") or {}).items()
            if isinstance(target, str) and target in prepared
        }
        result.latest = latest_version(prepared, upstream_tags)
        if result.latest is not None:
            self._fill_root_readme(prepared[result.latest], upstream_document)
            result.latest_record = prepared[result.latest]

        for version in sorted(prepared):
            record = prepared[version]
            local = local_map.get(version)
            if local is None:
                result.new_versions.append(version)
                result.records[version] = record
                continue

            if semantic_view(local.package) != semantic_view(record):
                result.updated_versions.append(version)
                result.records[version] = record

            old_deprecated = local.package.get("deprecated") or None
            new_deprecated = record.get("deprecated") or None
            if old_deprecated != new_deprecated:
                result.deprecation_changes[version] = new_deprecated

        abbreviated_versions = set()
        if local_abbreviateds is not None:
            local_abbreviateds = list(local_abbreviateds)
            abbreviated_versions = {row.version for row in local_abbreviateds}
            self._diff_abbreviateds(result, prepared, local_abbreviateds)

        for version in sorted(set(local_map) | abbreviated_versions):
            if version in prepared:
                continue
            local = local_map.get(version)
            if local is not None and local.package.get(PUBLISHED_LOCALLY):
                continue
            result.removed_versions.append(version)
        result.abbreviated_removed = any(
            version in abbreviated_versions for version in result.removed_versions
        )

        current_tags = {row.tag: row.version for row in (local_tags or [])}
        result.tags_to_set = {
            tag: target
            for tag, target in sorted(upstream_tags.items())
            if current_tags.get(tag) != target
        }
        result.tags_to_remove = sorted(tag for tag in current_tags if tag not in upstream_tags)

        return result

    def _prepare_version(
        self,
        name: str,
        version: str,
        record: Mapping[str, Any],
        document: Mapping[str, Any],
        local: Optional[ModuleRow],
    ) -> Dict[str, Any]:
        prepared = copy.deepcopy(dict(record))
        prepared.setdefault("name", name)
        prepared.setdefault("version", version)

        times = document.get("time") if isinstance(document.get("time"), dict) else {}
        publish_time = parse_time(times.get(version))
        if publish_time is None:
            publish_time = parse_time(record.get("publish_time"))
        if publish_time is None and local is not None:
            publish_time = local.publish_time
        if publish_time is not None:
            prepared["publish_time"] = publish_time

        if "deprecated" in prepared and not prepared["deprecated"]:
            del prepared["deprecated"]

        if "hasInstallScript" not in prepared and has_install_script(prepared):
            prepared["hasInstallScript"] = True

        if local is not None:
            for carried in CARRIED_FIELDS:
                if carried not in prepared and carried in local.package:
                    prepared[carried] = local.package[carried]
            if local.package.get(PUBLISHED_LOCALLY):
                prepared[PUBLISHED_LOCALLY] = True
            self._carry_tarball_key(prepared, local.package)

        return prepared

    @staticmethod
    def _carry_tarball_key(prepared: Dict[str, Any], stored: Mapping[str, Any]) -> None:
        stored_dist = stored.get("dist") or {}
        dist = prepared.get("dist")
        if not isinstance(dist, dict) or not stored_dist.get("key"):
            return
        same_tarball = (
            dist.get("shasum") == stored_dist.get("shasum")
            and dist.get("integrity") == stored_dist.get("integrity")
        )
        if same_tarball:
            dist["key"] = stored_dist["key"]

    @staticmethod
    def _fill_root_readme(record: Dict[str, Any], document: Mapping[str, Any]) -> None:
        # the registry only serves the readme at the document root
        if not record.get("readme") and document.get("readme"):
            record["readme"] = document["readme"]
            if document.get("readmeFilename") and not record.get("readmeFilename"):
                record["readmeFilename"] = document["readmeFilename"]

    @staticmethod
    def _diff_abbreviateds(
        result: ReconcileResult,
        prepared: Mapping[str, Dict[str, Any]],
        local_abbreviateds: Iterable[ModuleRow],
    ) -> None:
        abbreviated_map = {row.version: row for row in local_abbreviateds}
        for version in sorted(prepared):
            expected = abbreviate_version(prepared[version])
            stored = abbreviated_map.get(version)
            if stored is not None and stored.package == expected:
                continue
            result.abbreviateds[version] = expected
            if stored is not None:
                old_deprecated = stored.package.get("deprecated") or None
                new_deprecated = expected.get("deprecated")
                if old_deprecated != new_deprecated:
                    result.deprecation_changes[version] = new_deprecated

    def persist(self, result: ReconcileResult, author: Optional[str] = None) -> None:
        """Write a reconciliation result to the local store."""
        name = result.name
        for version in sorted(result.records):
            record = result.records[version]
            self.package_service.save_module(
                name, version, record, publish_time=record.get("publish_time"), author=author
            )

        for version in sorted(result.abbreviateds):
            abbreviated = result.abbreviateds[version]
            self.package_service.save_module_abbreviated(
                name, version, abbreviated, publish_time=abbreviated.get("publish_time")
            )

        for version, deprecated in sorted(result.deprecation_changes.items()):
            if deprecated is None:
                logger.info(f"[{name}] {version} is no longer deprecated")
            else:
                logger.info(f"[{name}] {version} deprecated: {deprecated}")

        if result.removed_versions:
            removed = self.package_service.remove_modules(name, result.removed_versions)
            logger.info(f"[{name}] removed {removed} versions missing upstream: {result.removed_versions}")

        for tag, version in result.tags_to_set.items():
            self.package_service.add_module_tag(name, tag, version)
        if result.tags_to_remove:
            self.package_service.remove_module_tags(name, result.tags_to_remove)
