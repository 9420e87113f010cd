"""Package document projections.

Builds the full and abbreviated package documents from version records and
dist-tags, and fingerprints them. All functions are pure and deterministic:
the same input always serializes to the same bytes, which is what keeps the
read endpoint's ETag stable across unchanged syncs.
"""

import copy
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

# Root fields copied from the version the latest tag points at
ROOT_FIELDS = (
    "description",
    "maintainers",
    "author",
    "repository",
    "readme",
    "readmeFilename",
    "homepage",
    "bugs",
    "license",
)

# Version fields kept by the abbreviated (install-v1) representation
ABBREVIATED_FIELDS = (
    "name",
    "version",
    "deprecated",
    "dependencies",
    "optionalDependencies",
    "devDependencies",
    "bundleDependencies",
    "peerDependencies",
    "peerDependenciesMeta",
    "acceptDependencies",
    "bin",
    "directories",
    "engines",
    "os",
    "cpu",
    "libc",
    "funding",
    "_hasShrinkwrap",
    "hasInstallScript",
    "publish_time",
)

ABBREVIATED_DIST_FIELDS = (
    "tarball",
    "shasum",
    "integrity",
    "key",
    "size",
    "fileCount",
    "unpackedSize",
    "signatures",
    "npm-signature",
)

INSTALL_SCRIPTS = ("preinstall", "install", "postinstall")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_iso(timestamp_ms: int) -> str:
    """Format epoch milliseconds the way the registry does (UTC, ms, Z)."""
    dt = EPOCH + timedelta(milliseconds=int(timestamp_ms))
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_time(value: Any) -> Optional[int]:
    """Parse a registry timestamp into epoch milliseconds.

    Accepts epoch milliseconds (int, float or digit string) and ISO 8601
    strings. Returns None for anything else.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        if value.isdigit():
            return int(value)
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return (dt - EPOCH) // timedelta(milliseconds=1)
    return None


def has_install_script(record: Mapping[str, Any]) -> bool:
    """Check whether a version runs scripts at install time."""
    if record.get("hasInstallScript") is True:
        return True
    scripts = record.get("scripts")
    if not isinstance(scripts, dict):
        return False
    return any(name in scripts for name in INSTALL_SCRIPTS)


def abbreviate_version(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Project a full version record onto the abbreviated representation.

    Fields that are absent (or None) in the record stay absent in the
    projection, so clearing e.g. ``os`` upstream clears it here too.

    Args:
        record: Full version record

    Returns:
        Abbreviated version record
    """
    abbreviated: Dict[str, Any] = {}
    for field in ABBREVIATED_FIELDS:
        value = record.get(field)
        if value is None:
            continue
        if field == "deprecated" and not value:
            continue
        abbreviated[field] = copy.deepcopy(value)

    if "hasInstallScript" not in abbreviated and has_install_script(record):
        abbreviated["hasInstallScript"] = True

    dist = record.get("dist")
    if isinstance(dist, dict):
        abbreviated["dist"] = {
            key: copy.deepcopy(dist[key])
            for key in ABBREVIATED_DIST_FIELDS
            if dist.get(key) is not None
        }

    return abbreviated


def latest_version(
    versions: Mapping[str, Mapping[str, Any]],
    tags: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Pick the version root fields are derived from.

    The ``latest`` dist-tag wins when it points at a known version;
    otherwise the most recently published version is used.
    """
    if not versions:
        return None

    if tags:
        latest = tags.get("latest")
        if latest in versions:
            return latest

    def sort_key(version: str):
        return (parse_time(versions[version].get("publish_time")) or 0, version)

    return max(versions, key=sort_key)


def dependency_names(record: Mapping[str, Any], include_dev: bool = False) -> List[str]:
    """List the dependency names declared by a version, sorted."""
    fields = ["dependencies", "optionalDependencies"]
    if include_dev:
        fields.append("devDependencies")

    names = set()
    for field in fields:
        deps = record.get(field)
        if isinstance(deps, dict):
            names.update(deps.keys())
    return sorted(names)


def _time_map(versions: Mapping[str, Mapping[str, Any]]) -> Dict[str, str]:
    publish_times = {}
    for version, record in versions.items():
        publish_time = parse_time(record.get("publish_time"))
        if publish_time is not None:
            publish_times[version] = publish_time

    time: Dict[str, str] = {}
    if publish_times:
        time["modified"] = to_iso(max(publish_times.values()))
        time["created"] = to_iso(min(publish_times.values()))
    for version in sorted(publish_times):
        time[version] = to_iso(publish_times[version])
    return time


def assemble_document(
    name: str,
    versions: Mapping[str, Mapping[str, Any]],
    tags: Mapping[str, str],
) -> Dict[str, Any]:
    """Assemble a full package document from version records.

    Args:
        name: Package name
        versions: Mapping of version to full version record
        tags: Mapping of dist-tag to version

    Returns:
        Package document with root fields copied from the latest version
    """
    document: Dict[str, Any] = {
        "name": name,
        "dist-tags": {tag: tags[tag] for tag in sorted(tags) if tags[tag] in versions},
        "versions": {version: copy.deepcopy(dict(versions[version])) for version in sorted(versions)},
        "time": _time_map(versions),
    }

    latest = latest_version(versions, tags)
    if latest is not None:
        root = versions[latest]
        for field in ROOT_FIELDS:
            if field in root:
                document[field] = copy.deepcopy(root[field])

    return document


def build_abbreviated_document(
    name: str,
    abbreviateds: Mapping[str, Mapping[str, Any]],
    tags: Mapping[str, str],
) -> Dict[str, Any]:
    """Assemble the abbreviated package document.

    Args:
        name: Package name
        abbreviateds: Mapping of version to abbreviated version record
        tags: Mapping of dist-tag to version

    Returns:
        Abbreviated package document
    """
    publish_times = [
        t for t in (parse_time(r.get("publish_time")) for r in abbreviateds.values())
        if t is not None
    ]
    document: Dict[str, Any] = {
        "name": name,
        "dist-tags": {tag: tags[tag] for tag in sorted(tags) if tags[tag] in abbreviateds},
        "versions": {
            version: copy.deepcopy(dict(abbreviateds[version])) for version in sorted(abbreviateds)
        },
    }
    if publish_times:
        document["modified"] = to_iso(max(publish_times))
    return document


def serialize_document(document: Mapping[str, Any]) -> bytes:
    """Serialize a document canonically (sorted keys, compact separators)."""
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def document_etag(document: Mapping[str, Any]) -> str:
    """Content fingerprint of a document, formatted as an HTTP ETag."""
    return '"' + hashlib.sha256(serialize_document(document)).hexdigest() + '"'


def render_package(package_service: Any, name: str, abbreviated: bool = False) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Render the document the registry serves for ``name``, with its ETag.

    Args:
        package_service: Local store exposing the PackageService read methods
        name: Package name
        abbreviated: Render the abbreviated (install-v1) document

    Returns:
        (document, etag), or (None, None) when no version is stored
    """
    rows = package_service.list_modules_by_name(name)
    if not rows:
        return None, None
    tags = {row.tag: row.version for row in package_service.list_module_tags(name)}

    if abbreviated:
        stored = {row.version: row.package for row in package_service.list_module_abbreviateds_by_name(name)}
        if not stored:
            stored = {row.version: abbreviate_version(row.package) for row in rows}
        document = build_abbreviated_document(name, stored, tags)
    else:
        document = assemble_document(name, {row.version: row.package for row in rows}, tags)

    return document, document_etag(document)
