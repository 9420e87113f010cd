"""Blob key scheme for tarballs and backup records.

Every key lives under ``/<name>/-/`` so a scoped package (``/@scope/pkg/-/``)
can never share a prefix with an unscoped one. Versions and tags are
percent-encoded so they map to exactly one path segment.
"""

from urllib.parse import quote, unquote

PACKAGE_FILE_DIR = "package"
DIST_TAG_DIR = "dist-tags"
UNPUBLISH_FILENAME = "unpublish-package.json"


def _validate_name(name: str) -> None:
    if not name or name.startswith("/") or "\\" in name:
        raise ValueError(f"Invalid package name for blob key: {name!r}")
    parts = name.split("/")
    if len(parts) > 2 or (len(parts) == 2 and not parts[0].startswith("@")):
        raise ValueError(f"Invalid package name for blob key: {name!r}")
    if any(part in ("", ".", "..", "-") for part in parts):
        raise ValueError(f"Invalid package name for blob key: {name!r}")


def _encode(part: str) -> str:
    if not part:
        raise ValueError("Empty version or tag in blob key")
    encoded = quote(part, safe="")
    # quote() keeps dots, which would turn "." and ".." into path segments
    if encoded in (".", ".."):
        encoded = encoded.replace(".", "%2E")
    return encoded


def package_prefix(name: str) -> str:
    """Return the key prefix holding every blob of a package."""
    _validate_name(name)
    return f"/{name}/-/"


def package_file_prefix(name: str) -> str:
    return f"{package_prefix(name)}{PACKAGE_FILE_DIR}/"


def dist_tag_prefix(name: str) -> str:
    return f"{package_prefix(name)}{DIST_TAG_DIR}/"


def package_file_key(name: str, version: str) -> str:
    """Key of the backed-up version record for ``name@version``."""
    return f"{package_file_prefix(name)}{_encode(version)}.json"


def dist_tag_key(name: str, tag: str) -> str:
    """Key of the backed-up dist-tag pointer for ``name``."""
    return f"{dist_tag_prefix(name)}{_encode(tag)}"


def unpublish_key(name: str) -> str:
    """Key of the unpublish record for ``name``."""
    return f"{package_prefix(name)}{UNPUBLISH_FILENAME}"


def tarball_key(name: str, version: str) -> str:
    """Key of a mirrored tarball, e.g. ``/@scope/pkg/-/pkg-1.0.0.tgz``."""
    basename = name.split("/")[-1]
    return f"{package_prefix(name)}{basename}-{_encode(version)}.tgz"


def version_from_package_file_key(name: str, key: str) -> str:
    """Recover the version from a package-file key.

    Raises:
        ValueError: If the key is not a package-file key of ``name``
    """
    prefix = package_file_prefix(name)
    if not key.startswith(prefix) or not key.endswith(".json"):
        raise ValueError(f"Not a package-file key of {name}: {key}")
    return unquote(key[len(prefix):-len(".json")])


def tag_from_dist_tag_key(name: str, key: str) -> str:
    """Recover the tag from a dist-tag key.

    Raises:
        ValueError: If the key is not a dist-tag key of ``name``
    """
    prefix = dist_tag_prefix(name)
    if not key.startswith(prefix):
        raise ValueError(f"Not a dist-tag key of {name}: {key}")
    return unquote(key[len(prefix):])
