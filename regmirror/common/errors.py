"""Exception types raised by the sync engine and its collaborators.

Everything under NotFoundError is benign for a sync run: the worker turns it
into a zero-change outcome. TransientFetchError and MalformedManifest are
recorded as per-name failures. Nothing here is meant to abort a run.
"""

from typing import Optional


class MirrorError(Exception):
    """Base class for regmirror errors."""


class NotFoundError(MirrorError):
    """A package, user or blob does not exist."""


class PackageNotFoundUpstream(NotFoundError):
    """Upstream answered 404 for a package or user."""

    def __init__(self, name: str, status_code: int = 404):
        super().__init__(f"{name} not found upstream (status {status_code})")
        self.name = name
        self.status_code = status_code


class BackupKeyMissing(NotFoundError):
    """A key is absent from the blob store."""

    def __init__(self, key: str):
        super().__init__(f"Blob not found: {key}")
        self.key = key


class BackupNotFound(NotFoundError):
    """No package-file backup records exist for a package."""

    def __init__(self, name: str):
        super().__init__(f"No backup records for {name}")
        self.name = name


class TransientFetchError(MirrorError):
    """Network failure or upstream 5xx response."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        message = f"Fetch failed for {url}: {reason}"
        if status_code is not None:
            message = f"Fetch failed for {url} with status {status_code}: {reason}"
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class MalformedManifest(MirrorError):
    """Upstream returned a manifest or artifact the engine cannot use."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"Malformed manifest for {name}: {reason}")
        self.name = name
        self.reason = reason
