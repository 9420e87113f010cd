"""HTTP client for the upstream registry.

Fetches package documents, user records and tarballs, and, when the upstream
is itself a regmirror instance, asks it to refresh a package before we read
it.
"""

import time
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..common.config import UpstreamConfig
from ..common.errors import MalformedManifest, PackageNotFoundUpstream, TransientFetchError
from ..common.logger import get_logger

logger = get_logger("upstream")

USER_AGENT = "regmirror-sync/0.1"


def package_path(name: str) -> str:
    """URL path of a package document; scoped names keep the @ but escape the /."""
    if name.startswith("@"):
        return "/" + quote(name, safe="@")
    return "/" + quote(name, safe="")


class UpstreamRegistry:
    """Synchronous client for an npm-compatible registry."""

    def __init__(
        self,
        config: UpstreamConfig,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            config: Upstream configuration
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.config = config
        self.registry_url = config.registry_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.registry_url,
            timeout=config.request_timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "UpstreamRegistry":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _get(self, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.get(path, **kwargs)
        except httpx.HTTPError as e:
            raise TransientFetchError(self.registry_url + path, str(e)) from e
        if response.status_code >= 500:
            raise TransientFetchError(
                self.registry_url + path, response.reason_phrase, response.status_code
            )
        return response

    @staticmethod
    def _json_object(name: str, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedManifest(name, "response body is not JSON") from e
        if not isinstance(data, dict):
            raise MalformedManifest(name, f"expected a JSON object, got {type(data).__name__}")
        return data

    def get_package(self, name: str) -> Dict[str, Any]:
        """Fetch the full package document.

        Unpublished packages are returned as documents carrying
        ``time.unpublished`` even when upstream answers 404 for them.

        Raises:
            PackageNotFoundUpstream: Upstream has no such package
            TransientFetchError: Network failure or 5xx
            MalformedManifest: Body is not a usable package document
        """
        path = package_path(name)
        response = self._get(path, headers={"Accept": "application/json"})

        if response.status_code == 404:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and isinstance(body.get("time"), dict) \
                    and body["time"].get("unpublished"):
                return body
            raise PackageNotFoundUpstream(name, response.status_code)

        if response.status_code != 200:
            raise TransientFetchError(
                self.registry_url + path, response.reason_phrase, response.status_code
            )

        document = self._json_object(name, response)
        time_info = document.get("time")
        if isinstance(time_info, dict) and time_info.get("unpublished"):
            return document
        if not isinstance(document.get("versions"), dict):
            raise MalformedManifest(name, "missing versions mapping")
        return document

    def get_user(self, name: str) -> Optional[Dict[str, Any]]:
        """Fetch an upstream account, or None when it does not exist.

        Raises:
            TransientFetchError: Network failure or 5xx
            MalformedManifest: Body is not a JSON object
        """
        path = "/-/user/org.couchdb.user:" + quote(name, safe="")
        response = self._get(path)
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise TransientFetchError(
                self.registry_url + path, response.reason_phrase, response.status_code
            )
        user = self._json_object(name, response)
        user.setdefault("name", name)
        return user

    def download_tarball(self, url: str, dest: Path) -> int:
        """Stream a tarball to ``dest``.

        Returns:
            Number of bytes written

        Raises:
            PackageNotFoundUpstream: Tarball is gone upstream
            TransientFetchError: Network failure or non-200 status
        """
        size = 0
        try:
            with self._client.stream("GET", url) as response:
                if response.status_code == 404:
                    raise PackageNotFoundUpstream(url, response.status_code)
                if response.status_code != 200:
                    raise TransientFetchError(url, response.reason_phrase, response.status_code)
                with open(dest, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
                        size += len(chunk)
        except httpx.HTTPError as e:
            raise TransientFetchError(url, str(e)) from e
        return size

    def sync_upstream(self, name: str) -> bool:
        """Ask an upstream regmirror instance to sync ``name`` and wait for it.

        Returns:
            True once upstream reports the sync finished, False if it did not
            finish within the configured number of polls
        """
        path = package_path(name) + "/sync"
        try:
            response = self._client.put(path, params={"nodeps": "true"})
        except httpx.HTTPError as e:
            raise TransientFetchError(self.registry_url + path, str(e)) from e
        if response.status_code not in (200, 201):
            raise TransientFetchError(
                self.registry_url + path, response.reason_phrase, response.status_code
            )

        log_id = self._json_object(name, response).get("logId")
        if log_id is None:
            return True

        log_path = f"{path}/log/{log_id}"
        for _ in range(self.config.poll_max_attempts):
            body = self._json_object(name, self._get(log_path))
            if body.get("syncDone"):
                logger.debug(f"[{name}] upstream sync {log_id} done")
                return True
            time.sleep(self.config.poll_interval)

        logger.warning(f"[{name}] upstream sync {log_id} still running, giving up waiting")
        return False
