"""Sync worker: drives one sync run against the upstream registry.

A worker owns a frontier of names (packages or users). start() drains it on
a background thread through a bounded thread pool. Each package is
reconciled while holding the process-wide lock for its name, so concurrent
runs touching the same package take turns. Newly found dependencies are
pushed back onto the frontier. Per-name failures are recorded and the run
always reaches its end signal.
"""

import asyncio
import hashlib
import inspect
import itertools
import json
import tempfile
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..backup import keys
from ..common.config import is_private_package
from ..common.errors import (
    BackupKeyMissing,
    BackupNotFound,
    MalformedManifest,
    PackageNotFoundUpstream,
    TransientFetchError,
)
from ..common.logger import get_logger
from .context import SyncContext
from .documents import dependency_names
from .reconciler import PUBLISHED_LOCALLY, DocumentReconciler, ReconcileResult, unpublished_info
from .restore import BackupRestoreBuilder
from .users import UserReconciler

logger = get_logger("sync_worker")

_worker_ids = itertools.count(1)


class SyncTarget(Enum):
    """What a worker's names refer to."""

    MODULE = "module"
    USER = "user"


@dataclass
class SyncOutcome:
    """Result of processing one name."""

    name: str
    failed: bool = False
    error: Optional[str] = None
    changed_versions: List[str] = field(default_factory=list)
    removed_versions: List[str] = field(default_factory=list)
    skipped: bool = False  # private or locally published package
    not_found: bool = False
    unpublished: bool = False
    user_deleted: bool = False

    @property
    def changed_count(self) -> int:
        """Versions written or removed for this name."""
        return len(self.changed_versions) + len(self.removed_versions)


class SyncModuleWorker:
    """One sync run over a set of package or user names.

    Example:
        >>> worker = SyncModuleWorker("lodash", "admin", context)
        >>> worker.start()
        >>> worker.wait()
        >>> worker.successes, worker.failures
    """

    def __init__(
        self,
        name: Union[str, Iterable[str]],
        username: str,
        context: SyncContext,
        type: str = "module",
        no_dep: bool = False,
        sync_from_backup: bool = False,
        log_id: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        """Initialize a sync run.

        Args:
            name: A name or an ordered list of names to sync
            username: Actor the run is performed for
            context: Shared collaborators
            type: "module" or "user"
            no_dep: Do not follow dependencies of synced packages
            sync_from_backup: Rebuild documents from backup records instead
                of fetching them upstream
            log_id: Module log id the run's trace is appended to
            concurrency: Pool size; defaults to sync.concurrency from config
        """
        self.id = next(_worker_ids)
        self.names = [name] if isinstance(name, str) else list(name)
        self.username = username
        self.context = context
        self.config = context.config
        self.type = SyncTarget(type)
        self.no_dep = no_dep
        self.sync_from_backup = sync_from_backup
        self.log_id = log_id
        self.concurrency = concurrency or self.config.sync.concurrency

        self.reconciler = DocumentReconciler(
            context.package_service, self.config.sync.enable_abbreviated_metadata
        )
        self.restorer = BackupRestoreBuilder(context.store)
        self.user_reconciler = UserReconciler(context.upstream, context.user_service)

        self.successes: List[str] = []
        self.failures: List[str] = []
        self.results: Dict[str, SyncOutcome] = {}

        self._lock = threading.Lock()
        self._queue: deque = deque()
        self._known: set = set()
        self._in_progress: set = set()
        self._started = False
        self._closed = False
        self._finished = False
        self._ended = threading.Event()
        self._end_callbacks: List[Callable[["SyncModuleWorker"], Any]] = []
        self._thread: Optional[threading.Thread] = None

        for initial in self.names:
            self._push(initial)

    # Frontier

    def _push(self, name: str) -> bool:
        name = name.strip() if isinstance(name, str) else ""
        if not name or name in self._known:
            return False
        self._known.add(name)
        self._queue.append(name)
        return True

    def enqueue(self, name: str) -> bool:
        """Add a name to the frontier.

        Safe to call from any thread while the run is active. Names already
        queued or processed in this run are ignored, and so is everything
        once the run has ended.

        Returns:
            True if the name was queued
        """
        with self._lock:
            if self._closed:
                return False
            return self._push(name)

    add = enqueue

    @property
    def in_progress(self) -> List[str]:
        with self._lock:
            return sorted(self._in_progress)

    @property
    def pending(self) -> List[str]:
        with self._lock:
            return list(self._queue)

    # Lifecycle

    def start(self) -> None:
        """Start draining the frontier in the background and return."""
        with self._lock:
            if self._started:
                logger.warning(f"[worker#{self.id}] already started")
                return
            self._started = True

        self._thread = threading.Thread(
            target=self._run, name=f"sync-worker-{self.id}", daemon=True
        )
        self._thread.start()

    def on_end(self, callback: Callable[["SyncModuleWorker"], Any]) -> None:
        """Register a callback for the end of the run.

        Callbacks registered after the end are called immediately.
        """
        with self._lock:
            if not self._finished:
                self._end_callbacks.append(callback)
                return
        callback(self)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the run ends.

        Returns:
            False if the timeout expired first
        """
        return self._ended.wait(timeout)

    @property
    def ended(self) -> bool:
        return self._ended.is_set()

    def _run(self) -> None:
        try:
            self.log(
                f"[worker#{self.id}] start syncing {self.type.value}s: {', '.join(self.names)}, "
                f"concurrency: {self.concurrency}, no_dep: {self.no_dep}, "
                f"from backup: {self.sync_from_backup}"
            )
            with ThreadPoolExecutor(
                max_workers=self.concurrency, thread_name_prefix=f"sync-{self.id}"
            ) as pool:
                pending = set()
                while True:
                    with self._lock:
                        while self._queue and len(pending) < self.concurrency:
                            name = self._queue.popleft()
                            self._in_progress.add(name)
                            pending.add(pool.submit(self._process, name))
                        if not pending:
                            self._closed = True
                            break
                    _, pending = wait(pending, return_when=FIRST_COMPLETED)
        finally:
            self._finish()

    def _finish(self) -> None:
        with self._lock:
            self._closed = True
            self._finished = True
            callbacks = list(self._end_callbacks)
            self._end_callbacks.clear()

        self.log(
            f"[worker#{self.id}] done, {len(self.successes)} successes: {self.successes}, "
            f"{len(self.failures)} failures: {self.failures}"
        )
        try:
            for callback in callbacks:
                try:
                    callback(self)
                except Exception:
                    logger.exception(f"[worker#{self.id}] end callback failed")
        finally:
            self._ended.set()

    def _process(self, name: str) -> None:
        outcome = SyncOutcome(name=name, failed=True, error="sync interrupted")
        try:
            if self.type is SyncTarget.USER:
                with self.context.name_locks.hold(f"user:{name}"):
                    outcome = self._sync_user(name)
            else:
                with self.context.name_locks.hold(name):
                    outcome = self._sync_module(name)
        except Exception as e:
            outcome.error = str(e)
            logger.exception(f"[{name}] sync failed")
            self.log(f"[{name}] [error] sync failed: {e}")
        finally:
            self._record(outcome)

    def _record(self, outcome: SyncOutcome) -> None:
        with self._lock:
            self.results[outcome.name] = outcome
            self._in_progress.discard(outcome.name)
            if outcome.failed:
                self.failures.append(outcome.name)
            else:
                self.successes.append(outcome.name)

    # Module sync

    def _sync_module(self, name: str) -> SyncOutcome:
        if is_private_package(self.config, name):
            self.log(f"[{name}] ignore sync private package")
            return SyncOutcome(name=name, skipped=True)

        if self.sync_from_backup:
            unpublish_record = self.restorer.load_unpublish_record(name)
            if unpublish_record is not None:
                return self._unpublished(name, unpublish_record)
            try:
                document = self.restorer.restore(name)
            except BackupNotFound:
                self.log(f"[{name}] no backup records, nothing to sync")
                return SyncOutcome(name=name, not_found=True)
        else:
            if self.config.upstream.is_mirror:
                self.refresh_upstream_cache(name)
            try:
                document = self.context.upstream.get_package(name)
            except PackageNotFoundUpstream:
                self.log(f"[{name}] not found upstream, nothing to sync")
                return SyncOutcome(name=name, not_found=True)

            unpublish_info = unpublished_info(document)
            if unpublish_info is not None:
                return self._unpublished(name, unpublish_info)

        result = self.reconciler.reconcile(name, document)
        failed_versions = []
        if not self.sync_from_backup:
            failed_versions = self._mirror_tarballs(name, result)
        self.reconciler.persist(result, author=self.username)

        package_service = self.context.package_service
        if package_service.show_unpublished_module(name) is not None:
            package_service.remove_unpublished_module(name)
            self.log(f"[{name}] published again upstream, cleared unpublish record")

        changed = result.changed_versions
        self.log(
            f"[{name}] synced, {len(result.new_versions)} new, "
            f"{len(result.updated_versions)} updated, {len(result.removed_versions)} removed, "
            f"changed versions: {changed}"
        )

        if not self.no_dep and changed and result.latest_record is not None:
            self._add_dependencies(name, result.latest_record)

        self._call_global_hook(name, changed)

        if self.config.sync.sync_backup_files:
            self.save_backup_files(name)

        outcome = SyncOutcome(
            name=name,
            changed_versions=changed,
            removed_versions=list(result.removed_versions),
        )
        if failed_versions:
            outcome.failed = True
            outcome.error = f"tarball sync failed for versions: {', '.join(failed_versions)}"
        return outcome

    def _add_dependencies(self, name: str, record: Dict[str, Any]) -> None:
        include_dev = self.config.sync.sync_dev_dependencies
        for dependency in dependency_names(record, include_dev=include_dev):
            if is_private_package(self.config, dependency):
                continue
            if self.enqueue(dependency):
                self.log(f"[{name}] add dependency {dependency}")

    def _mirror_tarballs(self, name: str, result: ReconcileResult) -> List[str]:
        if not self.config.sync.sync_tarballs:
            return []

        failed = []
        for version in sorted(result.records):
            dist = result.records[version].get("dist") or {}
            if dist.get("key") or not dist.get("tarball"):
                continue
            try:
                key = self._mirror_tarball(name, version, dist)
            except (TransientFetchError, PackageNotFoundUpstream, MalformedManifest) as e:
                self.log(f"[{name}] [error] tarball of {version} not synced: {e}")
                failed.append(version)
                result.discard(version)
                continue
            result.attach_tarball_key(version, key)
        return failed

    def _mirror_tarball(self, name: str, version: str, dist: Dict[str, Any]) -> str:
        key = keys.tarball_key(name, version)
        with tempfile.TemporaryDirectory(prefix="regmirror-") as tmp:
            path = Path(tmp) / "package.tgz"
            size = self.context.upstream.download_tarball(dist["tarball"], path)

            expected_size = dist.get("size")
            if isinstance(expected_size, int) and expected_size != size:
                raise MalformedManifest(
                    name, f"{version} tarball size {size} does not match {expected_size}"
                )

            expected_shasum = dist.get("shasum")
            if expected_shasum:
                sha1 = hashlib.sha1()
                with path.open("rb") as f:
                    for chunk in iter(lambda: f.read(65536), b""):
                        sha1.update(chunk)
                if sha1.hexdigest() != expected_shasum:
                    raise MalformedManifest(
                        name, f"{version} tarball shasum {sha1.hexdigest()} does not match {expected_shasum}"
                    )

            self.context.store.upload_file(key, path)
        self.log(f"[{name}] mirrored tarball {version} -> {key} ({size} bytes)")
        return key

    def _unpublished(self, name: str, info: Dict[str, Any]) -> SyncOutcome:
        """Apply an upstream unpublish event to the local store."""
        package_service = self.context.package_service
        rows = package_service.list_modules_by_name(name)
        if any(row.package.get(PUBLISHED_LOCALLY) for row in rows):
            self.log(f"[{name}] unpublished upstream but published locally, ignore")
            return SyncOutcome(name=name, skipped=True)

        removed = [row.version for row in rows]
        package_service.remove_modules(name)
        package_service.remove_module_tags(name)
        package_service.save_unpublished_module(name, info)
        self.log(f"[{name}] unpublished upstream, removed {len(removed)} local versions")

        store = self.context.store
        for row in rows:
            dist = row.package.get("dist") or {}
            self._remove_blob(dist.get("key") or keys.tarball_key(name, row.version))
        for key in store.list(keys.package_file_prefix(name)) + store.list(keys.dist_tag_prefix(name)):
            self._remove_blob(key)
        if rows:
            self.log(f"[{name}] removed tarballs and backup records of unpublished versions")

        if self.config.sync.sync_backup_files and not self.sync_from_backup:
            record = {
                "name": info.get("name"),
                "time": info.get("time"),
                "tags": info.get("tags") or {},
                "maintainers": info.get("maintainers") or [],
                "versions": info.get("versions") or [],
            }
            self.context.store.upload(
                keys.unpublish_key(name), json.dumps(record, sort_keys=True, ensure_ascii=False)
            )
            self.log(f"[{name}] saved unpublish record")

        return SyncOutcome(name=name, unpublished=True, removed_versions=sorted(removed))

    # User sync

    def _sync_user(self, name: str) -> SyncOutcome:
        result = self.user_reconciler.reconcile_user(name)
        if result.synced:
            self.log(f"[user:{name}] synced")
        elif result.deleted:
            self.log(f"[user:{name}] deleted, no longer exists upstream")
        elif result.retained:
            self.log(f"[user:{name}] kept, registered locally")
        return SyncOutcome(
            name=name,
            user_deleted=result.deleted,
            not_found=not (result.synced or result.retained or result.deleted),
        )

    # Collaborators

    def refresh_upstream_cache(self, name: str) -> bool:
        """Ask the upstream-fronting cache to refresh ``name``.

        Best effort: errors are logged and never affect the run.

        Returns:
            True if the refresher ran without raising
        """
        refresher = self.context.cache_refresher
        if refresher is None:
            return False
        try:
            refresher(name)
        except Exception as e:
            logger.warning(f"[{name}] upstream cache refresh failed: {e}")
            return False
        self.log(f"[{name}] upstream cache refreshed")
        return True

    def _call_global_hook(self, name: str, changed_versions: List[str]) -> None:
        hook = self.context.global_hook
        if hook is None:
            return

        envelope = {
            "event": "package:sync",
            "name": name,
            "type": "package",
            "version": None,
            "payload": {"changedVersions": list(changed_versions)},
        }
        try:
            result = hook(envelope)
            if inspect.isawaitable(result):
                asyncio.run(_await(result))
        except Exception:
            logger.exception(f"[{name}] global hook failed")

    # Backups

    def save_backup_files(self, name: str) -> None:
        """Bring the backup records of ``name`` in line with the local store.

        Writes one blob per version or tag whose stored record is missing or
        different, and removes records of versions and tags that no longer
        exist locally.
        """
        store = self.context.store
        package_service = self.context.package_service

        versions = set()
        for row in package_service.list_modules_by_name(name):
            versions.add(row.version)
            key = keys.package_file_key(name, row.version)
            content = json.dumps(row.package, sort_keys=True, ensure_ascii=False).encode("utf-8")
            if self._read_blob(key) != content:
                store.upload(key, content)
                self.log(f"[{name}] backup {row.version} -> {key}")

        tags = {row.tag: row.version for row in package_service.list_module_tags(name)}
        for tag, version in sorted(tags.items()):
            key = keys.dist_tag_key(name, tag)
            stored = self._read_blob(key)
            if stored is None or stored.decode("utf-8").strip() != version:
                store.upload(key, version)
                self.log(f"[{name}] backup dist-tag {tag}: {version}")

        for key in store.list(keys.dist_tag_prefix(name)):
            if keys.tag_from_dist_tag_key(name, key) not in tags:
                self._remove_blob(key)
                self.log(f"[{name}] removed backup of dist-tag {key}")

        for key in store.list(keys.package_file_prefix(name)):
            if keys.version_from_package_file_key(name, key) not in versions:
                self._remove_blob(key)
                self.log(f"[{name}] removed backup of version {key}")

        unpublish_key = keys.unpublish_key(name)
        if versions and self._read_blob(unpublish_key) is not None:
            self._remove_blob(unpublish_key)
            self.log(f"[{name}] removed backup of unpublish record")

    def _read_blob(self, key: str) -> Optional[bytes]:
        try:
            return self.context.store.download(key)
        except BackupKeyMissing:
            return None

    def _remove_blob(self, key: str) -> None:
        try:
            self.context.store.remove(key)
        except BackupKeyMissing:
            logger.debug(f"Backup {key} already removed")

    # Logging

    def log(self, message: str) -> None:
        """Write a line to the logger and, when set, the run's module log.

        A module log that cannot be written is reported on the logger and
        does not interrupt the run.
        """
        logger.info(message)
        if self.log_id is None or self.context.log_service is None:
            return
        timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        try:
            self.context.log_service.append(self.log_id, f"[{timestamp}] {message}")
        except Exception as e:
            logger.warning(f"[worker#{self.id}] could not append to sync log {self.log_id}: {e}")

    # One-shot entry point

    @classmethod
    def sync(cls, name: str, username: str, context: SyncContext) -> int:
        """Sync one package without following dependencies.

        Returns:
            Number of versions written or removed; 0 when the package does
            not exist or is already up to date
        """
        worker = cls(name, username, context, no_dep=True)
        worker.start()
        worker.wait()
        outcome = worker.results.get(name)
        return outcome.changed_count if outcome else 0


async def _await(awaitable: Any) -> Any:
    return await awaitable
