"""Collaborators shared by sync workers."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from ..backup.store import BlobStore, LocalBlobStore
from ..common.config import MirrorSyncConfig
from ..registry.database import create_session_factory
from ..registry.service import LogService, PackageService, UserService
from .locks import NameLockRegistry, get_name_locks
from .upstream import UpstreamRegistry

# Receives {"event": "package:sync", "name": ..., "payload": {"changedVersions": [...]}}
GlobalHook = Callable[[Dict[str, Any]], Any]
CacheRefresher = Callable[[str], Any]


@dataclass
class SyncContext:
    """Everything a SyncModuleWorker needs besides its target."""

    config: MirrorSyncConfig
    package_service: PackageService
    user_service: UserService
    upstream: UpstreamRegistry
    store: BlobStore
    log_service: Optional[LogService] = None
    global_hook: Optional[GlobalHook] = None
    cache_refresher: Optional[CacheRefresher] = None
    name_locks: NameLockRegistry = field(default_factory=get_name_locks)

    @classmethod
    def from_config(
        cls,
        config: MirrorSyncConfig,
        global_hook: Optional[GlobalHook] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "SyncContext":
        """Wire the default collaborators from configuration.

        When the upstream is itself a regmirror instance, its sync endpoint
        doubles as the upstream cache refresher.
        """
        session_factory = create_session_factory(config.storage.database_url)
        upstream = UpstreamRegistry(config.upstream, transport=transport)
        return cls(
            config=config,
            package_service=PackageService(session_factory),
            user_service=UserService(session_factory),
            log_service=LogService(session_factory),
            upstream=upstream,
            store=LocalBlobStore(config.storage.blob_dir),
            global_hook=global_hook,
            cache_refresher=upstream.sync_upstream if config.upstream.is_mirror else None,
        )
