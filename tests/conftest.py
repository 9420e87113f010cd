"""Pytest configuration and shared fixtures."""

import dataclasses

import pytest

from regmirror.backup.store import LocalBlobStore
from regmirror.common.config import MirrorSyncConfig, StorageConfig, SyncConfig, UpstreamConfig
from regmirror.registry.database import create_session_factory
from regmirror.registry.service import LogService, PackageService, UserService
from regmirror.sync.context import SyncContext
from regmirror.sync.locks import NameLockRegistry
from regmirror.sync.upstream import UpstreamRegistry
from tests.factories import REGISTRY_URL, FakeRegistry


@pytest.fixture
def sample_config(tmp_path):
    """Sample configuration dictionary."""
    return {
        "upstream": {
            "registry_url": "https://registry.npmjs.com/",
            "request_timeout": 10,
        },
        "sync": {
            "concurrency": 8,
            "private_packages": ["internal-tool"],
            "private_scopes": ["acme", "@corp"],
            "enable_abbreviated_metadata": True,
            "sync_backup_files": True,
        },
        "storage": {
            "database_url": f"sqlite:///{tmp_path / 'registry.db'}",
            "blob_dir": str(tmp_path / "blobs"),
            "log_level": "DEBUG",
        },
    }


@pytest.fixture
def fake_registry():
    """Fake upstream registry."""
    return FakeRegistry()


@pytest.fixture
def session_factory(tmp_path):
    return create_session_factory(f"sqlite:///{tmp_path / 'registry.db'}")


@pytest.fixture
def package_service(session_factory):
    return PackageService(session_factory)


@pytest.fixture
def user_service(session_factory):
    return UserService(session_factory)


@pytest.fixture
def log_service(session_factory):
    return LogService(session_factory)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def mirror_config(tmp_path):
    """Typed configuration pointing at the fake registry and tmp storage."""
    return MirrorSyncConfig(
        upstream=UpstreamConfig(registry_url=REGISTRY_URL, poll_interval=0),
        sync=SyncConfig(concurrency=2),
        storage=StorageConfig(
            database_url=f"sqlite:///{tmp_path / 'registry.db'}",
            blob_dir=str(tmp_path / "blobs"),
            log_dir=str(tmp_path / "logs"),
        ),
    )


@pytest.fixture
def make_context(
    mirror_config, package_service, user_service, log_service, blob_store, fake_registry
):
    """Factory for sync contexts sharing one store and one fake upstream.

    Keyword arguments override fields of the sync configuration section.
    """
    upstreams = []

    def factory(global_hook=None, is_mirror=False, **sync_overrides):
        config = dataclasses.replace(
            mirror_config,
            upstream=dataclasses.replace(mirror_config.upstream, is_mirror=is_mirror),
            sync=dataclasses.replace(mirror_config.sync, **sync_overrides),
        )
        upstream = UpstreamRegistry(config.upstream, transport=fake_registry.transport())
        upstreams.append(upstream)
        return SyncContext(
            config=config,
            package_service=package_service,
            user_service=user_service,
            upstream=upstream,
            store=blob_store,
            log_service=log_service,
            global_hook=global_hook,
            cache_refresher=upstream.sync_upstream if is_mirror else None,
            name_locks=NameLockRegistry(),
        )

    yield factory

    for upstream in upstreams:
        upstream.close()


@pytest.fixture
def sync_context(make_context):
    return make_context()
