"""Configuration management for regmirror.

Handles loading and validation of YAML configuration files describing the
upstream registry, the sync engine and the local storage backends.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

DEFAULT_REGISTRY_URL = "https://registry.npmjs.com"
DEFAULT_CONFIG_PATH = "/etc/regmirror/config.yaml"


@dataclass
class UpstreamConfig:
    """Configuration for the upstream registry."""

    registry_url: str = DEFAULT_REGISTRY_URL
    is_mirror: bool = False  # upstream runs this engine and accepts sync requests
    request_timeout: float = 30.0
    poll_interval: float = 1.0
    poll_max_attempts: int = 30


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    concurrency: int = 4
    private_packages: List[str] = field(default_factory=list)
    private_scopes: List[str] = field(default_factory=list)
    enable_abbreviated_metadata: bool = False
    sync_backup_files: bool = False
    sync_tarballs: bool = True
    sync_dev_dependencies: bool = False


@dataclass
class StorageConfig:
    """Configuration for local storage backends."""

    database_url: str = "sqlite:////var/lib/regmirror/registry.db"
    blob_dir: str = "/var/lib/regmirror/blobs"
    log_dir: str = "/var/log/regmirror"
    log_level: str = "INFO"


@dataclass
class MirrorSyncConfig:
    """Top-level configuration for regmirror."""

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def parse_upstream_config(upstream_dict: Dict[str, Any]) -> UpstreamConfig:
    """Parse the upstream section.

    Args:
        upstream_dict: Upstream configuration dictionary

    Returns:
        UpstreamConfig instance
    """
    return UpstreamConfig(
        registry_url=upstream_dict.get("registry_url", DEFAULT_REGISTRY_URL).rstrip("/"),
        is_mirror=upstream_dict.get("is_mirror", False),
        request_timeout=float(upstream_dict.get("request_timeout", 30.0)),
        poll_interval=float(upstream_dict.get("poll_interval", 1.0)),
        poll_max_attempts=int(upstream_dict.get("poll_max_attempts", 30)),
    )


def parse_sync_config(sync_dict: Dict[str, Any]) -> SyncConfig:
    """Parse the sync section.

    Args:
        sync_dict: Sync configuration dictionary

    Returns:
        SyncConfig instance

    Raises:
        ValueError: If concurrency is not a positive integer
    """
    concurrency = int(sync_dict.get("concurrency", 4))
    if concurrency < 1:
        raise ValueError(f"sync.concurrency must be at least 1, got {concurrency}")

    return SyncConfig(
        concurrency=concurrency,
        private_packages=list(sync_dict.get("private_packages", [])),
        private_scopes=[_normalize_scope(s) for s in sync_dict.get("private_scopes", [])],
        enable_abbreviated_metadata=sync_dict.get("enable_abbreviated_metadata", False),
        sync_backup_files=sync_dict.get("sync_backup_files", False),
        sync_tarballs=sync_dict.get("sync_tarballs", True),
        sync_dev_dependencies=sync_dict.get("sync_dev_dependencies", False),
    )


def parse_storage_config(storage_dict: Dict[str, Any]) -> StorageConfig:
    """Parse the storage section.

    Args:
        storage_dict: Storage configuration dictionary

    Returns:
        StorageConfig instance
    """
    defaults = StorageConfig()
    return StorageConfig(
        database_url=storage_dict.get("database_url", defaults.database_url),
        blob_dir=storage_dict.get("blob_dir", defaults.blob_dir),
        log_dir=storage_dict.get("log_dir", defaults.log_dir),
        log_level=storage_dict.get("log_level", defaults.log_level),
    )


def parse_config(config_dict: Dict[str, Any]) -> MirrorSyncConfig:
    """Parse the full configuration dictionary.

    Args:
        config_dict: Full configuration dictionary

    Returns:
        MirrorSyncConfig instance
    """
    return MirrorSyncConfig(
        upstream=parse_upstream_config(config_dict.get("upstream") or {}),
        sync=parse_sync_config(config_dict.get("sync") or {}),
        storage=parse_storage_config(config_dict.get("storage") or {}),
    )


def _normalize_scope(scope: str) -> str:
    scope = scope.strip().rstrip("/")
    if not scope.startswith("@"):
        scope = "@" + scope
    return scope


def is_private_package(config: MirrorSyncConfig, name: str) -> bool:
    """Check whether a package only lives in the local registry.

    A package is private when its name is listed exactly in
    ``sync.private_packages`` or when it is scoped under one of
    ``sync.private_scopes``.

    Args:
        config: MirrorSyncConfig instance
        name: Package name, scoped or unscoped

    Returns:
        True if the package must never be synced from upstream
    """
    if name in config.sync.private_packages:
        return True

    if name.startswith("@") and "/" in name:
        scope = name.split("/", 1)[0]
        return scope in config.sync.private_scopes

    return False


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is invalid YAML
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_file.open("r") as f:
        config = yaml.safe_load(f)

    if config is None:
        config = {}

    if not isinstance(config, dict):
        raise TypeError(
            f"Configuration root must be a mapping, got {type(config).__name__}"
        )

    return _expand_env_vars(config)


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand environment variables in configuration.

    Args:
        obj: Configuration object (dict, list, str, etc.)

    Returns:
        Configuration with expanded environment variables
    """
    if isinstance(obj, dict):
        return {key: _expand_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return os.path.expandvars(obj)
    else:
        return obj


def load_typed_config(config_path: str = DEFAULT_CONFIG_PATH) -> MirrorSyncConfig:
    """Load and parse configuration into typed dataclasses.

    Args:
        config_path: Path to configuration file

    Returns:
        MirrorSyncConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is invalid YAML
    """
    return parse_config(load_config(config_path))
