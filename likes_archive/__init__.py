from __future__ import annotations

from .config import ArchivePaths, config_sha256, load_config, resolve_paths
from .config_schema import AppConfig
from .errors import ConfigError, NavigationFailed, StorageError
from .orchestrator import CollectionOrchestrator, RunStats, StartResult
from .post import CollectionMode
from .storage import ArchiveStore

__all__ = [
    "AppConfig",
    "ArchivePaths",
    "ArchiveStore",
    "CollectionMode",
    "CollectionOrchestrator",
    "ConfigError",
    "NavigationFailed",
    "RunStats",
    "StartResult",
    "StorageError",
    "config_sha256",
    "load_config",
    "resolve_paths",
]
