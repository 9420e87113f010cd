"""Sync engine: keeps the local registry in step with an upstream registry."""

from .context import SyncContext
from .documents import assemble_document, build_abbreviated_document, document_etag, render_package
from .locks import NameLockRegistry, get_name_locks
from .reconciler import DocumentReconciler, ReconcileResult
from .restore import BackupRestoreBuilder
from .upstream import UpstreamRegistry
from .users import UserReconciler, UserSyncResult
from .worker import SyncModuleWorker, SyncOutcome, SyncTarget

__all__ = [
    "BackupRestoreBuilder",
    "DocumentReconciler",
    "NameLockRegistry",
    "ReconcileResult",
    "SyncContext",
    "SyncModuleWorker",
    "SyncOutcome",
    "SyncTarget",
    "UpstreamRegistry",
    "UserReconciler",
    "UserSyncResult",
    "assemble_document",
    "build_abbreviated_document",
    "document_etag",
    "get_name_locks",
    "render_package",
]
