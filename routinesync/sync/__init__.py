"""Sync infrastructure for offline-first routine data.

Merges remote diffs into local collections, coordinates pull/push cycles
per view, and broadcasts change signals between sibling contexts.
"""

from .reconciler import apply_batch, apply_diffs
from .remote import PullResponse, RemoteSyncClient
from .notifier import Notifier, SignalMessage, SignalType
from .coordinator import SyncContext, SyncCoordinator, SyncResult, SyncStatus

__all__ = [
    "apply_batch",
    "apply_diffs",
    "PullResponse",
    "RemoteSyncClient",
    "Notifier",
    "SignalMessage",
    "SignalType",
    "SyncContext",
    "SyncCoordinator",
    "SyncResult",
    "SyncStatus",
]
