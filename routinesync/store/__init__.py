"""Local state for routinesync clients.

Provides:
- In-memory entity collections (checklists, steps, execution log entries)
- SQLite persistence for snapshots, per-view cursors and signals
"""

from .entity_store import EntityStore
from .local_store import LocalStore

__all__ = ["EntityStore", "LocalStore"]
