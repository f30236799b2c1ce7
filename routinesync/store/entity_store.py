"""In-memory entity collections with JSON snapshot support."""

import logging
from typing import Any, Mapping

from ..models import (
    CHECKLISTS,
    DEFAULT_COLLECTIONS,
    LOG_ENTRIES,
    PARSERS,
    STEPS,
    Checklist,
    Entity,
    ExecutionLogEntry,
    Step,
    to_row,
)
from ..sync.reconciler import apply_batch

logger = logging.getLogger(__name__)


class EntityStore:
    """Holds checklists, steps and execution log entries keyed by id.

    The store only ever contains live entities: tombstoned rows are removed
    by the reconciler. Every mutation goes through :meth:`apply`, which swaps
    in the reconciled collections as a whole.
    """

    def __init__(self):
        self._collections: dict[str, dict[str, Entity]] = {
            name: {} for name in DEFAULT_COLLECTIONS
        }

    def apply(self, diffs_by_collection: Mapping[str, Any]) -> None:
        """Merge a batch of wire rows keyed by collection name."""
        self._collections = apply_batch(self._collections, diffs_by_collection)

    # ==================== Queries ====================

    @property
    def checklists(self) -> dict[str, Checklist]:
        return self._collections[CHECKLISTS]  # type: ignore[return-value]

    @property
    def steps(self) -> dict[str, Step]:
        return self._collections[STEPS]  # type: ignore[return-value]

    @property
    def log_entries(self) -> dict[str, ExecutionLogEntry]:
        return self._collections[LOG_ENTRIES]  # type: ignore[return-value]

    def sorted_checklists(self) -> list[Checklist]:
        return sorted(self.checklists.values(), key=lambda c: c.ordinal)

    def steps_for(self, checklist_id: str) -> list[Step]:
        """Steps of one checklist in ordinal order."""
        return sorted(
            (s for s in self.steps.values() if s.checklist_id == checklist_id),
            key=lambda s: s.ordinal,
        )

    def entries_between(self, start_ms: int, end_ms: int) -> list[ExecutionLogEntry]:
        """Log entries whose start (or last-write) time falls in the window."""
        return [
            e for e in self.log_entries.values() if start_ms <= e.sort_time <= end_ms
        ]

    def open_entry(self, checklist_id: str) -> ExecutionLogEntry | None:
        """The most recent normal entry of a checklist still lacking an end."""
        candidates = [
            e
            for e in self.log_entries.values()
            if e.checklist_id == checklist_id and not e.kind.is_marker and e.is_open
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda e: (e.sort_time, e.meta.updated_at))

    def counts(self) -> dict[str, int]:
        return {name: len(entities) for name, entities in self._collections.items()}

    # ==================== Snapshots ====================

    def to_snapshot(self) -> dict[str, list[dict[str, Any]]]:
        """JSON-serializable snapshot of every collection."""
        return {
            name: [to_row(entity) for entity in entities.values()]
            for name, entities in self._collections.items()
        }

    def load_snapshot(self, snapshot: Mapping[str, Any] | None) -> None:
        """Replace all collections with :meth:`to_snapshot` output.

        Unknown collections are ignored; an empty or missing snapshot leaves
        the store empty.
        """
        self._collections = {name: {} for name in DEFAULT_COLLECTIONS}
        if not snapshot:
            return

        known = {name: rows for name, rows in snapshot.items() if name in PARSERS}
        self.apply(known)
        logger.debug(f"Restored entity store from snapshot: {self.counts()}")

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any] | None) -> "EntityStore":
        store = cls()
        store.load_snapshot(snapshot)
        return store
