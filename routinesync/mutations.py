"""Builders that turn local user actions into stamped diff rows.

Each builder returns a Mutation: the same wire rows the remote would send
back, so the coordinator can apply it optimistically through the reconciler
and then push it unchanged.
"""

import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable

from .errors import MutationError
from .models import (
    CHECKLISTS,
    LOG_ENTRIES,
    MARKER_STEP_ID,
    STEPS,
    Checklist,
    ExecutionLogEntry,
    LogKind,
    Step,
    WriteMeta,
    to_row,
)

if TYPE_CHECKING:
    from .runs.reconstructor import Row, Run
    from .store.entity_store import EntityStore

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Mutation:
    """Rows to apply locally and push, keyed by collection name."""

    changes: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def add(self, collection: str, row: dict[str, Any]) -> "Mutation":
        self.changes.setdefault(collection, []).append(row)
        return self

    def merge(self, other: "Mutation") -> "Mutation":
        for collection, rows in other.changes.items():
            self.changes.setdefault(collection, []).extend(rows)
        return self

    @property
    def row_count(self) -> int:
        return sum(len(rows) for rows in self.changes.values())

    @property
    def is_empty(self) -> bool:
        return self.row_count == 0


class LocalMutations:
    """Creates mutations against the current state of an entity store."""

    def __init__(
        self,
        store: "EntityStore",
        device_id: str,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the builder.

        Args:
            store: Store the mutations are computed against.
            device_id: Writer identity stamped into updated_by.
            clock: Millisecond clock, injectable for tests.
        """
        self.store = store
        self.device_id = device_id
        self._clock = clock

    def _meta(self) -> WriteMeta:
        return WriteMeta(updated_at=self._clock(), updated_by=self.device_id)

    def _checklist(self, checklist_id: str) -> Checklist:
        checklist = self.store.checklists.get(checklist_id)
        if checklist is None:
            raise MutationError(f"Unknown checklist {checklist_id}")
        return checklist

    def _step(self, step_id: str) -> Step:
        step = self.store.steps.get(step_id)
        if step is None:
            raise MutationError(f"Unknown step {step_id}")
        return step

    def _entry(self, entry_id: str) -> ExecutionLogEntry:
        entry = self.store.log_entries.get(entry_id)
        if entry is None:
            raise MutationError(f"Unknown log entry {entry_id}")
        return entry

    def _tombstone(self, entity: Any) -> dict[str, Any]:
        meta = self._meta()
        return to_row(dataclasses.replace(entity, meta=meta), deleted_at=meta.updated_at)

    # ==================== Checklists ====================

    def create_checklist(self, title: str) -> Mutation:
        checklist = Checklist(
            id=str(uuid.uuid4()),
            title=title,
            ordinal=len(self.store.checklists),
            meta=self._meta(),
        )
        return Mutation().add(CHECKLISTS, to_row(checklist))

    def rename_checklist(self, checklist_id: str, title: str) -> Mutation:
        checklist = dataclasses.replace(
            self._checklist(checklist_id), title=title, meta=self._meta()
        )
        return Mutation().add(CHECKLISTS, to_row(checklist))

    def delete_checklist(self, checklist_id: str) -> Mutation:
        """Tombstone a checklist together with its steps."""
        mutation = Mutation().add(CHECKLISTS, self._tombstone(self._checklist(checklist_id)))
        for step in self.store.steps_for(checklist_id):
            mutation.add(STEPS, self._tombstone(step))
        return mutation

    # ==================== Steps ====================

    def add_step(
        self, checklist_id: str, title: str, target_sec: int | None = None
    ) -> Mutation:
        self._checklist(checklist_id)
        step = Step(
            id=str(uuid.uuid4()),
            checklist_id=checklist_id,
            title=title,
            ordinal=len(self.store.steps_for(checklist_id)),
            target_sec=target_sec,
            meta=self._meta(),
        )
        return Mutation().add(STEPS, to_row(step))

    def update_step(
        self,
        step_id: str,
        title: str | None = None,
        is_done: bool | None = None,
        target_sec: int | None = None,
        clear_target: bool = False,
    ) -> Mutation:
        """Change any of a step's editable fields; None leaves a field as is.

        Pass ``clear_target=True`` to remove the step's target time.
        """
        if clear_target and target_sec is not None:
            raise MutationError("target_sec and clear_target are mutually exclusive")
        step = self._step(step_id)
        changes: dict[str, Any] = {"meta": self._meta()}
        if title is not None:
            changes["title"] = title
        if is_done is not None:
            changes["is_done"] = is_done
        if target_sec is not None:
            changes["target_sec"] = target_sec
        elif clear_target:
            changes["target_sec"] = None
        return Mutation().add(STEPS, to_row(dataclasses.replace(step, **changes)))

    def move_step(self, step_id: str, delta: int) -> Mutation:
        """Swap a step with its neighbour ``delta`` places away.

        Moving past either end is a no-op and returns an empty mutation.
        """
        step = self._step(step_id)
        siblings = self.store.steps_for(step.checklist_id)
        index = next(i for i, s in enumerate(siblings) if s.id == step_id)
        target = index + delta
        if delta == 0 or not 0 <= target < len(siblings):
            return Mutation()

        other = siblings[target]
        meta = self._meta()
        return (
            Mutation()
            .add(STEPS, to_row(dataclasses.replace(step, ordinal=target, meta=meta)))
            .add(STEPS, to_row(dataclasses.replace(other, ordinal=index, meta=meta)))
        )

    def delete_step(self, step_id: str) -> Mutation:
        return Mutation().add(STEPS, self._tombstone(self._step(step_id)))

    # ==================== Execution log ====================

    def start_step(
        self, checklist_id: str, step_id: str, at: int | None = None
    ) -> Mutation:
        """Open a normal log entry for a step."""
        self._checklist(checklist_id)
        meta = self._meta()
        entry = ExecutionLogEntry(
            id=str(uuid.uuid4()),
            checklist_id=checklist_id,
            step_id=step_id,
            start_ms=at if at is not None else meta.updated_at,
            kind=LogKind.NORMAL,
            meta=meta,
        )
        return Mutation().add(LOG_ENTRIES, to_row(entry))

    def end_step(self, entry_id: str, at: int | None = None) -> Mutation:
        """Close an open log entry, recording its duration."""
        entry = self._entry(entry_id)
        meta = self._meta()
        end_ms = at if at is not None else meta.updated_at
        duration = max(0, end_ms - entry.start_ms) if entry.start_ms is not None else None
        closed = dataclasses.replace(
            entry, end_ms=end_ms, explicit_duration_ms=duration, meta=meta
        )
        return Mutation().add(LOG_ENTRIES, to_row(closed))

    def mark(
        self,
        checklist_id: str,
        kind: LogKind,
        at: int | None = None,
        end_at: int | None = None,
    ) -> Mutation:
        """Record a run marker.

        PROCRASTINATION_BEFORE_FIRST markers carry the idle interval as
        start/end; run boundaries are instants.
        """
        if kind is LogKind.NORMAL:
            raise MutationError("Use start_step for normal entries")
        self._checklist(checklist_id)
        meta = self._meta()
        start_ms = at if at is not None else meta.updated_at
        entry = ExecutionLogEntry(
            id=str(uuid.uuid4()),
            checklist_id=checklist_id,
            step_id=MARKER_STEP_ID,
            start_ms=start_ms,
            end_ms=end_at if end_at is not None else start_ms,
            kind=kind,
            meta=meta,
        )
        return Mutation().add(LOG_ENTRIES, to_row(entry))

    def set_success(self, entry_id: str, success: bool) -> Mutation:
        entry = dataclasses.replace(
            self._entry(entry_id), success=success, meta=self._meta()
        )
        return Mutation().add(LOG_ENTRIES, to_row(entry))

    def toggle_success(self, entry_id: str, shown: bool | None = None) -> Mutation:
        """Flip an entry's success flag.

        When the entry has no stored flag, ``shown`` (the value derived from
        its target time) is flipped instead; an unknown value becomes True.
        """
        current = self._entry(entry_id).success
        if current is None:
            current = shown
        return self.set_success(entry_id, current is not True)

    def delete_entries(self, entry_ids: Iterable[str]) -> Mutation:
        """Tombstone log entries; ids no longer in the store are skipped."""
        mutation = Mutation()
        for entry_id in entry_ids:
            entry = self.store.log_entries.get(entry_id)
            if entry is None:
                logger.debug(f"Log entry {entry_id} already gone, not tombstoning")
                continue
            mutation.add(LOG_ENTRIES, self._tombstone(entry))
        return mutation

    def delete_row(self, row: "Row") -> Mutation:
        """Tombstone a step entry and the procrastination marker merged into it."""
        return self.delete_entries(row.entry_ids)

    def delete_run(self, run: "Run") -> Mutation:
        """Tombstone every raw entry a reconstructed run was built from."""
        return self.delete_entries(run.entry_ids)
