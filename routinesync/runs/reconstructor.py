"""Rebuild usage runs from the flat execution log.

Runs are never stored. They are derived on demand from the merged log
entries of one or more checklists, split on explicit run markers and on idle
gaps between consecutive steps.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from ..models import Checklist, ExecutionLogEntry, LogKind, Step

logger = logging.getLogger(__name__)

IDLE_GAP_MS = 15 * 60 * 1000

UNKNOWN_STEP = "(unknown step)"
UNKNOWN_CHECKLIST = "(unknown checklist)"


@dataclass(frozen=True)
class Interval:
    """A span of time; any bound may be unknown."""

    start_ms: int | None = None
    end_ms: int | None = None
    duration_ms: int | None = None

    @classmethod
    def of(cls, entry: ExecutionLogEntry) -> "Interval":
        return cls(entry.start_ms, entry.end_ms, entry.duration_ms)


@dataclass
class Row:
    """One performed step, with the idle time that preceded it."""

    entry_id: str
    step_id: str
    step_title: str
    action: Interval
    procrastination: Interval | None = None
    procrastination_entry_id: str | None = None
    target_sec: int | None = None
    success: bool | None = None

    @property
    def entry_ids(self) -> list[str]:
        """Raw entries to tombstone when deleting this row."""
        if self.procrastination_entry_id:
            return [self.entry_id, self.procrastination_entry_id]
        return [self.entry_id]

    @property
    def is_attempt(self) -> bool:
        """Whether the row counts towards a success rate."""
        return self.target_sec is not None and self.action.duration_ms is not None


@dataclass
class Run:
    """A reconstructed session of one checklist."""

    id: str
    checklist_id: str
    checklist_title: str
    started_at: int | None
    rows: list[Row] = field(default_factory=list)
    entry_ids: list[str] = field(default_factory=list)

    @property
    def action_ms(self) -> int:
        return sum(r.action.duration_ms or 0 for r in self.rows)

    @property
    def procrastination_ms(self) -> int:
        return sum(
            r.procrastination.duration_ms or 0 for r in self.rows if r.procrastination
        )

    @property
    def attempts(self) -> int:
        return sum(1 for r in self.rows if r.is_attempt)

    @property
    def successes(self) -> int:
        return sum(1 for r in self.rows if r.is_attempt and r.success)


def _in_window(entry: ExecutionLogEntry, window: tuple[int, int] | None) -> bool:
    if window is None:
        return True
    start_ms, end_ms = window
    return start_ms <= entry.sort_time <= end_ms


def _row_success(entry: ExecutionLogEntry, target_sec: int | None) -> bool | None:
    if entry.success is not None:
        return entry.success
    duration = entry.duration_ms
    if target_sec is None or duration is None:
        return None
    return duration <= target_sec * 1000


def _build_run(
    buffer: list[ExecutionLogEntry],
    checklist_title: str,
    steps: Mapping[str, Step],
) -> Run | None:
    """Turn one buffer of entries into a Run, or None if it has no steps."""
    rows: list[Row] = []
    entry_ids: list[str] = []
    started_at: int | None = None
    pending: ExecutionLogEntry | None = None
    prev_end: int | None = None

    for entry in buffer:
        entry_ids.append(entry.id)

        if entry.kind is LogKind.RUN_START:
            if started_at is None:
                started_at = entry.sort_time
            continue
        if entry.kind is LogKind.RUN_END:
            continue
        if entry.kind is LogKind.PROCRASTINATION_BEFORE_FIRST:
            # Last one wins if several arrive before a step consumes it
            pending = entry
            continue

        procrastination = None
        procrastination_id = None
        if pending is not None:
            procrastination = Interval.of(pending)
            procrastination_id = pending.id
            pending = None
        elif prev_end is not None and entry.start_ms is not None:
            gap = entry.start_ms - prev_end
            if gap > 0:
                procrastination = Interval(prev_end, entry.start_ms, gap)

        step = steps.get(entry.step_id)
        target_sec = step.target_sec if step else None
        rows.append(
            Row(
                entry_id=entry.id,
                step_id=entry.step_id,
                step_title=step.title if step else UNKNOWN_STEP,
                action=Interval.of(entry),
                procrastination=procrastination,
                procrastination_entry_id=procrastination_id,
                target_sec=target_sec,
                success=_row_success(entry, target_sec),
            )
        )
        prev_end = entry.end_ms

    if not rows:
        return None

    first = next(e for e in buffer if e.kind is LogKind.NORMAL)
    if started_at is None:
        started_at = first.sort_time

    return Run(
        id=f"{first.checklist_id}:{buffer[0].id}",
        checklist_id=first.checklist_id,
        checklist_title=checklist_title,
        started_at=started_at,
        rows=rows,
        entry_ids=entry_ids,
    )


def _split_checklist(
    entries: list[ExecutionLogEntry], idle_gap_ms: int
) -> list[list[ExecutionLogEntry]]:
    """Split one checklist's time-ordered entries into run buffers."""
    buffers: list[list[ExecutionLogEntry]] = []
    buffer: list[ExecutionLogEntry] = []
    last_action_end: int | None = None

    def flush() -> None:
        nonlocal buffer
        if buffer:
            buffers.append(buffer)
        buffer = []

    for entry in entries:
        if entry.kind in (LogKind.RUN_START, LogKind.PROCRASTINATION_BEFORE_FIRST):
            flush()
            buffer.append(entry)
            continue

        if (
            last_action_end is not None
            and entry.sort_time - last_action_end >= idle_gap_ms
        ):
            flush()

        buffer.append(entry)

        if entry.kind is LogKind.RUN_END:
            flush()
        elif entry.kind is LogKind.NORMAL and entry.end_ms is not None:
            last_action_end = entry.end_ms

    flush()
    return buffers


def reconstruct_runs(
    entries: Iterable[ExecutionLogEntry],
    checklists: Mapping[str, Checklist],
    steps: Mapping[str, Step],
    window: tuple[int, int] | None = None,
    idle_gap_ms: int = IDLE_GAP_MS,
    descending: bool = False,
) -> list[Run]:
    """Reconstruct runs from live log entries.

    Args:
        entries: Merged, tombstone-free log entries.
        checklists: Checklists by id, for titles.
        steps: Steps by id, for titles and targets.
        window: Inclusive (start_ms, end_ms) filter on entry start time.
        idle_gap_ms: Idle time between steps that splits a run.
        descending: Newest run first.

    Returns:
        Runs ordered by start time, then checklist title.
    """
    by_checklist: dict[str, list[ExecutionLogEntry]] = {}
    for entry in entries:
        if _in_window(entry, window):
            by_checklist.setdefault(entry.checklist_id, []).append(entry)

    runs: list[Run] = []
    for checklist_id, group in by_checklist.items():
        group.sort(key=lambda e: (e.sort_time, e.meta.updated_at))
        checklist = checklists.get(checklist_id)
        title = checklist.title if checklist else UNKNOWN_CHECKLIST

        for buffer in _split_checklist(group, idle_gap_ms):
            run = _build_run(buffer, title, steps)
            if run is not None:
                runs.append(run)

    runs.sort(key=lambda r: (r.started_at or 0, r.checklist_title))
    logger.debug(f"Reconstructed {len(runs)} runs from {len(by_checklist)} checklists")

    if descending:
        runs.reverse()
    return runs
