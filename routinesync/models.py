"""Entity models and wire-row conversion for checklists, steps and log entries."""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import MalformedRowError

logger = logging.getLogger(__name__)

# Wire collection names used by the remote sync endpoint
CHECKLISTS = "checklist_sets"
STEPS = "checklist_actions"
LOG_ENTRIES = "checklist_action_logs"

DEFAULT_COLLECTIONS = (CHECKLISTS, STEPS, LOG_ENTRIES)

# Step id carried by log entries that are pure markers
MARKER_STEP_ID = "__marker__"


class LogKind(Enum):
    """Closed set of execution log entry kinds."""

    NORMAL = "normal"
    RUN_START = "run_start"
    RUN_END = "run_end"
    PROCRASTINATION_BEFORE_FIRST = "procrastination_before_first"

    @property
    def is_marker(self) -> bool:
        return self is not LogKind.NORMAL

    @classmethod
    def parse(cls, raw: Any) -> "LogKind":
        """Resolve a free-form kind string.

        Case, underscores, dashes and spaces are ignored, so "RUN_START",
        "run-start" and "runStart" all resolve to RUN_START. Missing or
        unknown values resolve to NORMAL.
        """
        if isinstance(raw, LogKind):
            return raw
        if not isinstance(raw, str) or not raw.strip():
            return cls.NORMAL

        folded = re.sub(r"[\s_\-]", "", raw).lower()
        for kind in cls:
            if kind.value.replace("_", "") == folded:
                return kind

        logger.debug(f"Unknown log kind {raw!r}, treating as normal")
        return cls.NORMAL


@dataclass
class WriteMeta:
    """Last-write metadata stamped on every synced row."""

    updated_at: int = 0  # ms epoch
    updated_by: str = ""


@dataclass
class Checklist:
    """A routine definition."""

    id: str
    title: str
    ordinal: int = 0
    meta: WriteMeta = field(default_factory=WriteMeta)


@dataclass
class Step:
    """A single step of a checklist."""

    id: str
    checklist_id: str
    title: str
    ordinal: int = 0
    is_done: bool = False
    target_sec: int | None = None
    meta: WriteMeta = field(default_factory=WriteMeta)


@dataclass
class ExecutionLogEntry:
    """A timestamped record of one step transition or run marker."""

    id: str
    checklist_id: str
    step_id: str = MARKER_STEP_ID
    start_ms: int | None = None
    end_ms: int | None = None
    explicit_duration_ms: int | None = None
    kind: LogKind = LogKind.NORMAL
    success: bool | None = None
    meta: WriteMeta = field(default_factory=WriteMeta)

    @property
    def is_open(self) -> bool:
        return self.end_ms is None

    @property
    def duration_ms(self) -> int | None:
        """Explicit duration, or end minus start when both are known."""
        if self.explicit_duration_ms is not None:
            return self.explicit_duration_ms
        if self.start_ms is not None and self.end_ms is not None:
            return max(0, self.end_ms - self.start_ms)
        return None

    @property
    def sort_time(self) -> int:
        """Start time, falling back to last-write time."""
        if self.start_ms is not None:
            return self.start_ms
        return self.meta.updated_at


Entity = Checklist | Step | ExecutionLogEntry


def _payload(row: dict[str, Any]) -> dict[str, Any]:
    """Merge flat (pull-shaped) and nested ``data`` (push-shaped) fields."""
    merged = {k: v for k, v in row.items() if k != "data"}
    data = row.get("data")
    if isinstance(data, dict):
        merged.update(data)
    return merged


def _opt_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _meta(row: dict[str, Any]) -> WriteMeta:
    return WriteMeta(
        updated_at=_opt_int(row.get("updated_at")) or 0,
        updated_by=str(row.get("updated_by") or ""),
    )


def is_tombstone(row: dict[str, Any]) -> bool:
    """Whether a diff row marks its entity as deleted."""
    return row.get("deleted_at") is not None


def checklist_from_row(row: dict[str, Any]) -> Checklist:
    fields = _payload(row)
    return Checklist(
        id=str(fields["id"]),
        title=str(fields.get("title") or ""),
        ordinal=_opt_int(fields.get("order")) or 0,
        meta=_meta(row),
    )


def step_from_row(row: dict[str, Any]) -> Step:
    fields = _payload(row)
    checklist_id = fields.get("set_id")
    if not checklist_id:
        raise MalformedRowError(f"step {fields.get('id')!r} has no set_id")
    return Step(
        id=str(fields["id"]),
        checklist_id=str(checklist_id),
        title=str(fields.get("title") or ""),
        ordinal=_opt_int(fields.get("order")) or 0,
        is_done=fields.get("is_done") is True,
        target_sec=_opt_int(fields.get("target_sec")),
        meta=_meta(row),
    )


def log_entry_from_row(row: dict[str, Any]) -> ExecutionLogEntry:
    fields = _payload(row)
    checklist_id = fields.get("set_id")
    if not checklist_id:
        raise MalformedRowError(f"log entry {fields.get('id')!r} has no set_id")
    success = fields.get("success")
    return ExecutionLogEntry(
        id=str(fields["id"]),
        checklist_id=str(checklist_id),
        step_id=str(fields.get("action_id") or MARKER_STEP_ID),
        start_ms=_opt_int(fields.get("start_at_ms")),
        end_ms=_opt_int(fields.get("end_at_ms")),
        explicit_duration_ms=_opt_int(fields.get("duration_ms")),
        kind=LogKind.parse(fields.get("kind")),
        success=success if isinstance(success, bool) else None,
        meta=_meta(row),
    )


def row_has_ordinal(row: dict[str, Any]) -> bool:
    return _opt_int(_payload(row).get("order")) is not None


def to_row(entity: Entity, deleted_at: int | None = None) -> dict[str, Any]:
    """Serialize an entity to the push-shaped wire row."""
    row: dict[str, Any] = {
        "id": entity.id,
        "updated_at": entity.meta.updated_at,
        "updated_by": entity.meta.updated_by,
        "deleted_at": deleted_at,
    }

    if isinstance(entity, Checklist):
        row["data"] = {"title": entity.title, "order": entity.ordinal}
    elif isinstance(entity, Step):
        row["set_id"] = entity.checklist_id
        row["data"] = {
            "title": entity.title,
            "order": entity.ordinal,
            "is_done": entity.is_done,
            "target_sec": entity.target_sec,
        }
    else:
        row["set_id"] = entity.checklist_id
        row["action_id"] = entity.step_id
        row["data"] = {
            "start_at_ms": entity.start_ms,
            "end_at_ms": entity.end_ms,
            "duration_ms": entity.explicit_duration_ms,
            "kind": entity.kind.value,
        }
        if entity.success is not None:
            row["data"]["success"] = entity.success

    return row


PARSERS = {
    CHECKLISTS: checklist_from_row,
    STEPS: step_from_row,
    LOG_ENTRIES: log_entry_from_row,
}
