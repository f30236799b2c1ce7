"""All-time success rates per step."""

from dataclasses import dataclass
from typing import Iterable, Mapping

from ..models import Checklist, ExecutionLogEntry, Step


@dataclass
class StepSuccessSummary:
    """How often a timed step was finished within its target."""

    checklist_id: str
    checklist_title: str
    step_id: str
    step_title: str
    target_sec: int
    ordinal: int
    success_count: int = 0
    total_count: int = 0

    @property
    def rate(self) -> float:
        if self.total_count == 0:
            return 0.0
        return self.success_count / self.total_count


def summarize_success(
    entries: Iterable[ExecutionLogEntry],
    checklists: Mapping[str, Checklist],
    steps: Mapping[str, Step],
) -> list[StepSuccessSummary]:
    """Aggregate success counts for every step that has a target time.

    Entries whose step or checklist no longer exists, and entries without a
    known duration, are skipped. An explicit success flag on the entry wins
    over the duration check.
    """
    stats: dict[tuple[str, str], StepSuccessSummary] = {}

    for entry in entries:
        if entry.kind.is_marker:
            continue
        checklist = checklists.get(entry.checklist_id)
        step = steps.get(entry.step_id)
        if checklist is None or step is None or step.target_sec is None:
            continue
        duration = entry.duration_ms
        if duration is None:
            continue

        success = entry.success
        if success is None:
            success = duration <= step.target_sec * 1000

        key = (checklist.id, step.id)
        summary = stats.get(key)
        if summary is None:
            summary = StepSuccessSummary(
                checklist_id=checklist.id,
                checklist_title=checklist.title,
                step_id=step.id,
                step_title=step.title,
                target_sec=step.target_sec,
                ordinal=step.ordinal,
            )
            stats[key] = summary

        summary.total_count += 1
        if success:
            summary.success_count += 1

    return sorted(stats.values(), key=lambda s: (s.checklist_title, s.ordinal))
