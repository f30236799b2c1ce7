"""Pure merge of incoming diff batches into entity collections.

Rules:
- Rows without an id (or with an unparseable payload) are skipped and logged.
- A tombstone for an id wins over any upsert of the same id in the batch.
- Otherwise rows upsert: unseen ids insert, known ids are overwritten with the
  incoming fields. Batches are trusted to arrive in the remote's order; no
  timestamp comparison happens here.
- After a step batch, each checklist's step ordinals are renumbered 0..n-1.

Functions never mutate their input collection and have no side effects
besides logging. Persistence and notification belong to the caller.
"""

import dataclasses
import logging
from typing import Any, Callable, Iterable, Mapping

from ..errors import MalformedRowError
from ..models import (
    PARSERS,
    STEPS,
    Checklist,
    Entity,
    Step,
    is_tombstone,
    row_has_ordinal,
)

logger = logging.getLogger(__name__)


def _sibling_count(collection: Mapping[str, Entity], entity: Entity) -> int:
    if isinstance(entity, Step):
        return sum(
            1
            for other in collection.values()
            if isinstance(other, Step) and other.checklist_id == entity.checklist_id
        )
    return len(collection)


def renormalize_steps(steps: Mapping[str, Step]) -> dict[str, Step]:
    """Renumber step ordinals to 0..n-1 within each checklist.

    Steps are stable-sorted by their current ordinal, so ties keep the
    collection's insertion order. Dict order of the result is unchanged.
    """
    by_checklist: dict[str, list[Step]] = {}
    for step in steps.values():
        by_checklist.setdefault(step.checklist_id, []).append(step)

    renumbered: dict[str, int] = {}
    for siblings in by_checklist.values():
        for index, step in enumerate(sorted(siblings, key=lambda s: s.ordinal)):
            renumbered[step.id] = index

    return {
        step_id: (
            step
            if step.ordinal == renumbered[step_id]
            else dataclasses.replace(step, ordinal=renumbered[step_id])
        )
        for step_id, step in steps.items()
    }


def apply_diffs(
    collection: Mapping[str, Entity],
    rows: Iterable[dict[str, Any]],
    collection_name: str,
) -> dict[str, Entity]:
    """Apply one collection's diff rows and return the next collection.

    Args:
        collection: Current entities keyed by id.
        rows: Wire rows for this collection, in remote order.
        collection_name: One of the known wire collection names.

    Returns:
        A new dict; the input mapping is left untouched.
    """
    parse: Callable[[dict[str, Any]], Entity] = PARSERS[collection_name]
    result: dict[str, Entity] = dict(collection)

    valid_rows = []
    for row in rows:
        if not isinstance(row, dict) or not row.get("id"):
            logger.warning(f"Skipping {collection_name} row without id: {row!r}")
            continue
        valid_rows.append(row)

    tombstoned = {str(row["id"]) for row in valid_rows if is_tombstone(row)}

    for row in valid_rows:
        entity_id = str(row["id"])

        if entity_id in tombstoned:
            result.pop(entity_id, None)
            continue

        try:
            incoming = parse(row)
        except (MalformedRowError, KeyError, TypeError) as e:
            logger.warning(f"Skipping malformed {collection_name} row {entity_id}: {e}")
            continue

        existing = result.get(entity_id)
        if isinstance(incoming, (Checklist, Step)) and not row_has_ordinal(row):
            if existing is not None:
                incoming = dataclasses.replace(incoming, ordinal=existing.ordinal)
            else:
                incoming = dataclasses.replace(
                    incoming, ordinal=_sibling_count(result, incoming)
                )

        result[entity_id] = incoming

    if collection_name == STEPS:
        result = renormalize_steps(result)

    return result


def apply_batch(
    collections: Mapping[str, Mapping[str, Entity]],
    diffs_by_collection: Mapping[str, Any],
) -> dict[str, dict[str, Entity]]:
    """Apply a multi-collection pull response.

    Each known collection is merged independently; unknown names and
    non-list payloads are ignored.

    Returns:
        Next collections keyed by wire name (only those in ``collections``).
    """
    result = {name: dict(entities) for name, entities in collections.items()}

    for name, rows in diffs_by_collection.items():
        if name not in PARSERS or name not in result:
            logger.debug(f"Ignoring diffs for unknown collection {name}")
            continue
        if not isinstance(rows, list) or not rows:
            continue
        result[name] = apply_diffs(result[name], rows, name)

    return result
