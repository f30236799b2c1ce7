"""Tests for the in-memory entity store."""

import pytest

from routinesync.models import CHECKLISTS, LOG_ENTRIES, STEPS, LogKind
from routinesync.store import EntityStore


@pytest.fixture
def store():
    """Create a store with one checklist, two steps and a few log entries."""
    store = EntityStore()
    store.apply(
        {
            CHECKLISTS: [
                {"id": "c2", "data": {"title": "Evening", "order": 1}},
                {"id": "c1", "data": {"title": "Morning", "order": 0}},
            ],
            STEPS: [
                {"id": "s2", "set_id": "c1", "data": {"title": "Floss", "order": 1}},
                {"id": "s1", "set_id": "c1", "data": {"title": "Brush", "order": 0}},
            ],
            LOG_ENTRIES: [
                {"id": "l1", "set_id": "c1", "action_id": "s1", "updated_at": 5,
                 "data": {"start_at_ms": 100, "end_at_ms": 200}},
                {"id": "l2", "set_id": "c1", "action_id": "s2", "updated_at": 6,
                 "data": {"start_at_ms": 300}},
                {"id": "l3", "set_id": "c1", "updated_at": 7,
                 "data": {"start_at_ms": 400, "kind": "run_end"}},
            ],
        }
    )
    return store


class TestQueries:
    """Tests for read helpers."""

    def test_sorted_checklists(self, store):
        """Test checklists come back in ordinal order."""
        assert [c.id for c in store.sorted_checklists()] == ["c1", "c2"]

    def test_steps_for(self, store):
        """Test steps of a checklist in ordinal order."""
        assert [s.title for s in store.steps_for("c1")] == ["Brush", "Floss"]
        assert store.steps_for("c2") == []

    def test_entries_between(self, store):
        """Test window filter is inclusive on both ends."""
        ids = {e.id for e in store.entries_between(200, 300)}
        assert ids == {"l2"}

        ids = {e.id for e in store.entries_between(100, 400)}
        assert ids == {"l1", "l2", "l3"}

    def test_open_entry(self, store):
        """Test the open normal entry is found and markers are ignored."""
        assert store.open_entry("c1").id == "l2"
        assert store.open_entry("c2") is None

    def test_counts(self, store):
        """Test per-collection counts."""
        assert store.counts() == {CHECKLISTS: 2, STEPS: 2, LOG_ENTRIES: 3}


class TestSnapshots:
    """Tests for snapshot save and restore."""

    def test_roundtrip(self, store):
        """Test a restored store equals the original."""
        restored = EntityStore.from_snapshot(store.to_snapshot())

        assert restored.checklists == store.checklists
        assert restored.steps == store.steps
        assert restored.log_entries == store.log_entries
        assert restored.log_entries["l3"].kind is LogKind.RUN_END

    def test_load_replaces_contents(self, store):
        """Test loading a snapshot drops entities not in it."""
        store.load_snapshot({CHECKLISTS: [{"id": "only", "data": {"title": "Only"}}]})

        assert list(store.checklists) == ["only"]
        assert store.steps == {}

    def test_empty_snapshot(self):
        """Test None or unknown collections give an empty store."""
        assert EntityStore.from_snapshot(None).counts() == {CHECKLISTS: 0, STEPS: 0, LOG_ENTRIES: 0}
        assert EntityStore.from_snapshot({"junk": [{"id": "x"}]}).counts()[CHECKLISTS] == 0
