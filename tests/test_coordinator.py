"""Tests for the pull/push sync coordinator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from routinesync.config import SyncConfig
from routinesync.models import CHECKLISTS, STEPS
from routinesync.mutations import LocalMutations, Mutation
from routinesync.store import EntityStore, LocalStore
from routinesync.sync import (
    PullResponse,
    RemoteSyncClient,
    SignalMessage,
    SignalType,
    SyncContext,
    SyncCoordinator,
    SyncStatus,
)

DAY_MS = 24 * 60 * 60 * 1000


def pulled(server_time, diffs=None):
    return PullResponse(server_time_ms=server_time, diffs=diffs or {}), None


@pytest.fixture
def local_store():
    """Create an in-memory LocalStore."""
    store = LocalStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def remote():
    """Create a remote client with network methods mocked."""
    remote = MagicMock(spec=RemoteSyncClient)
    remote.pull = AsyncMock(return_value=pulled(1000))
    remote.push = AsyncMock(return_value=({"ok": True}, None))
    return remote


@pytest.fixture
def errors():
    return []


@pytest.fixture
def coordinator(remote, local_store, errors):
    """Create a coordinator for the live view."""
    return SyncCoordinator(
        context=SyncContext(account="acct", purpose="live", device_id="dev-a"),
        remote=remote,
        entities=EntityStore(),
        local_store=local_store,
        config=SyncConfig(),
        on_error=errors.append,
    )


class TestPull:
    """Tests for incremental pulls."""

    @pytest.mark.asyncio
    async def test_pull_applies_and_advances(self, coordinator, remote, local_store):
        """Test a successful pull merges rows then moves the cursor."""
        remote.pull.return_value = pulled(
            5000, {CHECKLISTS: [{"id": "c1", "data": {"title": "Morning"}}]}
        )

        result = await coordinator.pull()

        assert result.status == SyncStatus.SUCCESS
        assert result.rows_pulled == 1
        assert coordinator.entities.checklists["c1"].title == "Morning"
        assert local_store.get_cursor("acct", "live") == 5000
        remote.pull.assert_awaited_once_with("acct", 0, coordinator.config.collections)

    @pytest.mark.asyncio
    async def test_pull_uses_stored_cursor(self, coordinator, remote, local_store):
        """Test the next pull asks for changes after the stored cursor."""
        local_store.set_cursor("acct", "live", 700)

        await coordinator.pull()

        assert remote.pull.await_args[0][1] == 700

    @pytest.mark.asyncio
    async def test_failed_pull_keeps_cursor(self, coordinator, remote, local_store):
        """Test a failed pull leaves the cursor for a retry of the same window."""
        local_store.set_cursor("acct", "live", 300)
        remote.pull.return_value = (None, "Connection failed: max retries (3) exceeded")

        result = await coordinator.pull()

        assert result.status == SyncStatus.OFFLINE
        assert local_store.get_cursor("acct", "live") == 300
        assert coordinator.last_error.startswith("Connection failed")

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, coordinator, remote, local_store):
        """Test a server time behind the cursor does not rewind it."""
        local_store.set_cursor("acct", "live", 9000)
        remote.pull.return_value = pulled(10)

        await coordinator.pull()

        assert local_store.get_cursor("acct", "live") == 9000

    @pytest.mark.asyncio
    async def test_duplicate_delivery_absorbed(self, coordinator, remote):
        """Test re-delivering the same rows yields the same state."""
        rows = {STEPS: [{"id": "s1", "set_id": "c1", "data": {"title": "A"}}]}
        remote.pull.return_value = pulled(10, rows)

        await coordinator.pull()
        first = dict(coordinator.entities.steps)
        await coordinator.pull()

        assert coordinator.entities.steps == first

    @pytest.mark.asyncio
    async def test_concurrent_pull_skipped(self, coordinator, remote):
        """Test a second pull while one is in flight is a no-op."""
        release = asyncio.Event()

        async def slow_pull(*args):
            await release.wait()
            return pulled(100)

        remote.pull.side_effect = slow_pull
        first = asyncio.create_task(coordinator.pull())
        await asyncio.sleep(0)

        second = await coordinator.pull()
        release.set()
        result = await first

        assert second.status == SyncStatus.SKIPPED
        assert result.status == SyncStatus.SUCCESS
        assert remote.pull.await_count == 1

    @pytest.mark.asyncio
    async def test_close_aborts_pull(self, coordinator, remote, local_store):
        """Test closing mid-pull leaves cursor and store untouched."""
        local_store.set_cursor("acct", "live", 42)

        async def hanging_pull(*args):
            await asyncio.Event().wait()

        remote.pull.side_effect = hanging_pull
        pending = asyncio.create_task(coordinator.pull())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        await coordinator.close()
        result = await pending

        assert result.status == SyncStatus.ABORTED
        assert local_store.get_cursor("acct", "live") == 42
        assert coordinator.entities.counts()[CHECKLISTS] == 0

    @pytest.mark.asyncio
    async def test_change_callback(self, remote, local_store):
        """Test on_change fires only when rows arrived."""
        changes = []
        coordinator = SyncCoordinator(
            context=SyncContext("acct", "live", "dev-a"),
            remote=remote,
            entities=EntityStore(),
            local_store=local_store,
            on_change=lambda: changes.append(1),
        )

        await coordinator.pull()
        assert changes == []

        remote.pull.return_value = pulled(2000, {CHECKLISTS: [{"id": "c1"}]})
        await coordinator.pull()
        assert changes == [1]


class TestBackfill:
    """Tests for bounded-window backfill."""

    @pytest.mark.asyncio
    async def test_backfill_when_cursor_past_window(self, coordinator, remote, local_store):
        """Test a stale-window query forces exactly one repull from the epoch."""
        window_end = 10 * DAY_MS
        margin = 5 * 60 * 1000
        local_store.set_cursor("acct", "live", window_end + margin + 1)
        remote.pull.return_value = pulled(20 * DAY_MS)

        result = await coordinator.ensure_window(window_end)

        assert result.status == SyncStatus.SUCCESS
        remote.pull.assert_awaited_once()
        assert remote.pull.await_args[0][1] == 0
        assert local_store.get_cursor("acct", "live") == 20 * DAY_MS

        assert await coordinator.ensure_window(window_end) is None
        assert remote.pull.await_count == 1

        await coordinator.pull()
        assert remote.pull.await_args[0][1] == 20 * DAY_MS

    @pytest.mark.asyncio
    async def test_no_backfill_within_margin(self, coordinator, remote, local_store):
        """Test a cursor within the safety margin needs no repull."""
        window_end = 10 * DAY_MS
        local_store.set_cursor("acct", "live", window_end + 60 * 1000)

        assert await coordinator.ensure_window(window_end) is None
        remote.pull.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_backfill_retried(self, coordinator, remote, local_store):
        """Test a failed repull is attempted again on the next query."""
        local_store.set_cursor("acct", "live", 50 * DAY_MS)
        remote.pull.return_value = (None, "HTTP 500: boom")

        result = await coordinator.ensure_window(DAY_MS)

        assert result.status == SyncStatus.FAILED
        assert local_store.get_cursor("acct", "live") == 0

        remote.pull.return_value = pulled(60 * DAY_MS)
        assert await coordinator.ensure_window(DAY_MS) is None
        await coordinator.pull()
        assert remote.pull.await_args[0][1] == 0

    @pytest.mark.asyncio
    async def test_purposes_do_not_share_cursor(self, remote, local_store):
        """Test a day view keeps its own cursor beside the live view."""
        live = SyncCoordinator(SyncContext("acct", "live", "d"), remote, EntityStore(), local_store)
        day = SyncCoordinator(SyncContext("acct", "day-view", "d"), remote, EntityStore(), local_store)
        remote.pull.return_value = pulled(99 * DAY_MS)

        await live.pull()

        assert live.since == 99 * DAY_MS
        assert day.since == 0


class TestPush:
    """Tests for optimistic mutation and push."""

    @pytest.mark.asyncio
    async def test_mutate_is_optimistic(self, coordinator, remote):
        """Test the store reflects a mutation before the push completes."""
        mutation = LocalMutations(coordinator.entities, "dev-a").create_checklist("Morning")

        task = coordinator.mutate(mutation)

        assert [c.title for c in coordinator.entities.checklists.values()] == ["Morning"]
        result = await task
        assert result.status == SyncStatus.SUCCESS
        assert result.rows_pushed == 1
        remote.push.assert_awaited_once_with("acct", "dev-a", mutation.changes)

    @pytest.mark.asyncio
    async def test_mutate_empty(self, coordinator, remote):
        """Test empty mutations do nothing."""
        assert coordinator.mutate(Mutation()) is None
        remote.push.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_push_verifies_with_pull(self, coordinator, remote):
        """Test a push is followed by a verification pull."""
        await coordinator.push(Mutation().add(CHECKLISTS, {"id": "c1"}))

        remote.pull.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_push_without_verification(self, remote, local_store):
        """Test verification can be turned off."""
        coordinator = SyncCoordinator(
            SyncContext("acct", "live", "d"),
            remote,
            EntityStore(),
            local_store,
            config=SyncConfig(verify_after_push=False),
        )

        await coordinator.push(Mutation().add(CHECKLISTS, {"id": "c1"}))

        remote.pull.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_push_failure_surfaced(self, coordinator, remote, errors):
        """Test a failed push reports an error and keeps the local update."""
        remote.push.return_value = (None, "HTTP 503: unavailable")
        mutation = LocalMutations(coordinator.entities, "dev-a").create_checklist("Morning")

        result = await coordinator.mutate(mutation)

        assert result.status == SyncStatus.FAILED
        assert len(errors) == 1
        assert "HTTP 503" in errors[0]
        assert len(coordinator.entities.checklists) == 1
        assert coordinator.pending_rows == 1

    @pytest.mark.asyncio
    async def test_failed_rows_retried(self, coordinator, remote, local_store):
        """Test rows from a failed push go out with the next push."""
        remote.push.return_value = (None, "HTTP 503: unavailable")
        await coordinator.push(Mutation().add(CHECKLISTS, {"id": "c1"}))
        assert local_store.get_snapshot("pending:acct:live") is not None

        remote.push.return_value = ({"ok": True}, None)
        result = await coordinator.push_pending()

        assert result.rows_pushed == 1
        assert remote.push.await_args[0][2] == {CHECKLISTS: [{"id": "c1"}]}
        assert coordinator.pending_rows == 0
        assert local_store.get_snapshot("pending:acct:live") is None

    @pytest.mark.asyncio
    async def test_overlapping_pushes_keep_failed_rows(self, coordinator, remote):
        """Test a later successful push does not drop the rows of an earlier failed one."""
        builder = LocalMutations(coordinator.entities, "dev-a")
        first = builder.create_checklist("Morning")
        second = builder.create_checklist("Evening")
        release = asyncio.Event()
        sent = []

        async def push(account, device_id, changes):
            sent.append([row["id"] for row in changes[CHECKLISTS]])
            if len(sent) == 1:
                await release.wait()
                return None, "HTTP 503: unavailable"
            return {"ok": True}, None

        remote.push.side_effect = push
        tasks = [coordinator.mutate(first), coordinator.mutate(second)]
        while not sent:
            await asyncio.sleep(0)
        release.set()
        await asyncio.gather(*tasks)

        first_id = first.changes[CHECKLISTS][0]["id"]
        second_id = second.changes[CHECKLISTS][0]["id"]
        assert sent == [[first_id], [first_id, second_id]]
        assert coordinator.pending_rows == 0

    @pytest.mark.asyncio
    async def test_push_emits_pull_signal(self, coordinator):
        """Test siblings are told to pull after a successful push."""
        coordinator.notifier = MagicMock()

        await coordinator.push(Mutation().add(CHECKLISTS, {"id": "c1"}))

        coordinator.notifier.emit.assert_called_once_with(SignalType.PULL)

    @pytest.mark.asyncio
    async def test_state_persisted(self, coordinator, remote, local_store):
        """Test a new coordinator restores the optimistic state."""
        await coordinator.mutate(LocalMutations(coordinator.entities, "dev-a").create_checklist("Morning"))

        restored = SyncCoordinator(
            SyncContext("acct", "live", "dev-a"), remote, EntityStore(), local_store
        )
        restored.restore()

        assert [c.title for c in restored.entities.checklists.values()] == ["Morning"]


class TestSignals:
    """Tests for reacting to cross-context signals."""

    def message(self, signal_type, purpose_key=None):
        return SignalMessage(type=signal_type, account="acct", device_id="dev-b", purpose_key=purpose_key)

    @pytest.mark.asyncio
    async def test_pull_signal(self, coordinator, remote):
        """Test PULL triggers a pull."""
        coordinator.handle_signal(self.message(SignalType.PULL))
        await asyncio.gather(*coordinator._tasks)

        remote.pull.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reset_signal(self, coordinator, remote, local_store):
        """Test RESET triggers a full repull."""
        local_store.set_cursor("acct", "live", 500)

        coordinator.handle_signal(self.message(SignalType.RESET))
        await asyncio.gather(*coordinator._tasks)

        assert remote.pull.await_args[0][1] == 0

    @pytest.mark.asyncio
    async def test_push_signal_without_pending(self, coordinator, remote):
        """Test PUSH with nothing pending sends nothing."""
        coordinator.handle_signal(self.message(SignalType.PUSH))
        await asyncio.gather(*coordinator._tasks)

        remote.push.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_purpose_ignored(self, coordinator, remote):
        """Test signals aimed at another view are ignored."""
        coordinator.handle_signal(self.message(SignalType.PULL, purpose_key="day-view"))

        assert not coordinator._tasks
        remote.pull.assert_not_awaited()


class TestPollLoop:
    """Tests for the fallback poll loop."""

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, coordinator, remote):
        """Test the loop pulls and exits once the stop event is set."""
        stop_event = asyncio.Event()

        async def pull_and_stop(*args):
            stop_event.set()
            return pulled(100)

        remote.pull.side_effect = pull_and_stop

        await asyncio.wait_for(coordinator.run(stop_event), timeout=5)

        assert remote.pull.await_count == 1

    @pytest.mark.asyncio
    async def test_run_survives_errors(self, coordinator, remote, caplog):
        """Test an unexpected error is logged and the loop continues."""
        stop_event = asyncio.Event()
        calls = []

        async def flaky_pull(*args):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            stop_event.set()
            return pulled(100)

        remote.pull.side_effect = flaky_pull
        coordinator.config.poll_interval_seconds = 0

        await asyncio.wait_for(coordinator.run(stop_event), timeout=5)

        assert len(calls) == 2
        assert "Poll loop error" in caplog.text

    def test_sync_status(self, coordinator):
        """Test the status dict reports cursor and counts."""
        status = coordinator.get_sync_status()

        assert status["purpose"] == "live"
        assert status["cursor"] == 0
        assert status["last_sync"] is None
        assert status["pending_rows"] == 0


class TestStream:
    """Tests for following the remote change stream."""

    @pytest.mark.asyncio
    async def test_events_applied_and_cursor_advanced(self, coordinator, remote, local_store):
        """Test each streamed event merges rows then moves the cursor."""
        stop_event = asyncio.Event()
        local_store.set_cursor("acct", "live", 40)
        opened_at = []

        async def stream(account, since, collections):
            opened_at.append(since)
            yield PullResponse(50, {CHECKLISTS: [{"id": "c1", "data": {"title": "Morning"}}]})
            stop_event.set()
            yield PullResponse(80, {})

        remote.stream = stream

        await asyncio.wait_for(coordinator.stream(stop_event), timeout=5)

        assert opened_at == [40]
        assert coordinator.entities.checklists["c1"].title == "Morning"
        assert local_store.get_cursor("acct", "live") == 80
        assert coordinator.last_sync is not None

    @pytest.mark.asyncio
    async def test_reconnects_from_cursor(self, coordinator, remote, local_store, caplog):
        """Test a dropped stream reopens after the last applied cursor."""
        stop_event = asyncio.Event()
        opened_at = []

        async def stream(account, since, collections):
            opened_at.append(since)
            if len(opened_at) == 1:
                yield PullResponse(100, {})
                raise httpx.ReadError("connection reset")
            stop_event.set()
            yield PullResponse(200, {})

        remote.stream = stream

        with patch("routinesync.sync.coordinator.STREAM_RETRY_SECONDS", 0):
            await asyncio.wait_for(coordinator.stream(stop_event), timeout=5)

        assert opened_at == [0, 100]
        assert local_store.get_cursor("acct", "live") == 200
        assert "dropped" in caplog.text

    @pytest.mark.asyncio
    async def test_stream_does_not_count_as_epoch_pull(self, coordinator, remote, local_store):
        """Test a stream opened at cursor 0 still lets a bounded view backfill."""
        stop_event = asyncio.Event()

        async def stream(account, since, collections):
            stop_event.set()
            yield PullResponse(10 * DAY_MS, {})

        remote.stream = stream
        await asyncio.wait_for(coordinator.stream(stop_event), timeout=5)

        result = await coordinator.ensure_window(DAY_MS)

        assert result is not None
        assert remote.pull.await_args[0][1] == 0

    @pytest.mark.asyncio
    async def test_pull_does_not_rewind_stream_cursor(self, coordinator, remote, local_store):
        """Test a pull started before a stream event keeps the newer cursor."""
        release = asyncio.Event()
        stop_event = asyncio.Event()

        async def slow_pull(*args):
            await release.wait()
            return pulled(100)

        async def stream(account, since, collections):
            stop_event.set()
            yield PullResponse(900, {})

        remote.pull.side_effect = slow_pull
        remote.stream = stream
        pending = asyncio.create_task(coordinator.pull())
        await asyncio.sleep(0)

        await asyncio.wait_for(coordinator.stream(stop_event), timeout=5)
        release.set()
        result = await pending

        assert result.cursor == 900
        assert local_store.get_cursor("acct", "live") == 900

    @pytest.mark.asyncio
    async def test_no_remote_configured(self, coordinator, remote):
        """Test the stream does nothing without a remote."""
        remote.configured = False
        remote.stream = MagicMock()

        await asyncio.wait_for(coordinator.stream(), timeout=5)

        remote.stream.assert_not_called()
