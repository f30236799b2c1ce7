"""Pull/push coordination for one (account, purpose) view.

The coordinator owns the view's cursor. Local mutations are applied to the
entity store immediately and pushed in the background; pulls fold remote
changes back in and advance the cursor only once a response has been fully
applied. A fixed-interval poll loop guarantees convergence even when every
cross-context signal is lost.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from ..config import SyncConfig
from ..mutations import Mutation
from .notifier import Notifier, SignalMessage, SignalType
from .remote import PullResponse, RemoteSyncClient

if TYPE_CHECKING:
    from ..store.entity_store import EntityStore
    from ..store.local_store import LocalStore

logger = logging.getLogger(__name__)

STREAM_RETRY_SECONDS = 1.0


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable
    SKIPPED = "skipped"  # A pull was already in flight
    ABORTED = "aborted"  # Cancelled by close()


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    rows_pulled: int = 0
    rows_pushed: int = 0
    cursor: int | None = None
    error: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class SyncContext:
    """Identifies the view a coordinator serves.

    Every purpose gets its own cursor, so a bounded view (e.g. one day of
    logs) never reads or advances the live view's watermark.
    """

    account: str
    purpose: str
    device_id: str

    @property
    def snapshot_key(self) -> str:
        return f"entities:{self.account}:{self.purpose}"

    @property
    def pending_key(self) -> str:
        return f"pending:{self.account}:{self.purpose}"


ErrorCallback = Callable[[str], None]
ChangeCallback = Callable[[], None]


class SyncCoordinator:
    """Drives pull, push and backfill for one view.

    Supports:
    - Pull: fetch rows changed after the cursor and merge them
    - Push: send local rows, then verify with a pull
    - Backfill: full repull from the epoch when a bounded query needs it
    - Signals: react to PULL / PUSH / RESET from sibling contexts
    """

    def __init__(
        self,
        context: SyncContext,
        remote: RemoteSyncClient,
        entities: "EntityStore",
        local_store: "LocalStore",
        notifier: Notifier | None = None,
        config: SyncConfig | None = None,
        on_error: ErrorCallback | None = None,
        on_change: ChangeCallback | None = None,
    ):
        """Initialize the coordinator.

        Args:
            context: Account, purpose and writer identity.
            remote: Client for the remote sync endpoint.
            entities: In-memory collections this view renders from.
            local_store: Cursor and snapshot persistence.
            notifier: Optional cross-context signal bus.
            config: Sync settings; defaults when omitted.
            on_error: Called with a user-facing message when a push fails.
            on_change: Called after the entity store changed.
        """
        self.context = context
        self.remote = remote
        self.entities = entities
        self.local_store = local_store
        self.notifier = notifier
        self.config = config or SyncConfig()
        self._on_error = on_error
        self._on_change = on_change

        self._pull_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None
        self._closed = False

        self._covered_from_epoch = False
        self._last_sync: datetime | None = None
        self._last_error: str | None = None
        self._consecutive_failures = 0
        self._pending = Mutation()
        self._push_lock = asyncio.Lock()

    # ==================== Lifecycle ====================

    def restore(self) -> None:
        """Load the persisted entity snapshot and unsent rows."""
        self.entities.load_snapshot(self.local_store.get_snapshot(self.context.snapshot_key))

        pending = self.local_store.get_snapshot(self.context.pending_key)
        if isinstance(pending, dict):
            self._pending = Mutation(changes=pending)

        logger.info(
            f"Restored {self.context.purpose} view: {self.entities.counts()}, "
            f"cursor={self.since}, pending={self._pending.row_count}"
        )

    def start(self) -> None:
        """Subscribe to cross-context signals."""
        if self.notifier and self._unsubscribe is None:
            self._unsubscribe = self.notifier.subscribe(self.handle_signal)

    async def close(self) -> None:
        """Abort in-flight work and stop reacting to signals.

        An aborted pull leaves the cursor and entity store untouched.
        """
        self._closed = True
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        tasks = [t for t in self._tasks if not t.done()]
        if self._pull_task and not self._pull_task.done():
            tasks.append(self._pull_task)

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info(f"Sync coordinator for {self.context.purpose} closed")

    # ==================== Cursor ====================

    @property
    def since(self) -> int:
        return self.local_store.get_cursor(self.context.account, self.context.purpose)

    @property
    def pull_in_flight(self) -> bool:
        return self._pull_task is not None and not self._pull_task.done()

    # ==================== Pull ====================

    async def pull(self, since: int | None = None) -> SyncResult:
        """Fetch and merge rows changed strictly after ``since``.

        Args:
            since: Watermark override; defaults to the stored cursor.

        Returns:
            SyncResult; SKIPPED when another pull for this view is running.
        """
        if self.pull_in_flight:
            logger.debug(f"Pull for {self.context.purpose} already in flight, skipping")
            return SyncResult(status=SyncStatus.SKIPPED)

        task = asyncio.create_task(self._pull_once(since))
        self._pull_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if not self._closed:
                raise
            logger.info(f"Pull for {self.context.purpose} aborted")
            return SyncResult(status=SyncStatus.ABORTED, cursor=self.since)
        finally:
            if self._pull_task is task:
                self._pull_task = None

    async def _pull_once(self, since: int | None) -> SyncResult:
        if since is None:
            since = self.since

        response, error = await self.remote.pull(
            self.context.account, since, self.config.collections
        )

        if error:
            self._consecutive_failures += 1
            self._last_error = error
            logger.warning(f"Pull for {self.context.purpose} failed: {error}")
            return SyncResult(
                status=SyncStatus.OFFLINE if "Connection" in error else SyncStatus.FAILED,
                cursor=since,
                error=error,
            )

        new_since = self._apply_response(since, response)
        if since == 0:
            self._covered_from_epoch = True

        return SyncResult(
            status=SyncStatus.SUCCESS,
            rows_pulled=response.row_count,
            cursor=new_since,
            timestamp=self._last_sync,
        )

    def _apply_response(self, since: int, response: PullResponse) -> int:
        """Merge a remote response, then advance the cursor.

        Nothing here awaits, so a cancellation can't land between the merge
        and the cursor write.

        Returns:
            The new cursor.
        """
        self.entities.apply(response.diffs)
        self._persist_entities()
        # The stream may have advanced the cursor while a pull was in flight
        new_since = max(since, self.since, response.server_time_ms)
        self.local_store.set_cursor(self.context.account, self.context.purpose, new_since)

        self._consecutive_failures = 0
        self._last_error = None
        self._last_sync = datetime.now()

        if response.row_count:
            self._notify_change()
        return new_since

    # ==================== Push ====================

    def mutate(self, mutation: Mutation) -> asyncio.Task | None:
        """Apply a local mutation now and push it in the background.

        Returns:
            The push task, or None for an empty mutation.
        """
        if mutation.is_empty:
            return None

        self.entities.apply(mutation.changes)
        self._persist_entities()
        self._notify_change()

        return self._spawn(self.push(mutation))

    async def push(self, mutation: Mutation) -> SyncResult:
        """Send rows to the remote, then verify with a pull.

        Pushes run one at a time so pending rows are read and written by a
        single push. Failed rows are kept and retried on the next push.

        Returns:
            SyncResult of the push itself.
        """
        async with self._push_lock:
            result = await self._push_locked(mutation)
            if result is None:
                return SyncResult(status=SyncStatus.SUCCESS, timestamp=datetime.now())

        if self.config.verify_after_push and not self._closed:
            await self.pull()

        return result

    async def _push_locked(self, mutation: Mutation) -> SyncResult | None:
        outgoing = Mutation().merge(self._pending).merge(mutation)
        if outgoing.is_empty:
            return None

        _, error = await self.remote.push(
            self.context.account, self.context.device_id, outgoing.changes
        )

        if error:
            self._pending = outgoing
            self._persist_pending()
            self._consecutive_failures += 1
            self._last_error = error
            logger.warning(
                f"Push of {outgoing.row_count} rows for {self.context.purpose} failed: {error}"
            )
            self._surface_error(f"Upload failed, will retry: {error}")
            result = SyncResult(
                status=SyncStatus.OFFLINE if "Connection" in error else SyncStatus.FAILED,
                error=error,
            )
        else:
            self._pending = Mutation()
            self._persist_pending()
            logger.debug(f"Pushed {outgoing.row_count} rows for {self.context.purpose}")
            if self.notifier:
                self.notifier.emit(SignalType.PULL)
            result = SyncResult(
                status=SyncStatus.SUCCESS,
                rows_pushed=outgoing.row_count,
                timestamp=datetime.now(),
            )
        return result

    async def push_pending(self) -> SyncResult:
        """Retry rows left over from failed pushes."""
        return await self.push(Mutation())

    @property
    def pending_rows(self) -> int:
        return self._pending.row_count

    # ==================== Backfill ====================

    async def backfill(self) -> SyncResult:
        """Reset the cursor to the epoch and repull everything once."""
        if self.pull_in_flight:
            return SyncResult(status=SyncStatus.SKIPPED)

        logger.info(f"Backfilling {self.context.purpose} from epoch")
        self.local_store.set_cursor(self.context.account, self.context.purpose, 0)
        return await self.pull(since=0)

    async def ensure_window(self, window_end_ms: int) -> SyncResult | None:
        """Backfill if the cursor may hide history for a bounded query.

        A view whose cursor has moved past ``window_end_ms`` plus the safety
        margin cannot tell whether it ever received that window's rows, so it
        repulls from the epoch once. Later queries are covered by that pull.

        Returns:
            The backfill result, or None when no backfill was needed.
        """
        margin_ms = self.config.backfill_margin_minutes * 60 * 1000
        since = self.since
        if self._covered_from_epoch or window_end_ms + margin_ms >= since:
            return None

        logger.info(
            f"Cursor {since} is past window end {window_end_ms} for "
            f"{self.context.purpose}, forcing full repull"
        )
        return await self.backfill()

    # ==================== Signals ====================

    def handle_signal(self, message: SignalMessage) -> None:
        """Map a cross-context signal to the matching operation."""
        if self._closed:
            return
        if message.purpose_key and message.purpose_key != self.context.purpose:
            return

        logger.debug(f"{self.context.purpose} received {message.type.value} signal")
        if message.type is SignalType.PULL:
            self._spawn(self.pull())
        elif message.type is SignalType.PUSH:
            self._spawn(self.push_pending())
        elif message.type is SignalType.RESET:
            self._spawn(self.backfill())

    # ==================== Poll loop ====================

    async def run(
        self,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run the fallback poll loop until stopped.

        Args:
            stop_event: Event to signal loop should stop.
        """
        interval_seconds = self.config.poll_interval_seconds
        logger.info(f"Starting poll loop for {self.context.purpose} ({interval_seconds}s)")

        while not self._closed:
            if stop_event and stop_event.is_set():
                break

            try:
                if self.notifier:
                    self.notifier.poll()
                result = await self.pull()
                logger.debug(
                    f"Poll {self.context.purpose}: {result.status.value}, "
                    f"pulled={result.rows_pulled}"
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Poll loop error: {e}", exc_info=True)

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,  # Max 1 hour
                )
                logger.debug(f"Backing off poll for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info(f"Poll loop for {self.context.purpose} stopped")

    # ==================== Change stream ====================

    async def stream(
        self,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Follow the remote change stream until stopped.

        Each event is merged exactly like a pull response. The stream
        reconnects from the current cursor after every disconnect, backing
        off while connections keep failing; the poll loop stays the backstop.

        Args:
            stop_event: Event to signal loop should stop.
        """
        if not self.remote.configured:
            logger.info(f"No remote configured, change stream for {self.context.purpose} disabled")
            return

        failures = 0
        while not self._closed:
            if stop_event and stop_event.is_set():
                break

            received = 0
            try:
                events = self.remote.stream(
                    self.context.account, self.since, self.config.collections
                )
                async with aclosing(events):
                    async for response in events:
                        cursor = self._apply_response(self.since, response)
                        received += 1
                        logger.debug(
                            f"Stream {self.context.purpose}: "
                            f"{response.row_count} rows, cursor={cursor}"
                        )
                        if self._closed or (stop_event and stop_event.is_set()):
                            break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Change stream for {self.context.purpose} dropped: {e}")

            failures = 0 if received else failures + 1
            wait_time = min(STREAM_RETRY_SECONDS * (2 ** failures), 3600)

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            elif not self._closed:
                await asyncio.sleep(wait_time)

        logger.info(f"Change stream for {self.context.purpose} stopped")

    # ==================== Helpers ====================

    def _spawn(self, coro: Coroutine[Any, Any, SyncResult]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _persist_entities(self) -> None:
        self.local_store.set_snapshot(self.context.snapshot_key, self.entities.to_snapshot())

    def _persist_pending(self) -> None:
        if self._pending.is_empty:
            self.local_store.delete_snapshot(self.context.pending_key)
        else:
            self.local_store.set_snapshot(self.context.pending_key, self._pending.changes)

    def _notify_change(self) -> None:
        if self._on_change:
            try:
                self._on_change()
            except Exception as e:
                logger.error(f"Change callback failed: {e}", exc_info=True)

    def _surface_error(self, message: str) -> None:
        if self._on_error:
            try:
                self._on_error(message)
            except Exception as e:
                logger.error(f"Error callback failed: {e}", exc_info=True)

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful pull."""
        return self._last_sync

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        return {
            "account": self.context.account,
            "purpose": self.context.purpose,
            "cursor": self.since,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._last_error,
            "pending_rows": self._pending.row_count,
            "entities": self.entities.counts(),
        }
