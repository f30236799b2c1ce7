"""Top-level wiring of stores, remote client, notifier and coordinators."""

import asyncio
import logging
from datetime import date

from .config import Config
from .mutations import LocalMutations
from .runs import Run, StepSuccessSummary, reconstruct_runs, summarize_success
from .store import EntityStore, LocalStore
from .sync import Notifier, RemoteSyncClient, SyncContext, SyncCoordinator
from .sync.notifier import LocalTransport, MqttTransport, StoreTransport, Transport
from .timeutil import day_window

logger = logging.getLogger(__name__)

LIVE = "live"
DAY_VIEW = "day-view"


class RoutineSession:
    """One account's sync state shared by every view in this process.

    Each purpose gets its own coordinator, entity store and cursor; all of
    them share the local database, the remote client and the notifier.
    """

    def __init__(self, config: Config):
        self.config = config
        self.local_store = LocalStore(config.store.db_path)
        self.remote = RemoteSyncClient(
            base_url=config.remote.base_url,
            app_key=config.remote.app_key or None,
            max_retries=config.remote.max_retries,
            timeout=config.remote.timeout_seconds,
        )
        self.notifier: Notifier | None = None
        self.device_id = config.account.device_id
        self._views: dict[str, SyncCoordinator] = {}
        self._poll_tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Open the local database and connect signal transports."""
        self.local_store.connect()
        if not self.device_id:
            self.device_id = self.local_store.get_or_create_device_id()

        transports: list[Transport] = []
        if self.config.notifier.local:
            transports.append(LocalTransport())
        if self.config.notifier.storage:
            transports.append(StoreTransport(self.local_store))
        if self.config.notifier.mqtt.enabled:
            mqtt_transport = MqttTransport(self.config.notifier.mqtt)
            if await mqtt_transport.connect():
                transports.append(mqtt_transport)
            else:
                logger.warning("MQTT signals unavailable, relying on local transports")

        self.notifier = Notifier(
            account=self.config.account.account_id,
            device_id=self.device_id,
            transports=transports,
        )
        logger.info(
            f"Session started for {self.config.account.account_id} "
            f"(device={self.device_id}, transports={[t.name for t in transports]})"
        )

    def view(self, purpose: str = LIVE, poll: bool = False) -> SyncCoordinator:
        """Get or create the coordinator for a purpose.

        Args:
            purpose: View name; each has an independent cursor.
            poll: Start the fallback poll loop for this view, plus the
                change stream when enabled.
        """
        coordinator = self._views.get(purpose)
        if coordinator is not None:
            return coordinator

        coordinator = SyncCoordinator(
            context=SyncContext(
                account=self.config.account.account_id,
                purpose=purpose,
                device_id=self.device_id,
            ),
            remote=self.remote,
            entities=EntityStore(),
            local_store=self.local_store,
            notifier=self.notifier,
            config=self.config.sync,
        )
        coordinator.restore()
        coordinator.start()
        self._views[purpose] = coordinator

        if poll:
            self._poll_tasks.append(
                asyncio.create_task(coordinator.run(self._stop_event))
            )
            if self.config.sync.stream and self.remote.configured:
                self._poll_tasks.append(
                    asyncio.create_task(coordinator.stream(self._stop_event))
                )
        return coordinator

    def mutations(self, purpose: str = LIVE) -> LocalMutations:
        return LocalMutations(self.view(purpose).entities, self.device_id)

    async def runs_for_day(
        self, day: date | str, descending: bool = False, purpose: str = DAY_VIEW
    ) -> list[Run]:
        """Reconstruct one day's runs, backfilling the view if needed.

        A view that has not synced yet in this session pulls first, so a
        fresh day view is never rendered from an empty store.
        """
        coordinator = self.view(purpose)
        window = day_window(day, self.config.runs.timezone)
        result = await coordinator.ensure_window(window[1])
        if result is None and coordinator.last_sync is None:
            await coordinator.pull()

        entities = coordinator.entities
        return reconstruct_runs(
            entities.log_entries.values(),
            entities.checklists,
            entities.steps,
            window=window,
            idle_gap_ms=self.config.runs.idle_gap_minutes * 60 * 1000,
            descending=descending,
        )

    def success_summary(self, purpose: str = LIVE) -> list[StepSuccessSummary]:
        entities = self.view(purpose).entities
        return summarize_success(
            entities.log_entries.values(), entities.checklists, entities.steps
        )

    async def close(self) -> None:
        """Stop poll loops, abort in-flight syncs and release resources."""
        self._stop_event.set()
        for coordinator in self._views.values():
            await coordinator.close()
        for task in self._poll_tasks:
            task.cancel()
        if self._poll_tasks:
            await asyncio.gather(*self._poll_tasks, return_exceptions=True)
        self._poll_tasks.clear()

        if self.notifier:
            self.notifier.close()
        self.local_store.close()
        logger.info("Session closed")
