"""SyncScheduler — background discovery and execution of due syncs.

Every `interval_seconds` (and once immediately on start) the scheduler picks
active integrations whose next_sync_at has passed, oldest first, and launches a
SyncRunner.run_sync task for each while fewer than `max_concurrent_syncs` are
running. The loop never waits for a sync to finish.

The active-id set is the only shared state. An id is added before its task is
created and removed in the task's finally block, so a slot can neither leak nor
be taken twice.
"""

import asyncio
import contextlib
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from aumos_integration_sync.core.interfaces import StoreFactory
from aumos_integration_sync.database import utcnow
from aumos_integration_sync.observability import get_logger
from aumos_integration_sync.sync.runner import SyncRunner

logger = get_logger(__name__)

REASON_IN_PROGRESS = "already in progress"
REASON_AT_CAPACITY = "at capacity"
REASON_NOT_FOUND = "not found"


@dataclass(frozen=True)
class TriggerResult:
    """Immediate answer to a manual trigger. Says nothing about the sync's outcome."""

    queued: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"queued": self.queued}
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True)
class SchedulerStatus:
    """Snapshot returned by SyncScheduler.get_status()."""

    running: bool
    active_syncs: list[uuid.UUID]
    max_concurrent_syncs: int
    pending_syncs: int
    next_due_sync: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "activeSyncs": [str(i) for i in self.active_syncs],
            "maxConcurrentSyncs": self.max_concurrent_syncs,
            "pendingSyncs": self.pending_syncs,
            "nextDueSync": self.next_due_sync.isoformat() if self.next_due_sync else None,
        }


class SyncScheduler:
    """Runs due integration syncs under a concurrency cap.

    Construct once per process and drive with start()/stop().

    Args:
        runner: Executes individual syncs.
        store_factory: Opens a transactional store for scheduler queries.
        max_concurrent_syncs: Upper bound on syncs running at once.
        interval_seconds: Delay between checks for due integrations.
    """

    def __init__(
        self,
        runner: SyncRunner,
        store_factory: StoreFactory,
        max_concurrent_syncs: int = 3,
        interval_seconds: float = 60.0,
    ) -> None:
        self._runner = runner
        self._store_factory = store_factory
        self._max_concurrent_syncs = max_concurrent_syncs
        self._interval_seconds = interval_seconds
        self._active: set[uuid.UUID] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_integrations(self) -> list[uuid.UUID]:
        return list(self._active)

    @property
    def max_concurrent_syncs(self) -> int:
        return self._max_concurrent_syncs

    def start(self) -> None:
        """Start the periodic loop. Must be called from a running event loop."""
        if self._loop_task is not None:
            logger.warning("Sync scheduler already running")
            return

        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name="sync-scheduler")
        logger.info("Sync scheduler started", interval_seconds=self._interval_seconds)

    async def stop(self) -> None:
        """Stop the periodic loop. In-flight syncs keep running; see wait_idle()."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        self._running = False
        logger.info("Sync scheduler stopped", in_flight=len(self._active))

    async def wait_idle(self) -> None:
        """Wait until every launched sync has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_loop(self) -> None:
        while True:
            try:
                await self._tick()
            except Exception:
                logger.exception("Error checking for due syncs")
            await asyncio.sleep(self._interval_seconds)

    async def _tick(self) -> None:
        """Launch syncs for due integrations while slots are free."""
        if len(self._active) >= self._max_concurrent_syncs:
            logger.debug("At max concurrent syncs, skipping check", max_concurrent_syncs=self._max_concurrent_syncs)
            return

        async with self._store_factory() as store:
            due = await store.integrations.list_due(
                utcnow(),
                exclude_ids=set(self._active),
                limit=self._max_concurrent_syncs - len(self._active),
            )

        if not due:
            return

        logger.info("Integrations due for sync", count=len(due))
        for integration in due:
            if len(self._active) >= self._max_concurrent_syncs:
                break
            if integration.id in self._active:
                continue
            self._active.add(integration.id)
            self._launch(integration.id, integration.type)

    async def trigger_sync(self, integration_id: uuid.UUID) -> TriggerResult:
        """Queue a sync outside the schedule.

        Returns as soon as the sync is queued; the sync's own failure is
        recorded on the integration, never returned here.

        Args:
            integration_id: The integration to sync.

        Returns:
            TriggerResult with queued=True, or queued=False and a reason.
        """
        if integration_id in self._active:
            return TriggerResult(queued=False, reason=REASON_IN_PROGRESS)
        if len(self._active) >= self._max_concurrent_syncs:
            return TriggerResult(queued=False, reason=REASON_AT_CAPACITY)

        # Reserved before the lookup so a concurrent trigger sees it
        self._active.add(integration_id)
        try:
            async with self._store_factory() as store:
                integration = await store.integrations.get(integration_id)
        except BaseException:
            self._active.discard(integration_id)
            raise

        if integration is None:
            self._active.discard(integration_id)
            return TriggerResult(queued=False, reason=REASON_NOT_FOUND)

        self._launch(integration_id, integration.type)
        return TriggerResult(queued=True)

    async def get_status(self) -> SchedulerStatus:
        active = set(self._active)
        async with self._store_factory() as store:
            pending = await store.integrations.count_due(utcnow(), exclude_ids=active)
            next_due = await store.integrations.next_due_at()

        return SchedulerStatus(
            running=self._running,
            active_syncs=list(active),
            max_concurrent_syncs=self._max_concurrent_syncs,
            pending_syncs=pending,
            next_due_sync=next_due,
        )

    def _launch(self, integration_id: uuid.UUID, integration_type: str) -> None:
        # Caller has already added integration_id to self._active
        task = asyncio.create_task(
            self._run_sync(integration_id, integration_type),
            name=f"sync-{integration_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_sync(self, integration_id: uuid.UUID, integration_type: str) -> None:
        logger.info("Starting scheduled sync", integration_id=str(integration_id), integration_type=integration_type)
        try:
            result = await self._runner.run_sync(integration_id)
            logger.info(
                "Scheduled sync completed",
                integration_id=str(integration_id),
                evidence_generated=result.evidence_generated,
                controls_verified=result.controls_verified,
                controls_failed=result.controls_failed,
                duration_ms=result.duration_ms,
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Scheduled sync failed", integration_id=str(integration_id), error=message)
            await self._record_failure(integration_id, message)
        finally:
            self._active.discard(integration_id)

    async def _record_failure(self, integration_id: uuid.UUID, message: str) -> None:
        try:
            async with self._store_factory() as store:
                await store.integrations.mark_error(integration_id, f"Scheduled sync failed: {message}")
        except Exception:
            logger.exception("Could not record scheduled sync failure", integration_id=str(integration_id))
