"""Sync coordinator: reconciles unsynced entities with the remote service.

State machine ``IDLE -> SYNCING -> IDLE``. A pass is triggered by an Online
transition or by ``force_sync()``; a trigger that arrives while a pass is
running joins that pass instead of starting or queueing another one, so at
most one pass is ever in flight.

Each pass:
    1. Snapshots every syncable entity with ``synced=false`` (and not
       failed-permanent) straight from the local store, so a pass after a
       restart sees exactly the work that was pending before it.
    2. Pushes every entity independently, at most ``max_concurrency`` at once.
    3. Marks acknowledged entities ``synced=true``; retries transient failures
       with exponential backoff and jitter while the retry fits in the pass's
       retry window; marks definite rejections failed-permanent.
    4. Stops issuing pushes as soon as the monitor reports Offline.

While the coordinator is started and Online, a pass that leaves deferred
items behind schedules a follow-up ``retry`` pass for the earliest persisted
``next_attempt_at``, so transient outages heal without a new trigger.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel

from retina_offline.errors import NetworkFailureError, PushTimeoutError, RemoteRejectedError
from retina_offline.models import SYNCABLE_TYPES, SyncableEntity, SyncEnvelope
from retina_offline.observability import record_pass, record_push
from retina_offline.scheduling import LoopScheduler, Scheduler
from retina_offline.sync.backoff import BackoffPolicy

if TYPE_CHECKING:
    from collections.abc import Callable

    from retina_offline.connectivity import ConnectivityMonitor
    from retina_offline.scheduling import ScheduledTask
    from retina_offline.storage import LocalStore
    from retina_offline.sync.remote import SyncTransport

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    """Coordinator states."""

    IDLE = "idle"
    SYNCING = "syncing"


class ItemOutcome(str, Enum):
    """How a single entity left a pass."""

    PUSHED = "pushed"
    FAILED = "failed"
    REMAINING = "remaining"


class SyncSummary(BaseModel):
    """Result of one sync pass.

    Attributes:
        pushed: Entities acknowledged by the remote during the pass
        failed: Entities the remote rejected permanently during the pass
        remaining: Entities still pending when the pass returned to idle
        trigger: What started the pass ("manual", "online" or "retry")
        halted_offline: The pass stopped early because connectivity dropped
        coalesced: The caller joined a pass that was already running
    """

    pushed: int = 0
    failed: int = 0
    remaining: int = 0
    trigger: str = "manual"
    started_at: datetime | None = None
    finished_at: datetime | None = None
    halted_offline: bool = False
    coalesced: bool = False


class SyncStatus(BaseModel):
    """Coordinator status as shown to consumers."""

    state: SyncState
    online: bool
    pending: int
    last_sync_at: datetime | None = None
    last_summary: SyncSummary | None = None


class SyncCoordinator:
    """Drives sync passes between the local store and the remote."""

    def __init__(
        self,
        store: LocalStore,
        transport: SyncTransport,
        monitor: ConnectivityMonitor,
        scheduler: Scheduler | None = None,
        backoff: BackoffPolicy | None = None,
        max_concurrency: int = 4,
        push_timeout_seconds: float = 10.0,
        max_attempts_per_pass: int = 5,
        retry_window_seconds: float = 30.0,
    ) -> None:
        """Initialize coordinator.

        Args:
            store: Local store holding the entities
            transport: Remote push transport
            monitor: Connectivity monitor (triggers passes, halts them)
            scheduler: Scheduler used for backoff waits
            backoff: Retry delay policy
            max_concurrency: Maximum pushes in flight at once
            push_timeout_seconds: Hard timeout per push attempt
            max_attempts_per_pass: Push attempts per entity before it is left
                for a later pass
            retry_window_seconds: Longest a pass keeps waiting on backoff
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        self.store = store
        self.transport = transport
        self.monitor = monitor
        self.scheduler = scheduler or LoopScheduler()
        self.backoff = backoff or BackoffPolicy()
        self.max_concurrency = max_concurrency
        self.push_timeout_seconds = push_timeout_seconds
        self.max_attempts_per_pass = max_attempts_per_pass
        self.retry_window_seconds = retry_window_seconds

        self._state = SyncState.IDLE
        self._current: asyncio.Task[SyncSummary] | None = None
        self._halt: asyncio.Event | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._retry: ScheduledTask | None = None
        self._last_summary: SyncSummary | None = None
        self._last_sync_at: datetime | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def last_summary(self) -> SyncSummary | None:
        return self._last_summary

    @property
    def last_sync_at(self) -> datetime | None:
        return self._last_sync_at

    def start(self) -> None:
        """Subscribe to connectivity transitions."""
        if self._unsubscribe is None:
            self._unsubscribe = self.monitor.subscribe(self._on_connectivity_change)
            logger.info("Sync coordinator started")

    async def stop(self) -> None:
        """Unsubscribe, drop a scheduled retry, and wait for a running pass to return to idle."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_retry()
        if self._current is not None and not self._current.done():
            logger.info("Waiting for running sync pass before stopping")
            await asyncio.gather(self._current, return_exceptions=True)
        logger.info("Sync coordinator stopped")

    async def force_sync(self) -> SyncSummary:
        """Run a sync pass now, or join the pass that is already running.

        Returns:
            Summary of the pass once it is back to idle
        """
        if self._current is not None and not self._current.done():
            logger.info("Sync pass already running; joining it")
            summary = await asyncio.shield(self._current)
            return summary.model_copy(update={"coalesced": True})

        return await asyncio.shield(self._launch("manual"))

    async def status(self) -> SyncStatus:
        """Current state plus the number of entities awaiting automatic sync."""
        pending = len(await self._snapshot_pending())
        return SyncStatus(
            state=self._state,
            online=self.monitor.is_online(),
            pending=pending,
            last_sync_at=self._last_sync_at,
            last_summary=self._last_summary,
        )

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            if self._current is None or self._current.done():
                logger.info("Connectivity restored; starting sync pass")
                self._launch("online")
        else:
            self._cancel_retry()
            if self._halt is not None:
                logger.info("Connectivity lost; halting sync pass")
                self._halt.set()

    def _on_retry_due(self) -> None:
        self._retry = None
        if self._unsubscribe is None or not self.monitor.is_online():
            return
        # A running pass schedules its own follow-up when it ends.
        if self._current is not None and not self._current.done():
            return
        logger.info("Retry backoff elapsed; starting sync pass")
        self._launch("retry")

    def _cancel_retry(self) -> None:
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None

    async def _schedule_retry(self) -> None:
        """Schedule a follow-up pass for the earliest deferred item."""
        if self._unsubscribe is None or not self.monitor.is_online():
            return
        try:
            pending = await self._snapshot_pending()
        except Exception as e:
            logger.error(f"Could not schedule sync retry: {e}")
            return
        if not pending:
            return

        now = self.scheduler.utcnow()
        due = min(entity.next_attempt_at or now for entity in pending)
        delay = max((due - now).total_seconds(), self.backoff.base)
        self._cancel_retry()
        self._retry = self.scheduler.call_later(delay, self._on_retry_due)
        logger.info(f"{len(pending)} items still pending; next sync pass in {delay:.2f}s")

    def _launch(self, trigger: str) -> asyncio.Task[SyncSummary]:
        self._cancel_retry()
        task = asyncio.get_running_loop().create_task(self._run_pass(trigger))
        task.add_done_callback(self._log_pass_failure)
        self._current = task
        return task

    @staticmethod
    def _log_pass_failure(task: asyncio.Task[SyncSummary]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Sync pass failed: {task.exception()}", exc_info=task.exception())

    async def _snapshot_pending(self) -> list[SyncableEntity]:
        pending: list[SyncableEntity] = []
        for entity_type in SYNCABLE_TYPES:
            query = self.store.query_by_index(entity_type, synced=False, failed_permanent=False)
            async for entity in query:
                pending.append(entity)  # type: ignore[arg-type]
        return pending

    async def _run_pass(self, trigger: str) -> SyncSummary:
        self._state = SyncState.SYNCING
        halt = asyncio.Event()
        self._halt = halt
        summary = SyncSummary(trigger=trigger, started_at=datetime.now(UTC))

        try:
            pending = await self._snapshot_pending()
            logger.info(f"Sync pass ({trigger}) started with {len(pending)} pending items")

            if pending:
                semaphore = asyncio.Semaphore(self.max_concurrency)
                deadline = self.scheduler.now() + self.retry_window_seconds
                results = await asyncio.gather(
                    *(self._sync_item(entity, semaphore, halt, deadline) for entity in pending),
                    return_exceptions=True,
                )

                for entity, result in zip(pending, results):
                    if isinstance(result, BaseException):
                        logger.error(
                            f"Sync of {entity.entity_type.value} '{entity.id}' crashed: {result}",
                            exc_info=result if logger.isEnabledFor(logging.DEBUG) else None,
                        )
                        summary.remaining += 1
                    elif result is ItemOutcome.PUSHED:
                        summary.pushed += 1
                    elif result is ItemOutcome.FAILED:
                        summary.failed += 1
                    else:
                        summary.remaining += 1

            summary.halted_offline = halt.is_set()
        finally:
            summary.finished_at = datetime.now(UTC)
            self._state = SyncState.IDLE
            self._halt = None
            self._last_summary = summary
            self._last_sync_at = summary.finished_at
            record_pass(trigger)

        logger.info(
            f"Sync pass ({trigger}) finished: pushed={summary.pushed} "
            f"failed={summary.failed} remaining={summary.remaining}"
            + (" (halted: offline)" if summary.halted_offline else "")
        )
        if summary.remaining and not summary.halted_offline:
            await self._schedule_retry()
        return summary

    async def _sync_item(
        self,
        entity: SyncableEntity,
        semaphore: asyncio.Semaphore,
        halt: asyncio.Event,
        deadline: float,
    ) -> ItemOutcome:
        """Push one entity until it is acknowledged, rejected, or deferred."""
        attempts = entity.sync_attempts
        attempts_this_pass = 0
        wait = self._initial_wait(entity)

        while True:
            if wait > 0:
                if self.scheduler.now() + wait > deadline:
                    return ItemOutcome.REMAINING
                if not await self._wait_or_halt(wait, halt):
                    return ItemOutcome.REMAINING

            async with semaphore:
                if halt.is_set() or not self.monitor.is_online():
                    halt.set()
                    return ItemOutcome.REMAINING
                error = await self._push_once(entity)

            if error is None:
                await self.store.update_sync_state(
                    entity.entity_type,
                    entity.id,
                    synced=True,
                    attempts=attempts,
                    last_error=None,
                    next_attempt_at=None,
                )
                return ItemOutcome.PUSHED

            if isinstance(error, RemoteRejectedError):
                await self.store.update_sync_state(
                    entity.entity_type,
                    entity.id,
                    failed_permanent=True,
                    last_error=str(error),
                    next_attempt_at=None,
                )
                logger.error(
                    f"{entity.entity_type.value} '{entity.id}' rejected by remote; "
                    f"marked failed-permanent: {error}"
                )
                return ItemOutcome.FAILED

            attempts += 1
            attempts_this_pass += 1
            wait = self.backoff.delay(attempts)
            await self.store.update_sync_state(
                entity.entity_type,
                entity.id,
                attempts=attempts,
                last_error=str(error),
                next_attempt_at=self.scheduler.utcnow() + timedelta(seconds=wait),
            )
            logger.warning(
                f"Push of {entity.entity_type.value} '{entity.id}' failed "
                f"(attempt {attempts}); retrying in {wait:.2f}s: {error}"
            )
            if attempts_this_pass >= self.max_attempts_per_pass:
                return ItemOutcome.REMAINING

    def _initial_wait(self, entity: SyncableEntity) -> float:
        if entity.next_attempt_at is None:
            return 0.0
        return max(0.0, (entity.next_attempt_at - self.scheduler.utcnow()).total_seconds())

    async def _wait_or_halt(self, delay: float, halt: asyncio.Event) -> bool:
        """Sleep for ``delay``; return False if the pass was halted meanwhile."""
        sleeper = asyncio.ensure_future(self.scheduler.sleep(delay))
        halted = asyncio.ensure_future(halt.wait())
        try:
            await asyncio.wait({sleeper, halted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, halted):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, halted, return_exceptions=True)
        return not halt.is_set()

    async def _push_once(self, entity: SyncableEntity) -> Exception | None:
        """One bounded push attempt.

        Returns:
            None on acknowledgment, otherwise the failure
        """
        envelope = SyncEnvelope.from_entity(entity)
        entity_type = entity.entity_type.value
        start = time.perf_counter()

        try:
            await asyncio.wait_for(self.transport.push(envelope), timeout=self.push_timeout_seconds)
        except (TimeoutError, PushTimeoutError) as e:
            record_push(entity_type, "timeout", time.perf_counter() - start)
            error = e if isinstance(e, PushTimeoutError) else PushTimeoutError(
                f"Push of {entity_type} '{entity.id}' exceeded {self.push_timeout_seconds}s"
            )
            return error
        except RemoteRejectedError as e:
            record_push(entity_type, "rejected", time.perf_counter() - start)
            return e
        except NetworkFailureError as e:
            record_push(entity_type, "transient", time.perf_counter() - start)
            return e
        except Exception as e:
            logger.error(f"Unexpected push error for {entity_type} '{entity.id}': {e}", exc_info=True)
            record_push(entity_type, "transient", time.perf_counter() - start)
            return e

        record_push(entity_type, "acked", time.perf_counter() - start)
        return None
