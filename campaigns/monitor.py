"""
Progress Monitor — periodic reconciliation of in-flight batches with the
call provider.

One background task per batch. Each tick:

  1. fetch the provider snapshot       (ProviderUnavailable → log, next tick)
  2. tracker.reconcile()
  3. claim every terminal recipient; newly claimed pairs go to the
     side-effect runner exactly once
  4. publish batch_progress

The loop ends when the batch reaches a terminal status (batch_completed)
or hits its ceiling, whichever comes first:

    max_iterations ticks  |  max_duration_s elapsed

On the ceiling the batch keeps its last known status, is flagged stale on
the tracker, and batch_stale is published.

Polls of one batch are serialized on a per-batch lock; with the atomic
claim this keeps the side effect to at most one run per recipient even when
a manual poll overlaps the background loop.
"""
from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

import structlog

from campaigns.side_effects import SideEffectRunner
from campaigns.tracker import BatchLifecycleTracker, success_rate
from core.errors import (
    BatchMismatchError, NoBatchStartedError, ProviderUnavailableError,
)
from events.hub import EventHub
from models.schemas import BatchCallRecord, EventTopic
from providers.call_provider import CallProvider
from utils.locks import KeyedLocks

logger = structlog.get_logger()


class ProgressMonitor:

    def __init__(
        self,
        provider: CallProvider,
        tracker: BatchLifecycleTracker,
        runner: SideEffectRunner,
        hub: Optional[EventHub] = None,
        poll_interval_s: float = 15.0,
        max_iterations: int = 240,
        max_duration_s: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.tracker = tracker
        self.runner = runner
        self.hub = hub
        self.poll_interval_s = poll_interval_s
        self.max_iterations = max_iterations
        self.max_duration_s = max_duration_s
        self._clock = clock
        self._locks = KeyedLocks()
        self._tasks: dict[str, asyncio.Task] = {}       # batch_id → polling task
        self._groups: dict[str, str] = {}               # batch_id → group_id

    # ── Lifecycle ─────────────────────────────────────────────

    def watch(self, group_id: str, batch_id: str) -> asyncio.Task:
        """Start polling the batch in the background. Idempotent per batch."""
        task = self._tasks.get(batch_id)
        if task is not None and not task.done():
            return task
        self._groups[batch_id] = group_id
        task = asyncio.create_task(self._loop(group_id, batch_id), name=f"monitor:{batch_id}")
        self._tasks[batch_id] = task
        logger.info("monitor_started", group_id=group_id, batch_id=batch_id,
                    poll_interval_s=self.poll_interval_s)
        return task

    async def stop(self, batch_id: str) -> bool:
        task = self._tasks.pop(batch_id, None)
        self._groups.pop(batch_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("monitor_stopped", batch_id=batch_id)
        return True

    async def stop_all(self) -> None:
        for batch_id in list(self._tasks):
            await self.stop(batch_id)

    def active_batches(self) -> list[str]:
        return [b for b, t in self._tasks.items() if not t.done()]

    def is_watching(self, batch_id: str) -> bool:
        task = self._tasks.get(batch_id)
        return task is not None and not task.done()

    async def resume_in_progress(self) -> int:
        """Re-watch every in-progress batch that has not gone stale. Returns how many."""
        resumed = 0
        for record in await self.tracker.list_in_progress():
            if self.tracker.is_stale(record):
                logger.warning("monitor_resume_skipped_stale", group_id=record.group_id,
                               batch_id=record.batch_id)
                continue
            self.watch(record.group_id, record.batch_id)
            resumed += 1
        logger.info("monitor_resumed", count=resumed)
        return resumed

    # ── Polling ───────────────────────────────────────────────

    async def poll_once(self, group_id: str, batch_id: str) -> Optional[BatchCallRecord]:
        """
        One reconciliation tick. Returns the reconciled record, or None when
        the provider could not be reached.
        """
        async with self._locks.hold(batch_id):
            try:
                snapshot = await self.provider.get_batch_status(batch_id)
            except ProviderUnavailableError as e:
                logger.warning("monitor_fetch_failed", group_id=group_id,
                               batch_id=batch_id, error=str(e))
                return None

            record = await self.tracker.reconcile(group_id, snapshot)

            claimed = []
            for recipient in snapshot.terminal_recipients:
                if await self.runner.claim(record, recipient):
                    claimed.append(recipient)
            for recipient in claimed:
                self.runner.submit(record, recipient)

        self._publish(EventTopic.BATCH_PROGRESS, record, new_side_effects=len(claimed))
        return record

    async def _loop(self, group_id: str, batch_id: str) -> None:
        started = self._clock()
        iterations = 0
        try:
            while True:
                iterations += 1
                try:
                    record = await self.poll_once(group_id, batch_id)
                except (NoBatchStartedError, BatchMismatchError):
                    raise
                except Exception as e:
                    logger.error("monitor_poll_error", group_id=group_id,
                                 batch_id=batch_id, error=str(e))
                    record = None

                if record is not None and record.is_terminal:
                    self._publish(EventTopic.BATCH_COMPLETED, record)
                    logger.info("monitor_finished", group_id=group_id, batch_id=batch_id,
                                status=record.status.value, iterations=iterations)
                    return

                elapsed = self._clock() - started
                if iterations >= self.max_iterations or elapsed >= self.max_duration_s:
                    stale = await self.tracker.mark_stale(group_id)
                    if stale is not None:
                        self._publish(EventTopic.BATCH_STALE, stale,
                                      iterations=iterations, elapsed_s=round(elapsed, 1))
                    logger.warning("monitor_ceiling_reached", group_id=group_id,
                                   batch_id=batch_id, iterations=iterations,
                                   elapsed_s=round(elapsed, 1))
                    return

                await asyncio.sleep(self.poll_interval_s)
        except (NoBatchStartedError, BatchMismatchError) as e:
            logger.error("monitor_aborted", group_id=group_id, batch_id=batch_id, error=str(e))
        except asyncio.CancelledError:
            logger.info("monitor_cancelled", group_id=group_id, batch_id=batch_id)
            raise
        finally:
            if self._tasks.get(batch_id) is asyncio.current_task():
                self._tasks.pop(batch_id, None)
                self._groups.pop(batch_id, None)

    def _publish(self, topic: EventTopic, record: BatchCallRecord, **extra) -> None:
        if self.hub is None:
            return
        self.hub.publish(topic, {
            "group_id": record.group_id,
            "batch_id": record.batch_id,
            "status": record.status.value,
            "total_recipients": record.total_recipients,
            "completed_count": record.completed_count,
            "failed_count": record.failed_count,
            "success_rate": success_rate(record.completed_count, record.total_recipients),
            **extra,
        })
