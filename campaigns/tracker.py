"""
Batch Lifecycle Tracker — the per-group batch-call state machine.

States:
    none ──start──▶ in_progress ──reconcile──▶ completed | failed | cancelled

Terminal states are absorbing for a lifecycle instance. Starting again
after a terminal state archives the finished instance to the group's
history and begins a fresh one; starting while in_progress is refused.

Counters are recomputed from the provider snapshot on every reconcile,
never incremented, so replaying the same snapshot is harmless:

    completed_count = recipients completed
    failed_count    = recipients failed or cancelled
    completed_count + failed_count <= total_recipients

Usage:
    tracker = BatchLifecycleTracker(store)
    await tracker.start_batch("55", "btcal_123", total_recipients=15)
    record = await tracker.reconcile("55", snapshot)
    stats = await tracker.get_stats("55")     # success_rate → 67
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

from core.errors import (
    AlreadyInProgressError, BatchMismatchError, NoBatchStartedError,
)
from database.store_base import BaseRecordStore
from models.schemas import (
    BatchCallRecord, BatchStats, BatchStatus, ProviderBatchSnapshot,
    RecipientStatus,
)
from utils.locks import KeyedLocks

logger = structlog.get_logger()

_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.NONE: frozenset({BatchStatus.IN_PROGRESS}),
    BatchStatus.IN_PROGRESS: frozenset({
        BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED,
    }),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
    BatchStatus.CANCELLED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def success_rate(completed: int, total: int) -> int:
    """Percentage of completed calls, rounded half up. 0 when total is 0."""
    if total <= 0:
        return 0
    return int(math.floor(completed / total * 100 + 0.5))


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


class BatchLifecycleTracker:

    def __init__(self, store: BaseRecordStore, stale_after_s: float = 3600.0,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.stale_after_s = stale_after_s
        self._clock = clock
        self._locks = KeyedLocks()

    # ── Transitions ───────────────────────────────────────────

    async def start_batch(
        self,
        group_id: str,
        batch_id: str,
        total_recipients: int,
        metadata: Optional[dict[str, Any]] = None,
        call_name: str = "",
        agent_id: str = "",
    ) -> BatchCallRecord:
        if not batch_id:
            raise ValueError("batch_id is required")
        if total_recipients < 0:
            raise ValueError("total_recipients must be >= 0")

        async with self._locks.hold(group_id):
            previous = await self.store.get_batch(group_id)
            if previous is not None and previous.status == BatchStatus.IN_PROGRESS:
                raise AlreadyInProgressError(group_id, previous.batch_id)
            if previous is not None and previous.is_terminal:
                await self.store.archive_batch(previous)

            now = self._clock()
            record = BatchCallRecord(
                group_id=group_id,
                batch_id=batch_id,
                status=BatchStatus.IN_PROGRESS,
                started_at=now,
                completed_at=None,
                total_recipients=total_recipients,
                completed_count=0,
                failed_count=0,
                call_name=call_name,
                agent_id=agent_id,
                metadata=dict(metadata or {}),
                updated_at=now,
            )
            await self.store.save_batch(record)

        logger.info("batch_started", group_id=group_id, batch_id=batch_id,
                    total_recipients=total_recipients,
                    archived_batch_id=previous.batch_id if previous and previous.is_terminal else None)
        return record

    async def reconcile(self, group_id: str, snapshot: ProviderBatchSnapshot) -> BatchCallRecord:
        """Fold a provider snapshot into the group's record."""
        async with self._locks.hold(group_id):
            record = await self.store.get_batch(group_id)
            if record is None or record.status == BatchStatus.NONE:
                raise NoBatchStartedError(group_id)
            if snapshot.batch_id and snapshot.batch_id != record.batch_id:
                raise BatchMismatchError(group_id, record.batch_id, snapshot.batch_id)
            if record.is_terminal:
                return record

            completed = snapshot.count(RecipientStatus.COMPLETED)
            failed = snapshot.count(RecipientStatus.FAILED, RecipientStatus.CANCELLED)
            distinct = len(snapshot.recipients)
            if distinct > record.total_recipients:
                logger.warning("batch_recipients_exceed_total", group_id=group_id,
                               batch_id=record.batch_id, total=record.total_recipients,
                               reported=distinct)
                record.total_recipients = distinct

            record.completed_count = completed
            record.failed_count = failed
            record.raw_provider_snapshot = snapshot.raw

            now = self._clock()
            if snapshot.status.is_terminal and can_transition(record.status, snapshot.status):
                record.status = snapshot.status
                if record.completed_at is None:
                    record.completed_at = now
            record.updated_at = now
            await self.store.save_batch(record)

        if record.is_terminal:
            logger.info("batch_finished", group_id=group_id, batch_id=record.batch_id,
                        status=record.status.value, completed=completed, failed=failed,
                        total=record.total_recipients)
        else:
            logger.debug("batch_reconciled", group_id=group_id, batch_id=record.batch_id,
                         completed=completed, failed=failed, total=record.total_recipients)
        return record

    async def mark_stale(self, group_id: str) -> Optional[BatchCallRecord]:
        """Flag an in-progress batch whose monitor gave up. Status is left as is."""
        async with self._locks.hold(group_id):
            record = await self.store.get_batch(group_id)
            if record is None or record.status != BatchStatus.IN_PROGRESS:
                return record
            if "stale_at" not in record.metadata:
                record.metadata = {**record.metadata, "stale_at": self._clock().isoformat()}
                record.updated_at = self._clock()
                await self.store.save_batch(record)
        logger.warning("batch_marked_stale", group_id=group_id, batch_id=record.batch_id)
        return record

    # ── Queries ───────────────────────────────────────────────

    async def get(self, group_id: str) -> Optional[BatchCallRecord]:
        return await self.store.get_batch(group_id)

    async def get_stats(self, group_id: str) -> BatchStats:
        record = await self.store.get_batch(group_id)
        if record is None or record.status == BatchStatus.NONE:
            return BatchStats()
        return BatchStats(
            has_been_called=True,
            status=record.status,
            total_recipients=record.total_recipients,
            completed_count=record.completed_count,
            failed_count=record.failed_count,
            success_rate=success_rate(record.completed_count, record.total_recipients),
            started_at=record.started_at,
            completed_at=record.completed_at,
            is_stale=self.is_stale(record),
        )

    async def history(self, group_id: str) -> list[BatchCallRecord]:
        """Archived instances followed by the current one."""
        records = await self.store.batch_history(group_id)
        current = await self.store.get_batch(group_id)
        if current is not None and current.status != BatchStatus.NONE:
            records.append(current)
        return records

    async def find_by_batch_id(self, batch_id: str) -> Optional[BatchCallRecord]:
        return await self.store.find_batch(batch_id)

    async def list_in_progress(self) -> list[BatchCallRecord]:
        return await self.store.list_batches(BatchStatus.IN_PROGRESS)

    def is_stale(self, record: BatchCallRecord) -> bool:
        """In progress but past the monitoring ceiling (or given up on by the monitor)."""
        if record.status != BatchStatus.IN_PROGRESS:
            return False
        if record.metadata.get("stale_at"):
            return True
        if record.started_at is None:
            return False
        return self._clock() - record.started_at > timedelta(seconds=self.stale_after_s)

    async def list_stale_batches(self) -> list[BatchCallRecord]:
        return [r for r in await self.list_in_progress() if self.is_stale(r)]
