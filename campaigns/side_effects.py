"""
One-shot side effects per (batch_id, contact_id).

The persisted SideEffectRecord is the dedup set: `claim()` inserts it
atomically and only the caller that wins the insert submits the work. Each
claimed pair runs as a background task bounded by a semaphore, and its
outcome (succeeded / failed / skipped, attempts, error) is written back to
the record.

Failed side effects are not retried automatically; an operator re-runs
them with `retry_failed()`. A skipped claim is reopened when the provider
later reports a different terminal status for the recipient, which happens
after a re-dial.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from database.store_base import BaseRecordStore
from models.schemas import (
    BatchCallRecord, RecipientCallState, SideEffectRecord, SideEffectStatus,
)

logger = structlog.get_logger()

SideEffectHandler = Callable[[BatchCallRecord, RecipientCallState], Awaitable[Optional[dict[str, Any]]]]


class SideEffectSkipped(Exception):
    """Raised by a handler when the recipient does not warrant the side effect."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SideEffectRunner:

    def __init__(self, store: BaseRecordStore, handler: SideEffectHandler, concurrency: int = 5):
        self.store = store
        self.handler = handler
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._tasks: set[asyncio.Task] = set()

    async def claim(self, batch: BatchCallRecord, recipient: RecipientCallState) -> bool:
        """
        Insert the pending record. True only for the first claimer of the pair,
        or when a skipped claim is superseded by a new call outcome.
        """
        claimed = await self.store.claim_side_effect(SideEffectRecord(
            batch_id=batch.batch_id,
            contact_id=recipient.contact_id,
            group_id=batch.group_id,
            recipient=recipient.model_dump(mode="json"),
        ))
        if not claimed:
            claimed = await self._supersede_skipped(batch, recipient)
        if claimed:
            logger.info("side_effect_claimed", batch_id=batch.batch_id,
                        contact_id=recipient.contact_id, status=recipient.status.value)
        return claimed

    async def _supersede_skipped(self, batch: BatchCallRecord, recipient: RecipientCallState) -> bool:
        # A terminal call status only changes after the provider re-dials the
        # recipient. Callers hold the per-batch poll lock.
        existing = await self.store.get_side_effect(batch.batch_id, recipient.contact_id)
        if existing is None or existing.status != SideEffectStatus.SKIPPED:
            return False
        if existing.recipient.get("status") == recipient.status.value:
            return False
        previous = existing.recipient.get("status")
        existing.status = SideEffectStatus.PENDING
        existing.error = ""
        existing.finished_at = None
        existing.recipient = recipient.model_dump(mode="json")
        await self.store.update_side_effect(existing)
        logger.info("side_effect_superseded", batch_id=batch.batch_id,
                    contact_id=recipient.contact_id,
                    previous=previous, status=recipient.status.value)
        return True

    def submit(self, batch: BatchCallRecord, recipient: RecipientCallState) -> asyncio.Task:
        task = asyncio.create_task(self._run(batch, recipient))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, batch: BatchCallRecord, recipient: RecipientCallState) -> SideEffectRecord:
        async with self._semaphore:
            record = await self.store.get_side_effect(batch.batch_id, recipient.contact_id)
            if record is None:
                record = SideEffectRecord(batch_id=batch.batch_id, contact_id=recipient.contact_id,
                                          group_id=batch.group_id)
            record.status = SideEffectStatus.RUNNING
            record.attempts += 1
            record.error = ""
            await self.store.update_side_effect(record)

            try:
                result = await self.handler(batch, recipient)
                record.status = SideEffectStatus.SUCCEEDED
                record.result = dict(result or {})
            except SideEffectSkipped as e:
                record.status = SideEffectStatus.SKIPPED
                record.error = e.reason
            except Exception as e:
                record.status = SideEffectStatus.FAILED
                record.error = str(e)
                logger.error("side_effect_failed", batch_id=batch.batch_id,
                             contact_id=recipient.contact_id, attempts=record.attempts,
                             error=str(e))

            record.finished_at = datetime.now(timezone.utc)
            await self.store.update_side_effect(record)

        logger.info("side_effect_finished", batch_id=batch.batch_id,
                    contact_id=recipient.contact_id, status=record.status.value)
        return record

    async def retry_failed(self, batch: BatchCallRecord) -> int:
        """Re-submit every failed side effect of the batch. Returns how many."""
        failed = await self.store.list_side_effects(batch.batch_id, SideEffectStatus.FAILED)
        resubmitted = 0
        for record in failed:
            if record.recipient:
                recipient = RecipientCallState.model_validate(record.recipient)
            else:
                # Claims always carry the recipient; this only guards hand-edited rows.
                logger.warning("side_effect_missing_recipient",
                               batch_id=batch.batch_id, contact_id=record.contact_id)
                continue
            record.status = SideEffectStatus.PENDING
            await self.store.update_side_effect(record)
            self.submit(batch, recipient)
            resubmitted += 1
        logger.info("side_effects_retried", batch_id=batch.batch_id, count=resubmitted)
        return resubmitted

    async def list(self, batch_id: str,
                   status: Optional[SideEffectStatus] = None) -> list[SideEffectRecord]:
        return await self.store.list_side_effects(batch_id, status)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every submitted side effect has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
