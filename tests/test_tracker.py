"""
Tests for the batch lifecycle state machine.

Covers:
  - start / reconcile / terminal transitions
  - success rate rounding
  - refusal to start while in progress
  - history and staleness
"""
from datetime import datetime, timedelta, timezone

import pytest

from campaigns.tracker import BatchLifecycleTracker, can_transition, success_rate
from core.errors import (
    AlreadyInProgressError, BatchMismatchError, NoBatchStartedError,
)
from models.schemas import BatchStatus, ProviderBatchSnapshot


def _snapshot(batch_id: str, completed: int, failed: int = 0, pending: int = 0,
              status: str = "in_progress") -> ProviderBatchSnapshot:
    recipients = (
        [{"phone_number": f"+57100{i}", "status": "completed"} for i in range(completed)]
        + [{"phone_number": f"+57200{i}", "status": "failed"} for i in range(failed)]
        + [{"phone_number": f"+57300{i}", "status": "pending"} for i in range(pending)]
    )
    return ProviderBatchSnapshot.from_provider({"id": batch_id, "status": status, "recipients": recipients})


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def tracker(store, clock):
    return BatchLifecycleTracker(store, stale_after_s=3600, clock=clock)


class TestSuccessRate:

    def test_rounds_half_up(self):
        assert success_rate(10, 15) == 67
        assert success_rate(13, 15) == 87
        assert success_rate(1, 8) == 13         # 12.5
        assert success_rate(1, 3) == 33

    def test_zero_total(self):
        assert success_rate(0, 0) == 0

    def test_transitions(self):
        assert can_transition(BatchStatus.NONE, BatchStatus.IN_PROGRESS)
        assert can_transition(BatchStatus.IN_PROGRESS, BatchStatus.CANCELLED)
        assert not can_transition(BatchStatus.COMPLETED, BatchStatus.IN_PROGRESS)
        assert not can_transition(BatchStatus.NONE, BatchStatus.COMPLETED)


class TestBatchLifecycle:

    @pytest.mark.asyncio
    async def test_never_called_group(self, tracker):
        stats = await tracker.get_stats("99")
        assert stats.has_been_called is False
        assert stats.status == BatchStatus.NONE
        assert stats.success_rate == 0

    @pytest.mark.asyncio
    async def test_group_progress_then_completion(self, tracker, clock):
        await tracker.start_batch("55", "btcal_1", total_recipients=15)

        await tracker.reconcile("55", _snapshot("btcal_1", completed=10, pending=5))
        stats = await tracker.get_stats("55")
        assert stats.has_been_called is True
        assert stats.status == BatchStatus.IN_PROGRESS
        assert stats.completed_count == 10
        assert stats.success_rate == 67

        clock.now += timedelta(minutes=5)
        record = await tracker.reconcile(
            "55", _snapshot("btcal_1", completed=13, failed=2, status="completed"))
        assert record.status == BatchStatus.COMPLETED
        assert record.failed_count == 2
        assert record.completed_at == clock.now
        assert (await tracker.get_stats("55")).success_rate == 87

    @pytest.mark.asyncio
    async def test_replaying_a_snapshot_is_harmless(self, tracker):
        await tracker.start_batch("55", "btcal_1", total_recipients=15)
        snap = _snapshot("btcal_1", completed=4, failed=1, pending=10)
        first = await tracker.reconcile("55", snap)
        second = await tracker.reconcile("55", snap)
        assert (first.completed_count, first.failed_count) == (second.completed_count, second.failed_count)

    @pytest.mark.asyncio
    async def test_completed_at_is_set_once(self, tracker, clock):
        await tracker.start_batch("55", "btcal_1", total_recipients=2)
        done = _snapshot("btcal_1", completed=2, status="completed")
        first = await tracker.reconcile("55", done)
        clock.now += timedelta(hours=1)
        second = await tracker.reconcile("55", done)
        assert second.completed_at == first.completed_at

    @pytest.mark.asyncio
    async def test_terminal_record_ignores_later_snapshots(self, tracker):
        await tracker.start_batch("55", "btcal_1", total_recipients=2)
        await tracker.reconcile("55", _snapshot("btcal_1", completed=1, failed=1, status="completed"))
        record = await tracker.reconcile("55", _snapshot("btcal_1", completed=0, pending=2))
        assert record.status == BatchStatus.COMPLETED
        assert record.completed_count == 1

    @pytest.mark.asyncio
    async def test_start_while_in_progress_is_refused(self, tracker):
        original = await tracker.start_batch("55", "btcal_1", total_recipients=15)
        with pytest.raises(AlreadyInProgressError) as exc:
            await tracker.start_batch("55", "btcal_2", total_recipients=3)
        assert exc.value.status_code == 409
        current = await tracker.get("55")
        assert current.batch_id == "btcal_1"
        assert current.total_recipients == 15
        assert current.started_at == original.started_at

    @pytest.mark.asyncio
    async def test_restart_after_terminal_archives_previous(self, tracker):
        await tracker.start_batch("55", "btcal_1", total_recipients=1)
        await tracker.reconcile("55", _snapshot("btcal_1", completed=1, status="completed"))
        await tracker.start_batch("55", "btcal_2", total_recipients=4)

        history = await tracker.history("55")
        assert [r.batch_id for r in history] == ["btcal_1", "btcal_2"]
        assert history[0].status == BatchStatus.COMPLETED
        assert history[1].status == BatchStatus.IN_PROGRESS
        assert (await tracker.find_by_batch_id("btcal_1")).status == BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reconcile_without_start(self, tracker):
        with pytest.raises(NoBatchStartedError):
            await tracker.reconcile("77", _snapshot("btcal_1", completed=1))

    @pytest.mark.asyncio
    async def test_reconcile_with_other_batch_id(self, tracker):
        await tracker.start_batch("55", "btcal_1", total_recipients=1)
        with pytest.raises(BatchMismatchError):
            await tracker.reconcile("55", _snapshot("btcal_other", completed=1))

    @pytest.mark.asyncio
    async def test_more_recipients_than_submitted_raises_total(self, tracker):
        await tracker.start_batch("55", "btcal_1", total_recipients=2)
        record = await tracker.reconcile("55", _snapshot("btcal_1", completed=3, pending=1))
        assert record.total_recipients == 4
        assert record.completed_count + record.failed_count <= record.total_recipients

    @pytest.mark.asyncio
    async def test_invalid_start_arguments(self, tracker):
        with pytest.raises(ValueError):
            await tracker.start_batch("55", "", total_recipients=1)
        with pytest.raises(ValueError):
            await tracker.start_batch("55", "btcal_1", total_recipients=-1)


class TestStaleness:

    @pytest.mark.asyncio
    async def test_stale_after_ceiling(self, tracker, clock):
        await tracker.start_batch("55", "btcal_1", total_recipients=3)
        assert await tracker.list_stale_batches() == []
        clock.now += timedelta(hours=2)
        stale = await tracker.list_stale_batches()
        assert [r.group_id for r in stale] == ["55"]
        assert (await tracker.get_stats("55")).is_stale is True

    @pytest.mark.asyncio
    async def test_mark_stale_keeps_status(self, tracker):
        await tracker.start_batch("55", "btcal_1", total_recipients=3)
        record = await tracker.mark_stale("55")
        assert record.status == BatchStatus.IN_PROGRESS
        assert "stale_at" in record.metadata
        assert tracker.is_stale(record)

    @pytest.mark.asyncio
    async def test_terminal_batch_is_never_stale(self, tracker, clock):
        await tracker.start_batch("55", "btcal_1", total_recipients=1)
        await tracker.reconcile("55", _snapshot("btcal_1", completed=1, status="completed"))
        clock.now += timedelta(days=1)
        assert await tracker.list_stale_batches() == []
