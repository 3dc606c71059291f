"""
Tests for the progress monitor.

Covers:
  - one reconciliation tick (counters, side-effect claims, batch_progress)
  - exactly-once side effect across repeated and overlapping polls
  - loop termination on terminal status and on the ceiling
  - provider outages and resume after restart
"""
import asyncio

import pytest

from campaigns.monitor import ProgressMonitor
from campaigns.side_effects import SideEffectRunner
from campaigns.tracker import BatchLifecycleTracker
from models.schemas import BatchStatus, SideEffectStatus


class _CountingHandler:
    def __init__(self):
        self.calls = []

    async def __call__(self, batch, recipient):
        self.calls.append((batch.batch_id, recipient.contact_id))
        await asyncio.sleep(0)
        return {}


@pytest.fixture
def handler():
    return _CountingHandler()


@pytest.fixture
def tracker(store):
    return BatchLifecycleTracker(store)


@pytest.fixture
def runner(store, handler):
    return SideEffectRunner(store, handler, concurrency=2)


@pytest.fixture
def monitor(provider, tracker, runner, hub):
    return ProgressMonitor(provider, tracker, runner, hub, poll_interval_s=0,
                           max_iterations=5, max_duration_s=60)


async def _start(provider, tracker, make_recipients, n=3, group_id="55"):
    submission = await provider.start_batch_call(group_id, make_recipients(n), "phone_1")
    await tracker.start_batch(group_id, submission.batch_id, submission.recipients_count)
    return submission.batch_id


class TestPollOnce:

    @pytest.mark.asyncio
    async def test_tick_reconciles_and_publishes(self, monitor, provider, tracker,
                                                 make_recipients, recorded):
        batch_id = await _start(provider, tracker, make_recipients)
        provider.set_recipient(batch_id, "+573100000000", "completed")
        provider.set_recipient(batch_id, "+573100000001", "no_answer")

        record = await monitor.poll_once("55", batch_id)
        assert record.completed_count == 1
        assert record.failed_count == 1
        assert record.status == BatchStatus.IN_PROGRESS

        progress = [e for e in recorded if e["topic"] == "batch_progress"]
        assert len(progress) == 1
        assert progress[0]["group_id"] == "55"
        assert progress[0]["success_rate"] == 33
        assert progress[0]["new_side_effects"] == 2

    @pytest.mark.asyncio
    async def test_repeated_polls_fire_side_effect_once(self, monitor, provider, tracker,
                                                        runner, handler, make_recipients):
        batch_id = await _start(provider, tracker, make_recipients)
        provider.set_recipient(batch_id, "+573100000000", "completed")

        for _ in range(3):
            await monitor.poll_once("55", batch_id)
        await runner.wait_idle()
        assert handler.calls == [(batch_id, "+573100000000")]

    @pytest.mark.asyncio
    async def test_concurrent_polls_fire_side_effect_once(self, monitor, provider, tracker,
                                                          runner, handler, make_recipients):
        batch_id = await _start(provider, tracker, make_recipients)
        for i in range(3):
            provider.set_recipient(batch_id, f"+5731000000{i:02d}", "completed")

        await asyncio.gather(*[monitor.poll_once("55", batch_id) for _ in range(5)])
        await runner.wait_idle()
        assert sorted(c[1] for c in handler.calls) == [
            "+573100000000", "+573100000001", "+573100000002",
        ]
        records = await runner.list(batch_id, SideEffectStatus.SUCCEEDED)
        assert len(records) == 3

    @pytest.mark.asyncio
    async def test_provider_unavailable_returns_none(self, monitor, provider, tracker,
                                                     make_recipients):
        batch_id = await _start(provider, tracker, make_recipients)
        provider.unavailable = True
        assert await monitor.poll_once("55", batch_id) is None
        assert (await tracker.get("55")).status == BatchStatus.IN_PROGRESS


class TestMonitorLoop:

    @pytest.mark.asyncio
    async def test_loop_ends_on_terminal_status(self, monitor, provider, tracker,
                                                make_recipients, recorded):
        batch_id = await _start(provider, tracker, make_recipients, n=2)
        for i in range(2):
            provider.set_recipient(batch_id, f"+5731000000{i:02d}", "completed")
        provider.set_status(batch_id, "completed")

        task = monitor.watch("55", batch_id)
        assert monitor.watch("55", batch_id) is task
        await asyncio.wait_for(task, timeout=2)

        assert (await tracker.get("55")).status == BatchStatus.COMPLETED
        completed = [e for e in recorded if e["topic"] == "batch_completed"]
        assert len(completed) == 1
        assert completed[0]["success_rate"] == 100
        assert not monitor.is_watching(batch_id)
        assert monitor.active_batches() == []

    @pytest.mark.asyncio
    async def test_ceiling_marks_batch_stale(self, monitor, provider, tracker,
                                             make_recipients, recorded):
        batch_id = await _start(provider, tracker, make_recipients)
        await asyncio.wait_for(monitor.watch("55", batch_id), timeout=2)

        assert provider.status_calls == 5
        record = await tracker.get("55")
        assert record.status == BatchStatus.IN_PROGRESS
        assert "stale_at" in record.metadata
        stale = [e for e in recorded if e["topic"] == "batch_stale"]
        assert len(stale) == 1
        assert stale[0]["iterations"] == 5

    @pytest.mark.asyncio
    async def test_provider_outage_keeps_polling(self, monitor, provider, tracker,
                                                 make_recipients):
        batch_id = await _start(provider, tracker, make_recipients)
        provider.unavailable = True
        await asyncio.wait_for(monitor.watch("55", batch_id), timeout=2)
        assert provider.status_calls == 5
        assert tracker.is_stale(await tracker.get("55"))

    @pytest.mark.asyncio
    async def test_stop_cancels_polling(self, provider, tracker, runner, hub, make_recipients):
        monitor = ProgressMonitor(provider, tracker, runner, hub, poll_interval_s=10)
        batch_id = await _start(provider, tracker, make_recipients)
        monitor.watch("55", batch_id)
        await asyncio.sleep(0)
        assert monitor.is_watching(batch_id)
        assert await monitor.stop(batch_id) is True
        assert not monitor.is_watching(batch_id)
        assert await monitor.stop(batch_id) is False

    @pytest.mark.asyncio
    async def test_resume_skips_stale_batches(self, provider, tracker, runner, hub,
                                              make_recipients):
        monitor = ProgressMonitor(provider, tracker, runner, hub, poll_interval_s=10)
        live = await _start(provider, tracker, make_recipients, group_id="55")
        await _start(provider, tracker, make_recipients, group_id="56")
        await tracker.mark_stale("56")

        assert await monitor.resume_in_progress() == 1
        assert monitor.active_batches() == [live]
        await monitor.stop_all()
