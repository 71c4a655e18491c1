"""
test_progress.py
~~~~~~~~~~~~~~~~
Progress actor: lifecycle rules, monotonic progress, and subscription replay
for late or reconnecting observers.
"""
from __future__ import annotations

import asyncio

import pytest
from hypothesis import given, settings as hypothesis_settings
from hypothesis import strategies as st

from leadscore.core.errors import (
    AlreadyInitializedError,
    JobCancelledError,
    NotFoundError,
    NotInitializedError,
)
from leadscore.services.job_store import JobStatus
from leadscore.services.progress import MemoryProgressBackend, ProgressHub

from conftest import ACCOUNT


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def started(hub: ProgressHub, job_id: str = "job_1"):
    actor = hub.actor(job_id)
    await actor.initialize(ACCOUNT, "nike", "light")
    return actor


async def collect(actor, poll_interval: float = 0.05) -> list[dict]:
    return [event async for event in actor.subscribe(poll_interval=poll_interval)]


class TestLifecycle:

    async def test_initialize_once(self, hub):
        actor = await started(hub)

        snapshot = await actor.read()
        assert snapshot.status == JobStatus.PENDING
        assert snapshot.progress == 0
        assert snapshot.expires_at - snapshot.started_at == pytest.approx(24 * 3600)

        with pytest.raises(AlreadyInitializedError):
            await actor.initialize(ACCOUNT, "nike", "light")

    async def test_update_before_initialize(self, hub):
        with pytest.raises(NotInitializedError):
            await hub.actor("job_missing").update(10, "Reserving credits")
        assert await hub.actor("job_missing").read() is None

    async def test_update_records_step(self, hub):
        actor = await started(hub)

        snapshot = await actor.update(30, "Fetching profile data")

        assert snapshot.status == JobStatus.PROCESSING
        assert snapshot.current_step == "Fetching profile data"
        assert snapshot.seq == 2

    async def test_progress_never_decreases(self, hub):
        actor = await started(hub)
        await actor.update(50, "Scoring")

        snapshot = await actor.update(20, "Late report")

        assert snapshot.progress == 50
        assert snapshot.current_step == "Late report"

    async def test_complete(self, hub):
        actor = await started(hub)
        await actor.update(90, "Saving")

        snapshot = await actor.complete({"score": 80})

        assert snapshot.status == JobStatus.COMPLETE
        assert snapshot.progress == 100
        assert snapshot.result == {"score": 80}
        assert snapshot.completed_at is not None

    async def test_failure_freezes_progress(self, hub):
        actor = await started(hub)
        await actor.update(50, "Scoring")

        failed = await actor.fail("Model output failed validation")
        after = await actor.update(80, "Saving lead")

        assert failed.progress == after.progress == 50
        assert after.status == JobStatus.FAILED
        assert after.error_message == "Model output failed validation"
        assert after.seq == failed.seq

    async def test_updates_after_cancel_are_rejected(self, hub):
        actor = await started(hub)
        await actor.update(20, "Checking cache")
        await actor.cancel()

        with pytest.raises(JobCancelledError):
            await actor.update(30, "Fetching profile data")
        assert (await actor.read()).status == JobStatus.CANCELLED

    async def test_completed_job_cannot_be_cancelled(self, hub):
        actor = await started(hub)
        await actor.complete({"score": 1})

        snapshot = await actor.cancel()

        assert snapshot.status == JobStatus.COMPLETE

    async def test_state_expires_after_retention(self):
        clock = FakeClock()
        hub = ProgressHub(MemoryProgressBackend(clock=clock), clock=clock)
        actor = await started(hub)

        clock.now += 24 * 3600
        assert await actor.read() is None
        with pytest.raises(NotInitializedError):
            await actor.update(10, "too late")


@given(steps=st.lists(st.integers(min_value=-50, max_value=150), min_size=1, max_size=30))
@hypothesis_settings(max_examples=50, deadline=None)
def test_progress_is_running_max_of_updates(steps):
    async def scenario():
        actor = await started(ProgressHub(MemoryProgressBackend()))
        seen = []
        for value in steps:
            seen.append((await actor.update(value, f"step {value}")).progress)
        return seen

    seen = asyncio.run(scenario())

    expected, high = [], 0
    for value in steps:
        high = max(high, min(100, max(0, value)))
        expected.append(high)
    assert seen == expected
    assert all(a <= b for a, b in zip(seen, seen[1:]))


class TestSubscribe:

    async def test_unknown_job(self, hub):
        with pytest.raises(NotFoundError):
            await collect(hub.actor("job_missing"))

    async def test_late_subscriber_gets_snapshot_then_terminal(self, hub):
        actor = await started(hub)
        await actor.update(50, "Scoring")
        await actor.complete({"score": 77})

        events = await collect(actor)

        assert [e["type"] for e in events] == ["ready", "complete"]
        assert events[0]["status"] == "complete"
        assert events[1]["result"] == {"score": 77}

    async def test_live_subscriber_sees_every_event_in_order(self, hub):
        actor = await started(hub)
        events: list[dict] = []
        ready = asyncio.Event()

        async def consume():
            async for event in actor.subscribe(poll_interval=0.05):
                events.append(event)
                ready.set()

        task = asyncio.create_task(consume())
        await asyncio.wait_for(ready.wait(), timeout=1)
        await actor.update(10, "Reserving credits")
        await actor.update(50, "Scoring")
        await actor.fail("boom")
        await asyncio.wait_for(task, timeout=2)

        assert [e["type"] for e in events] == ["ready", "progress", "progress", "failed"]
        assert [e["progress"] for e in events] == [0, 10, 50, 50]
        seqs = [e["seq"] for e in events]
        assert seqs == sorted(seqs) and len(set(seqs)) == len(seqs)

    async def test_reconnect_replays_current_state(self, hub):
        actor = await started(hub)
        await actor.update(30, "Fetching profile data")

        first = actor.subscribe(poll_interval=0.05)
        ready = await first.__anext__()
        await first.aclose()

        second = actor.subscribe(poll_interval=0.05)
        replay = await second.__anext__()
        await second.aclose()

        assert ready["type"] == replay["type"] == "ready"
        assert replay["progress"] == 30
        assert replay["seq"] == ready["seq"]

    async def test_dropped_publish_is_recovered_by_resync(self):
        class LossyBackend(MemoryProgressBackend):
            async def publish(self, job_id, event):
                if event["type"] == "complete":
                    raise ConnectionError("pubsub unavailable")
                await super().publish(job_id, event)

        hub = ProgressHub(LossyBackend())
        actor = await started(hub)
        ready = asyncio.Event()
        events: list[dict] = []

        async def consume():
            async for event in actor.subscribe(poll_interval=0.05):
                events.append(event)
                ready.set()

        task = asyncio.create_task(consume())
        await asyncio.wait_for(ready.wait(), timeout=1)
        snapshot = await actor.complete({"score": 5})
        await asyncio.wait_for(task, timeout=2)

        assert snapshot.status == JobStatus.COMPLETE
        assert [e["type"] for e in events] == ["ready", "complete"]
