import asyncio
import time
from datetime import date, timedelta

import pytest

from backend.analytics import worker as worker_module
from backend.analytics.database import session_scope
from backend.analytics.models import Job, SiteDailyAggregate
from backend.analytics.queue import EventQueue, JobState
from backend.analytics.store import count_raw_events, sum_path_views
from backend.analytics.worker import AggregationWorker

DAY = date(2024, 11, 14)


def _aggregate(session_factory, site_id="s1", day=DAY):
    with session_scope(session_factory) as session:
        return session.get(SiteDailyAggregate, (site_id, day))


async def _wait_for(predicate, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_process_event_job_updates_aggregates(queue, worker, session_factory, make_event):
    job_id = await queue.enqueue(make_event().model_dump(mode="json"))

    assert await worker.run_until_idle() == 1

    status = await queue.status(job_id)
    assert status.state == JobState.COMPLETED.value
    aggregate = _aggregate(session_factory)
    assert aggregate.total_views == 1
    assert aggregate.unique_visitors == 1


@pytest.mark.asyncio
async def test_redelivered_job_does_not_double_count(session_factory, clock, make_event):
    queue = EventQueue(session_factory, visibility_timeout=30, remove_on_complete=False, clock=clock)
    worker = AggregationWorker(queue, session_factory, concurrency=1)
    event = make_event(path="/a", visitor_id="v1")
    await queue.enqueue(event.model_dump(mode="json"))

    # Worker commits the aggregation, then dies before acknowledging.
    first = await queue.claim()
    worker.handle(first)
    clock.advance(31)

    second = await queue.claim()
    assert second.id == first.id
    assert await worker.process_job(second) is True

    aggregate = _aggregate(session_factory)
    assert aggregate.total_views == 1
    assert aggregate.unique_visitors == 1
    with session_scope(session_factory) as session:
        assert count_raw_events(session, "s1", DAY) == 1
        assert sum_path_views(session, "s1", DAY) == aggregate.total_views
    assert (await queue.status(first.id)).state == JobState.COMPLETED.value


@pytest.mark.asyncio
async def test_malformed_payload_fails_without_retry(queue, worker, session_factory):
    job_id = await queue.enqueue({"event_id": "e1", "site_id": "s1", "event_type": "page_view"})

    assert await worker.run_until_idle() == 1

    status = await queue.status(job_id)
    assert status.state == JobState.FAILED.value
    assert status.attempts_made == 1
    assert status.last_error.startswith("MalformedJobError")
    assert _aggregate(session_factory) is None


@pytest.mark.asyncio
async def test_unknown_job_name_fails_without_retry(queue, worker):
    job_id = await asyncio.to_thread(queue._add_sync, "mystery-job", {"anything": True}, 1)

    await worker.run_until_idle()

    status = await queue.status(job_id)
    assert status.state == JobState.FAILED.value
    assert status.attempts_made == 1
    assert "Unknown job name" in status.last_error


@pytest.mark.asyncio
async def test_transient_failure_retries_then_fails(queue, worker, make_event, monkeypatch):
    calls = []

    def _always_broken(session, event):
        calls.append(event.event_id)
        raise RuntimeError("database went away")

    monkeypatch.setattr(worker_module, "apply_event", _always_broken)
    job_id = await queue.enqueue(make_event().model_dump(mode="json"))

    assert await worker.run_until_idle() == 3

    status = await queue.status(job_id)
    assert status.state == JobState.FAILED.value
    assert status.attempts_made == 3
    assert status.last_error == "RuntimeError: database went away"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_transient_failure_then_success(queue, worker, session_factory, make_event, monkeypatch):
    real_apply = worker_module.apply_event
    calls = []

    def _flaky(session, event):
        calls.append(event.event_id)
        if len(calls) == 1:
            raise RuntimeError("deadlock detected")
        return real_apply(session, event)

    monkeypatch.setattr(worker_module, "apply_event", _flaky)
    job_id = await queue.enqueue(make_event().model_dump(mode="json"))

    await worker.run_until_idle()

    status = await queue.status(job_id)
    assert status.state == JobState.COMPLETED.value
    assert status.attempts_made == 2
    assert _aggregate(session_factory).total_views == 1


@pytest.mark.asyncio
async def test_batch_job_applies_each_event_once(queue, worker, session_factory, make_event):
    repeated = make_event(visitor_id="v1", path="/a")
    events = [repeated, make_event(visitor_id="v2", path="/b"), repeated]
    payload = {"batch_id": "b1", "events": [event.model_dump(mode="json") for event in events]}
    job_id = await queue.enqueue_batch(payload)

    result = worker.handle(await queue.claim())

    assert result["processedCount"] == 2
    assert result["duplicateCount"] == 1
    await queue.ack(job_id)
    aggregate = _aggregate(session_factory)
    assert aggregate.total_views == 2
    assert aggregate.unique_visitors == 2


@pytest.mark.asyncio
async def test_worker_pool_processes_concurrent_distinct_visitors(queue, worker, session_factory, make_event):
    total = 20
    for idx in range(total):
        await queue.enqueue(make_event(visitor_id=f"v{idx}", path=f"/p{idx % 4}").model_dump(mode="json"))

    def _all_applied():
        aggregate = _aggregate(session_factory)
        return aggregate is not None and aggregate.total_views == total

    worker.start()
    try:
        assert worker.running
        await _wait_for(_all_applied)
    finally:
        await worker.stop()

    assert not worker.running
    aggregate = _aggregate(session_factory)
    assert aggregate.total_views == total
    assert aggregate.unique_visitors == total
    metrics = await queue.metrics()
    assert metrics.failed == 0


def _available_at(session_factory, job_id):
    with session_scope(session_factory) as session:
        return session.get(Job, int(job_id)).available_at


@pytest.mark.asyncio
async def test_failed_attempts_are_rescheduled_with_doubling_backoff(session_factory, clock, make_event, monkeypatch):
    def _always_broken(session, event):
        raise RuntimeError("database went away")

    monkeypatch.setattr(worker_module, "apply_event", _always_broken)
    queue = EventQueue(session_factory, max_attempts=3, backoff_seconds=2, remove_on_complete=False, clock=clock)
    worker = AggregationWorker(queue, session_factory, concurrency=1)
    job_id = await queue.enqueue(make_event().model_dump(mode="json"))
    start = clock()

    assert await worker.process_job(await queue.claim()) is False
    assert _available_at(session_factory, job_id) == start + timedelta(seconds=2)
    assert (await queue.status(job_id)).state == JobState.DELAYED.value

    clock.advance(1)
    assert await queue.claim() is None
    clock.advance(1)
    assert await worker.process_job(await queue.claim()) is False
    assert _available_at(session_factory, job_id) == start + timedelta(seconds=2 + 4)

    clock.advance(4)
    third = await queue.claim()
    assert third.attempts_made == 3
    assert await worker.process_job(third) is False
    assert (await queue.status(job_id)).state == JobState.FAILED.value


@pytest.mark.asyncio
async def test_heartbeat_keeps_lease_of_slow_final_attempt(session_factory, clock, make_event, monkeypatch):
    queue = EventQueue(
        session_factory, max_attempts=1, visibility_timeout=30, remove_on_complete=False, clock=clock
    )
    worker = AggregationWorker(queue, session_factory, concurrency=1, heartbeat_interval=0.01)
    real_handle = worker.handle
    competing_claims = []

    def _slow_handle(job):
        clock.advance(20)
        time.sleep(0.2)
        clock.advance(20)
        # Another slot polls while this job is still running.
        competing_claims.append(queue._claim_sync())
        return real_handle(job)

    monkeypatch.setattr(worker, "handle", _slow_handle)
    job_id = await queue.enqueue(make_event().model_dump(mode="json"))

    assert await worker.process_job(await queue.claim()) is True

    assert competing_claims == [None]
    status = await queue.status(job_id)
    assert status.state == JobState.COMPLETED.value
    assert status.last_error is None
    assert _aggregate(session_factory).total_views == 1


@pytest.mark.asyncio
async def test_job_finishing_after_lease_loss_is_not_reported_as_success(
    session_factory, clock, make_event, monkeypatch
):
    queue = EventQueue(
        session_factory, max_attempts=1, visibility_timeout=30, remove_on_complete=False, clock=clock
    )
    worker = AggregationWorker(queue, session_factory, concurrency=1, heartbeat_interval=60)
    real_handle = worker.handle

    def _stalled_handle(job):
        clock.advance(31)
        queue._claim_sync()
        return real_handle(job)

    monkeypatch.setattr(worker, "handle", _stalled_handle)
    job_id = await queue.enqueue(make_event().model_dump(mode="json"))

    assert await worker.process_job(await queue.claim()) is False

    assert (await queue.status(job_id)).state == JobState.FAILED.value


@pytest.mark.asyncio
async def test_worker_slot_survives_unexpected_errors(queue, worker, session_factory, make_event, monkeypatch):
    real_process_job = worker.process_job
    calls = []

    async def _explodes_once(job):
        calls.append(job.id)
        if len(calls) == 1:
            raise KeyError("unexpected")
        return await real_process_job(job)

    monkeypatch.setattr(worker, "process_job", _explodes_once)
    worker.concurrency = 1
    await queue.enqueue(make_event(visitor_id="v1").model_dump(mode="json"))
    await queue.enqueue(make_event(visitor_id="v2").model_dump(mode="json"))

    def _one_applied():
        aggregate = _aggregate(session_factory)
        return aggregate is not None and aggregate.total_views == 1

    worker.start()
    try:
        await _wait_for(_one_applied)
        assert worker.running
    finally:
        await worker.stop()

    assert len(calls) >= 2
