import threading
import time

import pytest

from round_settlement.config import QUEUE_SETTINGS
from round_settlement.errors import QueueShutdown
from round_settlement.jobs.queue import DelayedJobQueue
from round_settlement.jobs.settlement_job import JobStatus, SettlementJob, settlement_key
from round_settlement.utils.backoff import BackoffPolicy


def _enqueue(queue, round_id, delay_ms=0, **kwargs):
    return queue.enqueue(settlement_key(round_id), SettlementJob(round_id=round_id), delay_ms=delay_ms, **kwargs)


def test_delayed_job_becomes_eligible_at_ready_time(memory_queue, clock):
    job = _enqueue(memory_queue, 1, delay_ms=5000)
    assert job.status == JobStatus.DELAYED
    assert job.ready_at == clock.now + 5000

    assert memory_queue.dequeue(block=False) is None
    clock.advance(4999)
    assert memory_queue.dequeue(block=False) is None
    clock.advance(1)

    claimed = memory_queue.dequeue(block=False)
    assert claimed is not None
    assert claimed.job_id == job.job_id
    assert claimed.status == JobStatus.ACTIVE
    assert claimed.attempt == 1
    assert memory_queue.snapshot()["active"] == 1


def test_zero_delay_is_ready_immediately(memory_queue):
    job = _enqueue(memory_queue, 2)
    assert job.status == JobStatus.WAITING
    assert memory_queue.dequeue(block=False).job_id == job.job_id


def test_ready_jobs_come_out_in_enqueue_order(memory_queue):
    first = _enqueue(memory_queue, 1)
    second = _enqueue(memory_queue, 2)
    assert memory_queue.dequeue(block=False).job_id == first.job_id
    assert memory_queue.dequeue(block=False).job_id == second.job_id


def test_pending_lookup_is_per_key(memory_queue):
    _enqueue(memory_queue, 7, delay_ms=1000)
    assert len(memory_queue.list_pending(settlement_key(7))) == 1
    assert memory_queue.list_pending(settlement_key(8)) == []


def test_retry_backoff_then_dead_letter(memory_queue, clock):
    job = _enqueue(memory_queue, 3, max_attempts=3, backoff=BackoffPolicy(base_ms=1000, factor=2, max_ms=60_000, jitter_pct=0.0))
    key = settlement_key(3)

    claimed = memory_queue.dequeue(block=False)
    retried = memory_queue.fail(claimed.job_id, "SubmissionFailure: boom")
    assert retried.status == JobStatus.DELAYED
    assert retried.last_backoff_ms == 1000
    assert retried.ready_at == clock.now + 1000
    # A job waiting for its retry still counts as pending for the round
    assert [j.job_id for j in memory_queue.list_pending(key)] == [job.job_id]

    clock.advance(999)
    assert memory_queue.dequeue(block=False) is None
    clock.advance(1)
    claimed = memory_queue.dequeue(block=False)
    assert claimed.attempt == 2

    retried = memory_queue.fail(claimed.job_id, "SubmissionFailure: boom")
    assert retried.last_backoff_ms == 2000
    clock.advance(2000)
    claimed = memory_queue.dequeue(block=False)
    assert claimed.attempt == 3

    dead = memory_queue.fail(claimed.job_id, "SubmissionFailure: still boom")
    assert dead.status == JobStatus.FAILED
    assert dead.last_error == "SubmissionFailure: still boom"
    assert [j.job_id for j in memory_queue.dead_letters()] == [job.job_id]
    assert memory_queue.list_pending(key) == []
    assert memory_queue.depth() == 0


def test_retry_then_success_completes(memory_queue, clock):
    job = _enqueue(memory_queue, 4)
    claimed = memory_queue.dequeue(block=False)
    memory_queue.fail(claimed.job_id, "TransientReadError: timeout")
    clock.advance(1000)
    claimed = memory_queue.dequeue(block=False)

    done = memory_queue.complete(claimed.job_id)
    assert done.status == JobStatus.COMPLETED
    assert done.attempt == 2
    assert memory_queue.get(job.job_id).status == JobStatus.COMPLETED
    assert memory_queue.dead_letters() == []
    assert memory_queue.snapshot()["active"] == 0


def test_returned_jobs_are_copies(memory_queue):
    job = _enqueue(memory_queue, 5)
    job.status = JobStatus.FAILED
    assert memory_queue.get(job.job_id).status == JobStatus.WAITING


def test_completed_records_are_evicted_past_retention(monkeypatch, clock):
    monkeypatch.setitem(QUEUE_SETTINGS, "retain_completed", 2)
    queue = DelayedJobQueue(clock=clock)
    ids = []
    for round_id in range(3):
        job = _enqueue(queue, round_id)
        ids.append(job.job_id)
        queue.complete(queue.dequeue(block=False).job_id)
    assert queue.get(ids[0]) is None
    assert queue.get(ids[2]) is not None


def test_dead_letters_are_evicted_past_retention(monkeypatch, clock):
    monkeypatch.setitem(QUEUE_SETTINGS, "retain_completed", 2)
    queue = DelayedJobQueue(clock=clock)
    ids = []
    for round_id in range(3):
        job = _enqueue(queue, round_id, max_attempts=1)
        ids.append(job.job_id)
        queue.fail(queue.dequeue(block=False).job_id, "SubmissionFailure: reverted")
    assert [j.job_id for j in queue.dead_letters()] == ids[1:]
    assert queue.get(ids[0]) is None
    assert queue.snapshot()["dead_letters"] == 2
    assert queue.list_pending(settlement_key(0)) == []


def test_capacity_limit(monkeypatch, clock):
    monkeypatch.setitem(QUEUE_SETTINGS, "max_in_memory", 1)
    queue = DelayedJobQueue(clock=clock)
    _enqueue(queue, 1)
    with pytest.raises(OverflowError):
        _enqueue(queue, 2)


def test_shutdown_rejects_enqueue_and_releases_waiters(memory_queue):
    results = []

    def consumer():
        results.append(memory_queue.dequeue(timeout=5))

    t = threading.Thread(target=consumer)
    t.start()
    time.sleep(0.1)
    memory_queue.shutdown()
    t.join(timeout=2)
    assert not t.is_alive()
    assert results == [None]
    with pytest.raises(QueueShutdown):
        _enqueue(memory_queue, 9)


def test_blocking_dequeue_wakes_for_short_delay():
    queue = DelayedJobQueue()
    job = _enqueue(queue, 10, delay_ms=100)
    start = time.time()
    claimed = queue.dequeue(timeout=3)
    elapsed = time.time() - start
    assert claimed is not None and claimed.job_id == job.job_id
    assert 0.05 <= elapsed < 2.0
    queue.shutdown()


def test_enqueue_unique_under_concurrency(memory_queue):
    key = settlement_key(20)
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(memory_queue.enqueue_unique(key, SettlementJob(round_id=20), delay_ms=10_000))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for _, created in results if created) == 1
    assert len({job.job_id for job, _ in results}) == 1
    assert len(memory_queue.list_pending(key)) == 1
