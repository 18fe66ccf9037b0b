"""In-memory delayed job queue with retry/backoff and dead-lettering.

Features:
- Per-job delay (execution no earlier than ``enqueue time + delay_ms``).
- Key index so callers can check for pending work before enqueueing.
- Retry with exponential backoff up to ``max_attempts``, then dead-letter.
- Thread-safe with condition variable; injectable millisecond clock.

Two-heaps strategy:
 1. ready_heap: (ready_at_ms, seq, job_id)      -> status WAITING
 2. scheduled_heap: (ready_at_ms, seq, job_id)  -> status DELAYED

On enqueue / retry:
  - If ready_at <= now -> push to ready_heap else scheduled_heap.
On dequeue:
  - Promote any scheduled items whose ready_at <= now.
  - Pop the oldest ready item, mark ACTIVE and count the attempt.
  - If nothing ready: wait until next scheduled item's ready_at or until notified.

Used directly for single-process deployments and as the fallback behind
``RedisJobQueue`` when Redis is unreachable.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace, asdict, is_dataclass
from typing import Any, Callable, Optional
import heapq
import threading
import time
import uuid

from round_settlement.config import BACKOFF_POLICY, QUEUE_SETTINGS
from round_settlement.errors import QueueShutdown
from round_settlement.jobs.settlement_job import (
    JobStatus,
    PENDING_STATUSES,
    SettlementJob,
)
from round_settlement.utils import get_logger, log_business_event
from round_settlement.utils.backoff import BackoffPolicy
from round_settlement.utils.time import now_ms

logger = get_logger(__name__)

_PAYLOAD_TYPES: dict[str, type] = {"SettlementJob": SettlementJob}


@dataclass(slots=True)
class ScheduledJob:
    job_id: str
    key: str
    payload: Any
    enqueued_at: int   # epoch ms
    scheduled_at: int  # epoch ms, first eligibility
    ready_at: int      # epoch ms, current eligibility (moves on retry)
    max_attempts: int
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    attempt: int = 0
    status: JobStatus = JobStatus.DELAYED
    last_error: Optional[str] = None
    last_backoff_ms: Optional[int] = None
    finished_at: Optional[int] = None
    seq: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload = self.payload
        if is_dataclass(payload) and not isinstance(payload, type):
            job_dict = asdict(payload)
        elif isinstance(payload, dict):
            job_dict = dict(payload)
        else:
            job_dict = {"data": str(payload)}
        return {
            "job_id": self.job_id,
            "key": self.key,
            "job": job_dict,
            "job_type": type(payload).__name__,
            "enqueued_at": self.enqueued_at,
            "scheduled_at": self.scheduled_at,
            "ready_at": self.ready_at,
            "max_attempts": self.max_attempts,
            "backoff": self.backoff.to_dict(),
            "attempt": self.attempt,
            "status": self.status.value,
            "last_error": self.last_error,
            "last_backoff_ms": self.last_backoff_ms,
            "finished_at": self.finished_at,
            "seq": self.seq,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduledJob":
        job_type = data.get("job_type")
        job_dict = data.get("job", {})
        payload_cls = _PAYLOAD_TYPES.get(str(job_type))
        if payload_cls is not None:
            payload: Any = payload_cls(**job_dict)
        else:
            logger.warning("Unknown job type encountered", job_type=job_type, job_id=data.get("job_id"))
            payload = job_dict
        return cls(
            job_id=data["job_id"],
            key=data["key"],
            payload=payload,
            enqueued_at=int(data["enqueued_at"]),
            scheduled_at=int(data["scheduled_at"]),
            ready_at=int(data["ready_at"]),
            max_attempts=int(data["max_attempts"]),
            backoff=BackoffPolicy.from_dict(data.get("backoff")),
            attempt=int(data.get("attempt", 0)),
            status=JobStatus(data.get("status", JobStatus.DELAYED.value)),
            last_error=data.get("last_error"),
            last_backoff_ms=data.get("last_backoff_ms"),
            finished_at=data.get("finished_at"),
            seq=int(data.get("seq", 0)),
        )


def new_job(
    key: str,
    payload: Any,
    *,
    now: int,
    delay_ms: int,
    max_attempts: Optional[int],
    backoff: Optional[BackoffPolicy],
    seq: int,
) -> ScheduledJob:
    ready_at = now + max(0, int(delay_ms))
    return ScheduledJob(
        job_id=uuid.uuid4().hex,
        key=key,
        payload=payload,
        enqueued_at=now,
        scheduled_at=ready_at,
        ready_at=ready_at,
        max_attempts=int(max_attempts if max_attempts is not None else BACKOFF_POLICY["max_attempts"]),
        backoff=backoff or BackoffPolicy(),
        status=JobStatus.DELAYED if ready_at > now else JobStatus.WAITING,
        seq=seq,
    )


def report_dead_letter(job: ScheduledJob) -> None:
    """Escalate a job that exhausted its attempts."""
    round_id = getattr(job.payload, "round_id", None)
    logger.error(
        "Job dead-lettered after exhausting attempts",
        job_id=job.job_id,
        key=job.key,
        round_id=round_id,
        attempt=job.attempt,
        max_attempts=job.max_attempts,
        error=job.last_error,
    )
    log_business_event(
        event_type="job_dead_lettered",
        details={"job_id": job.job_id, "key": job.key, "round_id": round_id, "attempt": job.attempt, "error": job.last_error},
    )


class DelayedJobQueue:
    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._clock = clock
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))
        self._max_in_memory = int(QUEUE_SETTINGS.get("max_in_memory", 5000))
        self._retain_completed = int(QUEUE_SETTINGS.get("retain_completed", 1000))
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._ready_heap: list[tuple[int, int, str]] = []      # (ready_at, seq, job_id)
        self._scheduled_heap: list[tuple[int, int, str]] = []  # (ready_at, seq, job_id)
        self._jobs: dict[str, ScheduledJob] = {}
        self._by_key: dict[str, set[str]] = {}
        self._completed: deque[str] = deque()
        self._dead: deque[str] = deque()
        self._active = 0
        self._seq_counter = 0
        self._shutdown = False

    # ----------------------------- internal helpers ----------------------------- #
    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    def _push(self, job: ScheduledJob, now: int) -> None:
        entry = (job.ready_at, self._next_seq(), job.job_id)
        if job.ready_at <= now:
            job.status = JobStatus.WAITING
            heapq.heappush(self._ready_heap, entry)
        else:
            job.status = JobStatus.DELAYED
            heapq.heappush(self._scheduled_heap, entry)

    def _promote_scheduled(self) -> None:
        now = self._clock()
        while self._scheduled_heap and self._scheduled_heap[0][0] <= now:
            entry = heapq.heappop(self._scheduled_heap)
            job = self._jobs.get(entry[2])
            if job is None:  # purged
                continue
            job.status = JobStatus.WAITING
            heapq.heappush(self._ready_heap, entry)

    def _await_next_ready(self, timeout: Optional[float]) -> None:
        """Wait until something may have become ready or the timeout expires."""
        if self._ready_heap:
            return
        if not self._scheduled_heap:
            self._cv.wait(timeout=timeout)
            return
        wait_time = max(0.0, (self._scheduled_heap[0][0] - self._clock()) / 1000.0)
        if timeout is not None:
            wait_time = min(wait_time, timeout)
        if wait_time > 0:
            self._cv.wait(timeout=wait_time)

    def _evict_finished(self) -> None:
        """Forget the oldest completed and dead-lettered records beyond the retention bound."""
        for finished in (self._completed, self._dead):
            while len(finished) > self._retain_completed:
                job_id = finished.popleft()
                job = self._jobs.pop(job_id, None)
                if job is None:
                    continue
                ids = self._by_key.get(job.key)
                if ids is not None:
                    ids.discard(job_id)
                    if not ids:
                        del self._by_key[job.key]

    def _require(self, job_id: str) -> ScheduledJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job '{job_id}'")
        return job

    # ----------------------------- public API ----------------------------- #
    def owns(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def enqueue(
        self,
        key: str,
        payload: Any,
        *,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> ScheduledJob:
        """Schedule ``payload`` to run no earlier than now + delay_ms."""
        with self._lock:
            if self._shutdown:
                raise QueueShutdown("Queue shutdown")
            if self.depth() + self._active >= self._max_in_memory:
                raise OverflowError("Queue capacity exceeded")
            now = self._clock()
            job = new_job(
                key, payload, now=now, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff, seq=self._next_seq()
            )
            self._jobs[job.job_id] = job
            self._by_key.setdefault(key, set()).add(job.job_id)
            self._push(job, now)
            if self.depth() >= self._warn_depth:
                logger.warning("Queue depth warning", depth=self.depth())
            self._cv.notify()
            return replace(job)

    def enqueue_unique(
        self,
        key: str,
        payload: Any,
        *,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> tuple[ScheduledJob, bool]:
        """Enqueue unless ``key`` already has a pending job. Returns (job, created)."""
        with self._lock:
            pending = self.list_pending(key)
            if pending:
                return pending[0], False
            return self.enqueue(key, payload, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff), True

    def list_pending(self, key: str) -> list[ScheduledJob]:
        """Jobs for ``key`` that are still waiting or delayed."""
        with self._lock:
            jobs = [self._jobs[j] for j in self._by_key.get(key, ()) if j in self._jobs]
            return sorted((replace(j) for j in jobs if j.is_pending), key=lambda j: (j.ready_at, j.seq))

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[ScheduledJob]:
        """Claim the next eligible job. Returns None if non-blocking and empty or timeout occurs."""
        end_time = None if timeout is None else time.time() + timeout
        with self._lock:
            while True:
                if self._shutdown and not self._ready_heap:
                    return None
                self._promote_scheduled()
                while self._ready_heap:
                    _, _, job_id = heapq.heappop(self._ready_heap)
                    job = self._jobs.get(job_id)
                    if job is None or job.status != JobStatus.WAITING:
                        continue
                    job.status = JobStatus.ACTIVE
                    job.attempt += 1
                    self._active += 1
                    return replace(job)
                if not block:
                    return None
                remaining = None if end_time is None else max(0.0, end_time - time.time())
                if end_time is not None and remaining == 0:
                    return None
                self._await_next_ready(remaining)

    def complete(self, job_id: str) -> ScheduledJob:
        with self._lock:
            job = self._require(job_id)
            if job.status == JobStatus.ACTIVE:
                self._active -= 1
            job.status = JobStatus.COMPLETED
            job.finished_at = self._clock()
            self._completed.append(job_id)
            snapshot = replace(job)
            self._evict_finished()
            return snapshot

    def fail(self, job_id: str, error: str) -> ScheduledJob:
        """Record a failed attempt: retry with backoff or dead-letter."""
        with self._lock:
            job = self._require(job_id)
            if job.status == JobStatus.ACTIVE:
                self._active -= 1
            job.last_error = error
            now = self._clock()
            if job.attempt < job.max_attempts:
                job.last_backoff_ms = job.backoff.delay_ms(job.attempt)
                job.ready_at = now + job.last_backoff_ms
                self._push(job, now)
                self._cv.notify()
                logger.warning(
                    "Job attempt failed, retry scheduled",
                    job_id=job.job_id,
                    key=job.key,
                    attempt=job.attempt,
                    max_attempts=job.max_attempts,
                    backoff_ms=job.last_backoff_ms,
                    error=error,
                )
                return replace(job)
            job.status = JobStatus.FAILED
            job.finished_at = now
            self._dead.append(job_id)
            self._evict_finished()
            snapshot = replace(job)
        report_dead_letter(snapshot)
        return snapshot

    def get(self, job_id: str) -> Optional[ScheduledJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def dead_letters(self) -> list[ScheduledJob]:
        with self._lock:
            return [replace(self._jobs[j]) for j in self._dead if j in self._jobs]

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._cv.notify_all()

    # ----------------------------- test utilities ----------------------------- #
    def purge(self) -> None:
        """Remove all jobs, including finished and dead-lettered records.

        Intended for test isolation only; any worker currently processing a job
        continues unaffected (its complete/fail call will raise KeyError).
        """
        with self._lock:
            self._ready_heap.clear()
            self._scheduled_heap.clear()
            self._jobs.clear()
            self._by_key.clear()
            self._completed.clear()
            self._dead.clear()
            self._active = 0
            self._cv.notify_all()

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        return len(self._ready_heap) + len(self._scheduled_heap)

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "depth": self.depth(),
                "ready": len(self._ready_heap),
                "scheduled": len(self._scheduled_heap),
                "active": self._active,
                "dead_letters": len(self._dead),
                "shutdown": self._shutdown,
            }


__all__ = ["DelayedJobQueue", "ScheduledJob", "new_job", "report_dead_letter"]
