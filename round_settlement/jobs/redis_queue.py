"""Redis-backed delayed job queue.

Features:
- Optional delay (scheduled execution time) per job.
- Persistence across application restarts, including retry state and dead letters.
- Per-key index for duplicate checks before enqueue.
- Thread-safe operations.
- Fallback to the in-memory queue if Redis is unavailable.

Data structures in Redis (``{p}`` = configured key prefix):
 1. Hash   {p}:jobs          - job_id -> serialized job record
 2. Sorted {p}:scheduled     - job_id scored by ready_at (epoch ms)
 3. List   {p}:ready         - job_ids eligible to run (FIFO)
 4. Set    {p}:key:<key>     - job_ids for a dedup key
 5. Set    {p}:active        - job_ids claimed by a worker
 6. List   {p}:dead          - dead-lettered job_ids
 7. String {p}:pending:<key> - id of the one pending job for a dedup key (SET NX)

On enqueue / retry:
  - If ready_at <= now -> push to ready list else scheduled sorted set.
On dequeue:
  - Promote any scheduled ids whose ready_at <= now (ZREM decides the winner
    when several workers promote concurrently).
  - Pop from ready list, with a short blocking pop when empty.
On startup:
  - Ids left in the active set by a crashed process go back to the ready list,
    or to the dead-letter list when the interrupted attempt was their last.

Redis health check is performed before operations with fallback to in-memory queue.
"""
from __future__ import annotations

import json
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Optional

import redis

from round_settlement.config import QUEUE_SETTINGS
from round_settlement.errors import QueueShutdown
from round_settlement.jobs.queue import DelayedJobQueue, ScheduledJob, new_job, report_dead_letter
from round_settlement.jobs.settlement_job import JobStatus
from round_settlement.utils import get_logger
from round_settlement.utils.backoff import BackoffPolicy
from round_settlement.utils.time import now_ms

logger = get_logger(__name__)

# Longest single blocking pop, so scheduled jobs are promoted promptly
_BLOCK_SLICE_SECONDS = 1


def _decode(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisJobQueue:
    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._clock = clock
        self._redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        prefix = str(QUEUE_SETTINGS.get("redis_key_prefix", "settlement"))
        self._jobs_key = f"{prefix}:jobs"
        self._scheduled_key = f"{prefix}:scheduled"
        self._ready_key = f"{prefix}:ready"
        self._active_key = f"{prefix}:active"
        self._dead_key = f"{prefix}:dead"
        self._index_prefix = f"{prefix}:key:"
        self._pending_prefix = f"{prefix}:pending:"
        self._health_check_timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))

        # In-memory fallback queue
        self._fallback_queue = DelayedJobQueue(clock=clock)

        self._redis_client: Optional[redis.Redis] = None
        self._lock = threading.RLock()
        self._is_redis_active = False
        self._shutdown = False
        self._seq = 0
        self._init_redis_client()
        if self._is_redis_active:
            self.recover_stalled()

    def _init_redis_client(self) -> None:
        """Initialize Redis client and test connection."""
        try:
            self._redis_client = redis.from_url(
                self._redis_url, socket_connect_timeout=self._health_check_timeout
            )
            self._redis_client.ping()
            self._is_redis_active = True
            logger.info("Connected to Redis successfully", url=self._redis_url)
        except (redis.RedisError, ConnectionError) as e:
            self._is_redis_active = False
            self._redis_client = None
            logger.warning("Failed to connect to Redis, using in-memory fallback queue", error=str(e))

    def health_check(self) -> bool:
        """Check if Redis is available and update status accordingly."""
        with self._lock:
            if self._redis_client is None:
                self._init_redis_client()
                return self._is_redis_active

            try:
                self._redis_client.ping()
                if not self._is_redis_active:
                    logger.info("Redis connection restored")
                self._is_redis_active = True
                return True
            except (redis.RedisError, ConnectionError) as e:
                if self._is_redis_active:
                    logger.warning("Redis connection lost, using in-memory fallback queue", error=str(e))
                self._is_redis_active = False
                return False

    def _mark_unavailable(self, operation: str, e: Exception) -> None:
        logger.error(f"Redis error during {operation}", error=str(e))
        self._is_redis_active = False

    def _client(self) -> Optional[redis.Redis]:
        if not self.health_check() or self._redis_client is None:
            return None
        return self._redis_client

    # ----------------------------- record helpers ----------------------------- #
    def _load(self, client: redis.Redis, job_id: str) -> Optional[ScheduledJob]:
        raw = _decode(client.hget(self._jobs_key, job_id))
        if raw is None:
            return None
        return ScheduledJob.from_dict(json.loads(raw))

    def _save(self, client: redis.Redis, job: ScheduledJob) -> None:
        client.hset(self._jobs_key, job.job_id, json.dumps(job.to_dict()))

    def _place(self, client: redis.Redis, job: ScheduledJob, now: int) -> None:
        """Persist the record and put its id where its status says it belongs."""
        if job.ready_at <= now:
            job.status = JobStatus.WAITING
            self._save(client, job)
            client.rpush(self._ready_key, job.job_id)
        else:
            job.status = JobStatus.DELAYED
            self._save(client, job)
            client.zadd(self._scheduled_key, {job.job_id: job.ready_at})

    def _promote_scheduled(self, client: redis.Redis) -> None:
        """Move scheduled job ids that are due to the ready list."""
        now = self._clock()
        due = client.zrangebyscore(self._scheduled_key, 0, now) or []
        promoted = 0
        for raw_id in due:
            job_id = _decode(raw_id)
            if job_id is None or not client.zrem(self._scheduled_key, job_id):
                continue  # another worker promoted it
            job = self._load(client, job_id)
            if job is None:
                continue
            job.status = JobStatus.WAITING
            self._save(client, job)
            client.rpush(self._ready_key, job_id)
            promoted += 1
        if promoted:
            logger.debug("Promoted scheduled jobs to ready queue", count=promoted)

    def _claim(self, client: redis.Redis, job_id: str) -> Optional[ScheduledJob]:
        job = self._load(client, job_id)
        if job is None or job.status != JobStatus.WAITING:
            logger.warning("Skipping stale ready entry", job_id=job_id)
            return None
        job.status = JobStatus.ACTIVE
        job.attempt += 1
        self._save(client, job)
        client.sadd(self._active_key, job_id)
        return job

    def _release_marker(self, client: redis.Redis, job: ScheduledJob) -> None:
        marker = self._pending_prefix + job.key
        if _decode(client.get(marker)) == job.job_id:
            client.delete(marker)

    def _dead_letter(self, client: redis.Redis, job: ScheduledJob, now: int) -> None:
        job.status = JobStatus.FAILED
        job.finished_at = now
        self._save(client, job)
        client.srem(self._index_prefix + job.key, job.job_id)
        client.rpush(self._dead_key, job.job_id)
        self._release_marker(client, job)

    # ----------------------------- public API ----------------------------- #
    def recover_stalled(self) -> int:
        """Return jobs claimed by a process that died mid-execution to the ready list.

        A job interrupted during its last allowed attempt is dead-lettered instead.
        """
        client = self._client()
        if client is None:
            return 0
        recovered = 0
        dead: list[ScheduledJob] = []
        try:
            for raw_id in client.smembers(self._active_key) or []:
                job_id = _decode(raw_id)
                if job_id is None:
                    continue
                client.srem(self._active_key, job_id)
                job = self._load(client, job_id)
                if job is None or job.status != JobStatus.ACTIVE:
                    continue
                # The interrupted run counts as an attempt
                if job.attempt >= job.max_attempts:
                    job.last_error = "Interrupted during final attempt"
                    self._dead_letter(client, job, self._clock())
                    dead.append(job)
                    continue
                self._place(client, job, self._clock())
                recovered += 1
        except redis.RedisError as e:
            self._mark_unavailable("recovery", e)
        for job in dead:
            report_dead_letter(job)
        if recovered:
            logger.warning("Recovered stalled jobs", count=recovered)
        return recovered

    def owns(self, job_id: str) -> bool:
        if self._fallback_queue.owns(job_id):
            return True
        return self.get(job_id) is not None

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

            client = self._client()
            if client is None:
                logger.warning("Redis unavailable, falling back to in-memory queue")
                return self._fallback_queue.enqueue(
                    key, payload, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff
                )

            now = self._clock()
            self._seq += 1
            job = new_job(
                key, payload, now=now, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff, seq=self._seq
            )
            try:
                self._place(client, job, now)
                client.sadd(self._index_prefix + key, job.job_id)
                queue_depth = self.depth()
                if queue_depth >= self._warn_depth:
                    logger.warning("Queue depth warning", depth=queue_depth)
                return replace(job)
            except redis.RedisError as e:
                self._mark_unavailable("enqueue", e)
                return self._fallback_queue.enqueue(
                    key, payload, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff
                )

    def enqueue_unique(
        self,
        key: str,
        payload: Any,
        *,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> tuple[ScheduledJob, bool]:
        """Enqueue unless ``key`` already has a pending job. Returns (job, created).

        The pending marker is claimed with SET NX, so concurrent callers in
        different processes agree on a single job.
        """
        with self._lock:
            if self._shutdown:
                raise QueueShutdown("Queue shutdown")
            pending = self._fallback_queue.list_pending(key)
            if pending:
                return pending[0], False
            client = self._client()
            if client is None:
                return self._fallback_queue.enqueue_unique(
                    key, payload, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff
                )

            marker = self._pending_prefix + key
            now = self._clock()
            self._seq += 1
            job = new_job(
                key, payload, now=now, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff, seq=self._seq
            )
            try:
                for _ in range(3):
                    if client.set(marker, job.job_id, nx=True):
                        self._place(client, job, now)
                        client.sadd(self._index_prefix + key, job.job_id)
                        return replace(job), True
                    holder_id = _decode(client.get(marker))
                    holder = self._load(client, holder_id) if holder_id else None
                    if holder is not None and holder.is_pending:
                        return holder, False
                    # Holder finished without releasing (crash) or is running; reclaim
                    client.delete(marker)
            except redis.RedisError as e:
                self._mark_unavailable("enqueue_unique", e)
                return self._fallback_queue.enqueue_unique(
                    key, payload, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff
                )
        logger.warning("Could not claim pending marker, enqueueing anyway", key=key)
        return self.enqueue(key, payload, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff), True

    def list_pending(self, key: str) -> list[ScheduledJob]:
        """Jobs for ``key`` that are waiting or delayed, across Redis and the fallback."""
        pending = self._fallback_queue.list_pending(key)
        client = self._client()
        if client is None:
            return pending
        try:
            for raw_id in client.smembers(self._index_prefix + key) or []:
                job_id = _decode(raw_id)
                job = self._load(client, job_id) if job_id else None
                if job is not None and job.is_pending:
                    pending.append(job)
        except redis.RedisError as e:
            self._mark_unavailable("list_pending", e)
        return sorted(pending, key=lambda j: (j.ready_at, j.seq))

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[ScheduledJob]:
        """Claim the next eligible job."""
        end_time = None if timeout is None else time.time() + timeout

        # Jobs accepted while Redis was down drain first
        fallback_job = self._fallback_queue.dequeue(block=False)
        if fallback_job is not None:
            return fallback_job

        while True:
            if self._shutdown:
                return None
            if end_time is not None and time.time() >= end_time and block:
                return None

            with self._lock:
                client = self._client()
            if client is None:
                logger.debug("Redis unavailable for dequeue, using in-memory fallback")
                return self._fallback_queue.dequeue(block=block, timeout=timeout)

            try:
                with self._lock:
                    self._promote_scheduled(client)
                    job_id = _decode(client.lpop(self._ready_key))
                    if job_id is not None:
                        job = self._claim(client, job_id)
                        if job is not None:
                            return job
                        continue
                if not block:
                    return None

                remaining = None if end_time is None else max(0.0, end_time - time.time())
                if remaining == 0:
                    return None
                slice_seconds = _BLOCK_SLICE_SECONDS if remaining is None else max(1, min(_BLOCK_SLICE_SECONDS, int(remaining)))
                result = client.blpop([self._ready_key], timeout=slice_seconds)
                if result is None:
                    continue
                if not isinstance(result, (list, tuple)) or len(result) != 2:
                    logger.warning("Unexpected result type from blpop", result_type=type(result).__name__)
                    continue
                with self._lock:
                    job = self._claim(client, _decode(result[1]) or "")
                if job is not None:
                    return job
            except redis.RedisError as e:
                self._mark_unavailable("dequeue", e)
                return self._fallback_queue.dequeue(block=block, timeout=timeout)

    def complete(self, job_id: str) -> ScheduledJob:
        if self._fallback_queue.owns(job_id):
            return self._fallback_queue.complete(job_id)
        with self._lock:
            client = self._client()
            if client is None:
                raise redis.ConnectionError(f"Redis unavailable; cannot complete job {job_id}")
            job = self._load(client, job_id)
            if job is None:
                raise KeyError(f"Unknown job '{job_id}'")
            job.status = JobStatus.COMPLETED
            job.finished_at = self._clock()
            self._save(client, job)
            client.srem(self._active_key, job_id)
            client.srem(self._index_prefix + job.key, job_id)
            self._release_marker(client, job)
            return job

    def fail(self, job_id: str, error: str) -> ScheduledJob:
        """Record a failed attempt: retry with backoff or dead-letter."""
        if self._fallback_queue.owns(job_id):
            return self._fallback_queue.fail(job_id, error)
        with self._lock:
            client = self._client()
            if client is None:
                raise redis.ConnectionError(f"Redis unavailable; cannot record failure for job {job_id}")
            job = self._load(client, job_id)
            if job is None:
                raise KeyError(f"Unknown job '{job_id}'")
            client.srem(self._active_key, job_id)
            job.last_error = error
            now = self._clock()
            if job.attempt < job.max_attempts:
                job.last_backoff_ms = job.backoff.delay_ms(job.attempt)
                job.ready_at = now + job.last_backoff_ms
                self._place(client, job, now)
                logger.warning(
                    "Job attempt failed, retry scheduled",
                    job_id=job.job_id,
                    key=job.key,
                    attempt=job.attempt,
                    max_attempts=job.max_attempts,
                    backoff_ms=job.last_backoff_ms,
                    error=error,
                )
                return job
            self._dead_letter(client, job, now)
        report_dead_letter(job)
        return job

    def get(self, job_id: str) -> Optional[ScheduledJob]:
        job = self._fallback_queue.get(job_id)
        if job is not None:
            return job
        client = self._client()
        if client is None:
            return None
        try:
            return self._load(client, job_id)
        except redis.RedisError as e:
            self._mark_unavailable("get", e)
            return None

    def dead_letters(self) -> list[ScheduledJob]:
        dead = self._fallback_queue.dead_letters()
        client = self._client()
        if client is None:
            return dead
        try:
            for raw_id in client.lrange(self._dead_key, 0, -1) or []:
                job_id = _decode(raw_id)
                job = self._load(client, job_id) if job_id else None
                if job is not None:
                    dead.append(job)
        except redis.RedisError as e:
            self._mark_unavailable("dead_letters", e)
        return dead

    def shutdown(self) -> None:
        """Mark the queue as shutdown."""
        with self._lock:
            self._shutdown = True
            self._fallback_queue.shutdown()

    def purge(self) -> None:
        """Remove all queued jobs and records (for testing)."""
        with self._lock:
            self._fallback_queue.purge()
            client = self._client()
            if client is None:
                return
            try:
                index_keys = [
                    _decode(k)
                    for pattern in (self._index_prefix + "*", self._pending_prefix + "*")
                    for k in client.keys(pattern) or []
                ]
                client.delete(
                    self._jobs_key, self._scheduled_key, self._ready_key, self._active_key, self._dead_key,
                    *[k for k in index_keys if k],
                )
                logger.info("Redis queue purged")
            except redis.RedisError as e:
                self._mark_unavailable("purge", e)

    def _safe_int_conversion(self, value: Any) -> int:
        """Safely convert a value to int, handling various Redis response types."""
        if value is None:
            return 0
        try:
            return int(_decode(value) or 0)
        except (ValueError, TypeError) as e:
            logger.warning(f"Failed to convert {type(value)} to int", error=str(e))
            return 0

    def depth(self) -> int:
        """Number of waiting + delayed jobs."""
        with self._lock:
            client = self._client()
            if client is None:
                return self._fallback_queue.depth()
            try:
                ready_count = self._safe_int_conversion(client.llen(self._ready_key))
                scheduled_count = self._safe_int_conversion(client.zcard(self._scheduled_key))
                return ready_count + scheduled_count + self._fallback_queue.depth()
            except redis.RedisError as e:
                self._mark_unavailable("depth", e)
                return self._fallback_queue.depth()

    def __len__(self) -> int:
        return self.depth()

    def snapshot(self) -> dict:
        """Get a snapshot of the queue state."""
        with self._lock:
            client = self._client()
            if client is None:
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot
            try:
                ready_count = self._safe_int_conversion(client.llen(self._ready_key))
                scheduled_count = self._safe_int_conversion(client.zcard(self._scheduled_key))
                active_count = self._safe_int_conversion(client.scard(self._active_key))
                dead_count = self._safe_int_conversion(client.llen(self._dead_key))
                return {
                    "depth": ready_count + scheduled_count,
                    "ready": ready_count,
                    "scheduled": scheduled_count,
                    "active": active_count,
                    "dead_letters": dead_count,
                    "shutdown": self._shutdown,
                    "redis_active": True,
                    "redis_url": self._redis_url,
                }
            except redis.RedisError as e:
                self._mark_unavailable("snapshot", e)
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot


__all__ = ["RedisJobQueue"]
