"""Background worker pool for processing settlement jobs."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional, Protocol, Union

from round_settlement.config import QUEUE_SETTINGS
from round_settlement.jobs.queue import DelayedJobQueue, ScheduledJob
from round_settlement.jobs.redis_queue import RedisJobQueue
from round_settlement.jobs.settlement_job import SettlementJob
from round_settlement.utils import get_logger
from round_settlement.utils.backoff import BackoffPolicy

logger = get_logger(__name__)

JobHandler = Callable[[ScheduledJob], Any]


class JobQueue(Protocol):
    def enqueue(
        self,
        key: str,
        payload: Any,
        *,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> ScheduledJob: ...
    def enqueue_unique(
        self,
        key: str,
        payload: Any,
        *,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> tuple[ScheduledJob, bool]: ...
    def list_pending(self, key: str) -> list[ScheduledJob]: ...
    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[ScheduledJob]: ...
    def complete(self, job_id: str) -> ScheduledJob: ...
    def fail(self, job_id: str, error: str) -> ScheduledJob: ...
    def get(self, job_id: str) -> Optional[ScheduledJob]: ...
    def dead_letters(self) -> list[ScheduledJob]: ...
    def depth(self) -> int: ...
    def shutdown(self) -> None: ...
    def snapshot(self) -> dict: ...


class SettlementWorkerPool:
    """Fixed pool of daemon threads consuming one queue with one handler.

    A handler return marks the job completed; a handler exception hands the job
    back to the queue, which retries it with backoff or dead-letters it.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        worker_count: Optional[int] = None,
        poll_timeout: Optional[float] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.worker_count = int(worker_count if worker_count is not None else QUEUE_SETTINGS.get("worker_count", 2))
        self.poll_timeout = float(poll_timeout if poll_timeout is not None else QUEUE_SETTINGS.get("poll_timeout_seconds", 5.0))
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:  # pragma: no cover
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"settlement-worker-{i}", daemon=True)
            for i in range(max(1, self.worker_count))
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Settlement worker pool started", workers=len(self._threads))

    def stop(self) -> None:
        self._stop_event.set()
        logger.info("Settlement worker pool stop requested")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Stop taking new jobs and wait for in-flight ones. True if every worker exited."""
        self.stop()
        deadline = None if timeout is None else time.time() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.time())
            thread.join(remaining)
        drained = not self.running
        if not drained:
            logger.warning("Settlement workers still busy after drain timeout", timeout=timeout)
        return drained

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.queue.dequeue(timeout=self.poll_timeout)
                if job is None:
                    continue
                self._process(job)
            except Exception as e:  # pragma: no cover - keep the worker alive
                logger.error("Worker loop error", error=str(e), exc_info=True)
                time.sleep(1)

    def _process(self, job: ScheduledJob) -> None:
        if not isinstance(job.payload, SettlementJob):
            logger.warning("Skipping unknown job type", job_id=job.job_id, job_type=type(job.payload).__name__)
            self.queue.complete(job.job_id)
            return

        log = logger.bind(job_id=job.job_id, round_id=job.payload.round_id, attempt=job.attempt)
        log.info("Processing settlement job")
        try:
            result = self.handler(job)
        except Exception as e:
            log.error(
                "Settlement job failed",
                max_attempts=job.max_attempts,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self.queue.fail(job.job_id, f"{type(e).__name__}: {e}")
            return
        self.queue.complete(job.job_id)
        log.info("Settlement job completed", outcome=getattr(getattr(result, "outcome", None), "value", None))


def consume(queue: JobQueue, handler: JobHandler, **kwargs: Any) -> SettlementWorkerPool:
    """Register ``handler`` for every job reaching eligibility and start the pool."""
    pool = SettlementWorkerPool(queue, handler, **kwargs)
    pool.start()
    return pool


def create_queue() -> Union[DelayedJobQueue, RedisJobQueue]:
    """Create and return the appropriate queue based on configuration."""
    use_redis = bool(QUEUE_SETTINGS.get("use_redis", False))

    if use_redis:
        try:
            redis_queue = RedisJobQueue()
            if redis_queue.health_check():
                logger.info("Using Redis-backed queue")
                return redis_queue
            logger.warning("REDIS CONNECTION FAILED: Redis server is not reachable. Using in-memory queue.")
        except Exception as e:
            logger.warning("Error initializing Redis queue, falling back to in-memory queue", error=str(e))

    logger.info("Using in-memory queue")
    return DelayedJobQueue()


__all__ = ["SettlementWorkerPool", "JobQueue", "JobHandler", "consume", "create_queue"]
