"""
Operator endpoints: queue inspection, audit trail and manual reconciliation.
"""
import asyncio
from typing import Any, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.orm import Session
from round_settlement.api.deps import get_db, get_engine, get_queue
from round_settlement.errors import RoundNotFound, SettlementServiceError
from round_settlement.jobs.queue import ScheduledJob
from round_settlement.models.db import NotificationLog, SettlementLog
from round_settlement.models.schemas.base import ResponseBase
from round_settlement.models.schemas.settlement import (
    NotificationLogRead,
    QueueStats,
    ReconcileTrigger,
    ScheduledJobRead,
    SettlementLogRead,
)
from round_settlement.services.reconciliation_engine import ReconciliationEngine
from round_settlement.utils import get_logger, log_business_event

router = APIRouter()
logger = get_logger(__name__)


def _job_read(job: ScheduledJob) -> ScheduledJobRead:
    return ScheduledJobRead(
        job_id=job.job_id,
        key=job.key,
        status=job.status.value,
        round_id=getattr(job.payload, "round_id", None),
        attempt=job.attempt,
        max_attempts=job.max_attempts,
        enqueued_at=job.enqueued_at,
        scheduled_at=job.scheduled_at,
        ready_at=job.ready_at,
        last_error=job.last_error,
        last_backoff_ms=job.last_backoff_ms,
        finished_at=job.finished_at,
    )


@router.get("/queue", response_model=QueueStats, summary="Queue snapshot")
async def queue_stats(queue: Any = Depends(get_queue)) -> QueueStats:
    snap = await asyncio.to_thread(queue.snapshot)
    backend = "redis" if snap.get("redis_active") else "memory"
    return QueueStats(backend=backend, depth=int(snap.get("depth", 0)), details=snap)


@router.get("/jobs/{job_id}", response_model=ScheduledJobRead, summary="Job record")
async def get_job(job_id: str, queue: Any = Depends(get_queue)) -> ScheduledJobRead:
    job = await asyncio.to_thread(queue.get, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return _job_read(job)


@router.get("/dead-letters", response_model=List[ScheduledJobRead], summary="Jobs that exhausted their attempts")
async def dead_letters(queue: Any = Depends(get_queue)) -> List[ScheduledJobRead]:
    return [_job_read(job) for job in await asyncio.to_thread(queue.dead_letters)]


@router.get("/logs", response_model=List[SettlementLogRead], summary="Settlement attempt audit")
async def settlement_logs(
    round_id: Optional[int] = Query(None, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> List[SettlementLogRead]:
    query = db.query(SettlementLog)
    if round_id is not None:
        query = query.filter(SettlementLog.round_id == round_id)
    rows = query.order_by(SettlementLog.id.desc()).limit(limit).all()
    return [SettlementLogRead.model_validate(row) for row in rows]


@router.get("/notifications", response_model=List[NotificationLogRead], summary="Notification ingress audit")
async def notification_logs(
    failed_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> List[NotificationLogRead]:
    query = db.query(NotificationLog)
    if failed_only:
        query = query.filter(NotificationLog.success.is_(False))
    rows = query.order_by(NotificationLog.id.desc()).limit(limit).all()
    return [NotificationLogRead.model_validate(row) for row in rows]


@router.post("/reconcile", response_model=ResponseBase, summary="Trigger reconciliation manually")
async def trigger_reconcile(
    trigger: ReconcileTrigger,
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
) -> ResponseBase:
    """Reconcile one round, or re-run the startup sweep when no round id is given."""
    request_id = getattr(request.state, "request_id", None)
    logger.info("Manual reconciliation triggered", round_id=trigger.round_id, request_id=request_id)
    try:
        if trigger.round_id is None:
            decisions = await asyncio.to_thread(engine.reconcile_startup)
        else:
            decisions = [await asyncio.to_thread(engine.reconcile_round_id, trigger.round_id, source="manual")]
    except RoundNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SettlementServiceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    log_business_event(
        event_type="manual_reconciliation",
        details={"round_id": trigger.round_id, "rounds": [d.round_id for d in decisions]},
        request_id=request_id,
    )
    return ResponseBase(
        message=f"Reconciled {len(decisions)} round(s)",
        data={"decisions": [d.to_dict() for d in decisions]},
    )
