"""
Liveness and dependency health endpoints.
"""
import asyncio
import time
from typing import Any, Dict
from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from round_settlement import database
from round_settlement.config import QUEUE_SETTINGS, SERVICE_NAME, SERVICE_VERSION
from round_settlement.errors import SettlementServiceError

router = APIRouter(tags=["health"])

_QUEUE_FIELDS = ("depth", "ready", "scheduled", "active", "dead_letters", "redis_active")


def _queue_backend(snap: Dict[str, Any]) -> str:
    return "redis" if snap.get("redis_active") else "memory"


def _check_database() -> str:
    session = database.SessionLocal()
    try:
        session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return f"unhealthy: {e}"
    finally:
        session.close()
    return "healthy"


@router.get("/health", summary="Basic health check")
async def health(request: Request) -> Dict[str, Any]:
    """Process liveness for load balancers; never touches the ledger."""
    queue = getattr(request.app.state, "settlement_queue", None)
    snap = await asyncio.to_thread(queue.snapshot) if queue is not None else {}
    body: Dict[str, Any] = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "queue_backend": _queue_backend(snap),
    }
    if QUEUE_SETTINGS.get("use_redis"):
        body["redis_status"] = "healthy" if snap.get("redis_active") else "unavailable"
    return body


@router.get("/health/detailed", summary="Dependency health check")
async def detailed_health(request: Request) -> Dict[str, Any]:
    """Audit database, ledger RPC and queue state. Any failing dependency marks the service degraded."""
    checks: Dict[str, Any] = {"database": await asyncio.to_thread(_check_database)}

    reader = getattr(request.app.state, "ledger_reader", None)
    if reader is None:
        checks["ledger"] = "not configured"
    else:
        try:
            current = await asyncio.to_thread(reader.get_current_round_id)
            checks["ledger"] = {"status": "healthy", "current_round_id": current}
        except SettlementServiceError as e:
            checks["ledger"] = f"unhealthy: {e}"

    queue = getattr(request.app.state, "settlement_queue", None)
    if queue is not None:
        snap = await asyncio.to_thread(queue.snapshot)
        checks["queue"] = {k: snap[k] for k in _QUEUE_FIELDS if k in snap}
        if QUEUE_SETTINGS.get("use_redis") and not snap.get("redis_active"):
            checks["redis"] = "unavailable"

    healthy = checks["database"] == "healthy" and isinstance(checks.get("ledger"), dict) and "redis" not in checks
    return {
        "status": "healthy" if healthy else "degraded",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": checks,
    }
