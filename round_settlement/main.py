"""
FastAPI application entry point.

The lifespan builds one ledger client, queue, worker pool and reconciliation
engine per process and hangs them on ``app.state``; endpoints reach them
through ``round_settlement.api.deps``.
"""
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from round_settlement import database
from round_settlement.api import health
from round_settlement.api.v1 import api_router
from round_settlement.config import QUEUE_SETTINGS, SERVICE_VERSION, STARTUP_SETTINGS
from round_settlement.jobs.worker_settlement import SettlementWorkerPool, consume, create_queue
from round_settlement.ledger import LedgerReader, LedgerWriter
from round_settlement.ledger.client import connect_ledger
from round_settlement.services.audit import AuditLog
from round_settlement.services.notification_ingress import NotificationIngress
from round_settlement.services.reconciliation_engine import ReconciliationEngine
from round_settlement.services.settlement_executor import SettlementExecutor, make_job_handler
from round_settlement.services.startup import StartupReconciler
from round_settlement.utils import get_logger, setup_logging

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/settlement.log"),
    console_format=os.getenv("LOG_FORMAT", "text"),
)

logger = get_logger(__name__)


def build_services(app: FastAPI) -> SettlementWorkerPool:
    """Wire collaborators onto ``app.state`` and start consuming jobs."""
    connection = connect_ledger()
    reader = LedgerReader(connection.contract)
    writer = LedgerWriter(connection.web3, connection.contract, connection.account)

    audit = AuditLog()
    queue = create_queue()
    executor = SettlementExecutor(reader, writer, audit=audit)
    engine = ReconciliationEngine(reader, queue, executor)

    app.state.ledger_reader = reader
    app.state.settlement_queue = queue
    app.state.reconciliation_engine = engine
    app.state.notification_ingress = NotificationIngress(engine, audit=audit)
    return consume(queue, make_job_handler(executor))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Settlement service starting", version=SERVICE_VERSION)
    pool: Optional[SettlementWorkerPool] = None
    try:
        database.Base.metadata.create_all(bind=database.engine)
        pool = build_services(app)
        app.state.worker_pool = pool
        if STARTUP_SETTINGS.get("enabled", True):
            # Serving starts now; a failed sweep terminates the process from its thread
            app.state.startup_reconciler = StartupReconciler(app.state.reconciliation_engine)
            app.state.startup_reconciler.start()
        else:
            logger.warning("Startup reconciliation disabled; rounds left open by a previous run stay open")
        yield
    except Exception as e:
        logger.error("Settlement service failed to start", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Settlement service stopping")
        if pool is not None:
            pool.drain(timeout=float(QUEUE_SETTINGS.get("drain_timeout_seconds", 30.0)))
        queue = getattr(app.state, "settlement_queue", None)
        if queue is not None:
            queue.shutdown()
        logger.info("Settlement service stopped")


def _error_response(request: Request, status_code: int, message: Any, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": message,
            **extra,
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances that JSONResponse cannot encode
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        logger.warning("Request validation failed", path=request.url.path, errors=jsonable_errors(exc))
        return _error_response(request, 422, "Request validation failed", details=jsonable_errors(exc))

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        logger.warning("HTTP error response", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
        return _error_response(request, exc.status_code, exc.detail)

    @app.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=True,
        )
        return _error_response(request, 500, "Internal server error")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Round Settlement Service",
        description="""
    Keeps rounds on the ledger settled as soon as their end time passes.

    * **Startup reconciliation** re-checks the current and previous round on boot
    * **Indexer webhook** re-evaluates a round whenever it changes
    * **Delayed settlement** with retry and backoff, optionally Redis-backed
    * **Operator API** for queue state, dead letters and the audit trail

    The webhook requires the shared secret header `goldsky-webhook-secret`.
    """,
        version=SERVICE_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/api/v1/openapi.json",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Tag the request with an id and log its duration."""
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(elapsed_ms)
        logger.info(
            "Request handled",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=elapsed_ms,
            client=request.client.host if request.client else None,
            request_id=request_id,
        )
        return response

    register_exception_handlers(app)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": "Round Settlement Service",
            "version": SERVICE_VERSION,
            "docs": "/docs",
            "health": "/health",
            "api": "/api/v1",
        }

    app.include_router(health.router)
    app.include_router(api_router, prefix="/api/v1")
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("round_settlement.main:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
