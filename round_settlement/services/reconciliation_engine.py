"""Reconciliation engine.

Decides, for one round, whether settlement should happen now, later, or not
at all, and acts on that decision:

=================  =====================================================
SETTLED            ledger reports the round completed; nothing to do
OVERDUE            end time already passed; settle synchronously
SCHEDULED_ALREADY  a waiting or delayed job exists for the round
NEEDS_SCHEDULING   enqueue a delayed job that becomes eligible at end time
=================  =====================================================

Three entry points share that table: a single round (``reconcile_round``),
process startup (``reconcile_startup``) and indexer notifications
(``reconcile_notification``). Errors are logged with round context and
re-raised; startup wraps them in FatalInitError.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from round_settlement.config import BACKOFF_POLICY, STARTUP_SETTINGS
from round_settlement.errors import FatalInitError, RoundNotFound, SettlementServiceError
from round_settlement.jobs.settlement_job import SettlementJob, settlement_key
from round_settlement.jobs.worker_settlement import JobQueue
from round_settlement.ledger.types import RoundSnapshot
from round_settlement.models.db.enums import EvaluationState
from round_settlement.services.settlement_executor import RoundReader, SettlementExecutor, SettlementResult
from round_settlement.utils import get_logger
from round_settlement.utils.backoff import BackoffPolicy
from round_settlement.utils.time import now_ms

logger = get_logger(__name__)


def evaluate(snapshot: RoundSnapshot, now: int, has_pending: bool) -> EvaluationState:
    if snapshot.completed:
        return EvaluationState.SETTLED
    if snapshot.end_time_ms - now <= 0:
        return EvaluationState.OVERDUE
    if has_pending:
        return EvaluationState.SCHEDULED_ALREADY
    return EvaluationState.NEEDS_SCHEDULING


@dataclass(slots=True)
class ReconciliationDecision:
    round_id: int
    state: EvaluationState
    delay_ms: Optional[int] = None
    job_id: Optional[str] = None
    result: Optional[SettlementResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "state": self.state.value,
            "delay_ms": self.delay_ms,
            "job_id": self.job_id,
            "result": self.result.to_dict() if self.result else None,
        }


class ReconciliationEngine:
    def __init__(
        self,
        reader: RoundReader,
        queue: JobQueue,
        executor: SettlementExecutor,
        *,
        clock: Callable[[], int] = now_ms,
        lookback_rounds: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_attempts: Optional[int] = None,
    ):
        self.reader = reader
        self.queue = queue
        self.executor = executor
        self._clock = clock
        self.lookback_rounds = int(lookback_rounds if lookback_rounds is not None else STARTUP_SETTINGS.get("lookback_rounds", 1))
        self.backoff = backoff or BackoffPolicy.from_dict(BACKOFF_POLICY)
        self.max_attempts = int(max_attempts if max_attempts is not None else BACKOFF_POLICY.get("max_attempts", 3))

    def reconcile_round(
        self, snapshot: RoundSnapshot, *, source: str = "manual", correlation_id: Optional[str] = None
    ) -> ReconciliationDecision:
        round_id = snapshot.round_id
        try:
            now = self._clock()
            key = settlement_key(round_id)
            state = evaluate(snapshot, now, has_pending=bool(self.queue.list_pending(key)))
            logger.info(
                "Round evaluated",
                round_id=round_id,
                evaluation_state=state.value,
                completed=snapshot.completed,
                end_time_ms=snapshot.end_time_ms,
                source=source,
            )

            if state is EvaluationState.OVERDUE:
                result = self.executor.settle(round_id)
                return ReconciliationDecision(round_id, state, result=result)

            if state is EvaluationState.NEEDS_SCHEDULING:
                delay = snapshot.end_time_ms - now
                job, created = self.queue.enqueue_unique(
                    key,
                    SettlementJob(round_id=round_id, correlation_id=correlation_id),
                    delay_ms=delay,
                    max_attempts=self.max_attempts,
                    backoff=self.backoff,
                )
                if not created:
                    # A concurrent evaluation scheduled it between our check and enqueue
                    logger.info("Settlement already scheduled", round_id=round_id, job_id=job.job_id, source=source)
                    return ReconciliationDecision(round_id, EvaluationState.SCHEDULED_ALREADY, job_id=job.job_id)
                logger.info("Settlement scheduled", round_id=round_id, job_id=job.job_id, delay_ms=delay, source=source)
                return ReconciliationDecision(round_id, state, delay_ms=delay, job_id=job.job_id)

            return ReconciliationDecision(round_id, state)
        except Exception as e:
            logger.error(
                "Round reconciliation failed",
                round_id=round_id,
                completed=snapshot.completed,
                end_time=snapshot.end_time,
                source=source,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    def reconcile_round_id(self, round_id: int, *, source: str = "manual") -> ReconciliationDecision:
        round_ = self.reader.get_round(round_id)
        return self.reconcile_round(round_.snapshot(), source=source)

    def reconcile_startup(self) -> list[ReconciliationDecision]:
        """Current round plus the preceding ``lookback_rounds`` rounds, oldest last."""
        round_id: Optional[int] = None
        try:
            current_id = self.reader.get_current_round_id()
            logger.info("Startup reconciliation", current_round_id=current_id, lookback_rounds=self.lookback_rounds)
            round_id = current_id
            decisions = [self.reconcile_round_id(current_id, source="startup")]
            for offset in range(1, self.lookback_rounds + 1):
                round_id = current_id - offset
                if round_id < 1:
                    break
                try:
                    decisions.append(self.reconcile_round_id(round_id, source="startup"))
                except RoundNotFound:
                    logger.info("Previous round not found on ledger, skipping", round_id=round_id)
            return decisions
        except SettlementServiceError as e:
            logger.error("Startup reconciliation failed", round_id=round_id, error=str(e), error_type=type(e).__name__)
            raise FatalInitError(f"Startup reconciliation failed for round {round_id}: {e}") from e

    def reconcile_notification(
        self, snapshot: RoundSnapshot, *, correlation_id: Optional[str] = None
    ) -> list[ReconciliationDecision]:
        decisions = [self.reconcile_round(snapshot, source="notification", correlation_id=correlation_id)]
        if not snapshot.completed:
            return decisions

        current_id = self.reader.get_current_round_id()
        if snapshot.round_id >= current_id:
            # Ledger has not advanced yet; the next notification will carry the new round.
            logger.info(
                "Completed round is still current on ledger, nothing further to schedule",
                round_id=snapshot.round_id,
                current_round_id=current_id,
            )
            return decisions

        next_id = snapshot.round_id + 1
        try:
            next_round = self.reader.get_round(next_id)
        except SettlementServiceError as e:
            logger.error("Failed to load next round", round_id=next_id, previous_round_id=snapshot.round_id, error=str(e))
            raise
        decisions.append(self.reconcile_round(next_round.snapshot(), source="notification", correlation_id=correlation_id))
        return decisions


__all__ = ["evaluate", "ReconciliationDecision", "ReconciliationEngine"]
