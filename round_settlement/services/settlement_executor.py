"""Settlement executor.

Single public method ``settle(round_id)`` that:
1. Re-fetches the round from the ledger (the snapshot used when the job was
   scheduled may be stale by now).
2. Returns ALREADY_COMPLETED if the ledger says the round is settled.
3. Returns NO_ENTRIES (warning) if the round accrued no entries; the ledger
   would reject the call anyway.
4. Otherwise submits the settlement transaction, waits for confirmation,
   re-reads the round to confirm it was the one settled and returns SETTLED
   with the winner list.

Submission and read failures propagate so the job queue can retry; the two
expected revert reasons are folded into ALREADY_COMPLETED / NO_ENTRIES since
they mean another actor won the race.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

from round_settlement.errors import ExpectedRevert, SettlementServiceError, SubmissionFailure
from round_settlement.jobs.queue import ScheduledJob
from round_settlement.ledger.types import Round
from round_settlement.models.db.enums import SettlementOutcome
from round_settlement.services.audit import AuditLog
from round_settlement.utils import get_logger, log_business_event

logger = get_logger(__name__)

_REVERT_OUTCOMES: dict[str, SettlementOutcome] = {
    "no_entries": SettlementOutcome.NO_ENTRIES,
    "already_completed": SettlementOutcome.ALREADY_COMPLETED,
}


class RoundReader(Protocol):
    def get_round(self, round_id: int) -> Round: ...
    def get_entry_count(self, round_id: int) -> int: ...
    def get_current_round_id(self) -> int: ...
    def get_winners(self, round_id: int) -> list[str]: ...


class SettlementSubmitter(Protocol):
    def submit_settlement(self, round_id: int) -> str: ...


@dataclass(slots=True)
class SettlementResult:
    round_id: int
    outcome: SettlementOutcome
    winners: list[str] = field(default_factory=list)
    tx_hash: Optional[str] = None
    total_entries: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "outcome": self.outcome.value,
            "winners": list(self.winners),
            "tx_hash": self.tx_hash,
            "total_entries": self.total_entries,
        }


class SettlementExecutor:
    def __init__(self, reader: RoundReader, writer: SettlementSubmitter, *, audit: Optional[AuditLog] = None):
        self._reader = reader
        self._writer = writer
        self._audit = audit

    def settle(self, round_id: int, *, job_id: Optional[str] = None, attempt: Optional[int] = None) -> SettlementResult:
        try:
            result = self._settle(round_id)
        except SettlementServiceError as e:
            self._record(
                round_id,
                SettlementOutcome.FAILED,
                job_id=job_id,
                attempt=attempt,
                tx_hash=getattr(e, "tx_hash", None),
                error=f"{type(e).__name__}: {e}",
            )
            raise
        self._record(
            round_id, result.outcome, job_id=job_id, attempt=attempt, tx_hash=result.tx_hash, winners=result.winners or None
        )
        return result

    def _settle(self, round_id: int) -> SettlementResult:
        round_ = self._reader.get_round(round_id)
        if round_.completed:
            logger.info("Round already completed, nothing to settle", round_id=round_id)
            return SettlementResult(round_id=round_id, outcome=SettlementOutcome.ALREADY_COMPLETED)

        total_entries = self._reader.get_entry_count(round_id)
        if total_entries == 0:
            logger.warning("Round has no entries, skipping settlement", round_id=round_id)
            return SettlementResult(round_id=round_id, outcome=SettlementOutcome.NO_ENTRIES, total_entries=0)

        current_round_id = self._reader.get_current_round_id()
        if current_round_id != round_id:
            # The settlement call carries no round id; the ledger settles its current round
            logger.warning(
                "Settling a round that is not the ledger's current round",
                round_id=round_id,
                current_round_id=current_round_id,
            )

        try:
            tx_hash = self._writer.submit_settlement(round_id)
        except ExpectedRevert as e:
            outcome = _REVERT_OUTCOMES[e.reason_key]
            logger.info(
                "Settlement reverted with expected reason, treating as no-op",
                round_id=round_id,
                outcome=outcome.value,
                reason=str(e),
            )
            return SettlementResult(round_id=round_id, outcome=outcome, total_entries=total_entries)

        if not self._reader.get_round(round_id).completed:
            current_round_id = self._reader.get_current_round_id()
            logger.error(
                "Settlement confirmed but round is still open on the ledger",
                round_id=round_id,
                current_round_id=current_round_id,
                tx_hash=tx_hash,
            )
            raise SubmissionFailure(
                f"Transaction {tx_hash} did not settle round {round_id} (ledger current round {current_round_id})",
                round_id=round_id,
                tx_hash=tx_hash,
            )

        winners = self._reader.get_winners(round_id)
        logger.info(
            "Round settled",
            round_id=round_id,
            tx_hash=tx_hash,
            total_entries=total_entries,
            winners=", ".join(winners),
        )
        log_business_event(
            event_type="round_settled",
            details={"round_id": round_id, "tx_hash": tx_hash, "winner_count": len(winners)},
        )
        return SettlementResult(
            round_id=round_id,
            outcome=SettlementOutcome.SETTLED,
            winners=winners,
            tx_hash=tx_hash,
            total_entries=total_entries,
        )

    def _record(self, round_id: int, outcome: SettlementOutcome, **kwargs: Any) -> None:
        if self._audit is not None:
            self._audit.record_settlement(round_id, outcome, **kwargs)


def make_job_handler(executor: SettlementExecutor) -> Callable[[ScheduledJob], SettlementResult]:
    """Queue consumer that settles the round a job refers to."""
    def _handle(job: ScheduledJob) -> SettlementResult:
        return executor.settle(job.payload.round_id, job_id=job.job_id, attempt=job.attempt)
    return _handle


__all__ = ["SettlementExecutor", "SettlementResult", "RoundReader", "SettlementSubmitter", "make_job_handler"]
