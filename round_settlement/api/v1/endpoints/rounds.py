"""
Read-side round queries straight from the ledger.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Path
from round_settlement.api.deps import get_ledger_reader
from round_settlement.errors import RoundNotFound, TransientReadError
from round_settlement.ledger.reader import LedgerReader
from round_settlement.models.schemas.rounds import CurrentRound, RoundParticipants, RoundRead
from round_settlement.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)


def _ledger_error(e: Exception) -> HTTPException:
    if isinstance(e, RoundNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Ledger unavailable: {e}")


@router.get("/current", response_model=CurrentRound, summary="Current round id and state")
def get_current_round(reader: LedgerReader = Depends(get_ledger_reader)) -> CurrentRound:
    try:
        round_id = reader.get_current_round_id()
        round_ = reader.get_round(round_id)
    except RoundNotFound:
        # Fresh deployment: the counter exists before the first round does
        return CurrentRound(round_id=round_id)
    except TransientReadError as e:
        raise _ledger_error(e)
    return CurrentRound(round_id=round_id, round=RoundRead(**round_.to_dict()))


@router.get("/{round_id}", response_model=RoundRead, summary="Round state")
def get_round(round_id: int = Path(ge=0), reader: LedgerReader = Depends(get_ledger_reader)) -> RoundRead:
    try:
        round_ = reader.get_round(round_id)
    except (RoundNotFound, TransientReadError) as e:
        raise _ledger_error(e)
    return RoundRead(**round_.to_dict())


@router.get("/{round_id}/winners", response_model=RoundParticipants, summary="Winning addresses")
def get_round_winners(round_id: int = Path(ge=0), reader: LedgerReader = Depends(get_ledger_reader)) -> RoundParticipants:
    try:
        winners = reader.get_winners(round_id)
    except TransientReadError as e:
        raise _ledger_error(e)
    return RoundParticipants(round_id=round_id, addresses=winners, count=len(winners))


@router.get("/{round_id}/runner-ups", response_model=RoundParticipants, summary="Runner-up addresses")
def get_round_runner_ups(round_id: int = Path(ge=0), reader: LedgerReader = Depends(get_ledger_reader)) -> RoundParticipants:
    try:
        runner_ups = reader.get_runner_ups(round_id)
    except TransientReadError as e:
        raise _ledger_error(e)
    return RoundParticipants(round_id=round_id, addresses=runner_ups, count=len(runner_ups))
