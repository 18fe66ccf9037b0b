"""Read-only ledger client.

Every call goes to the chain; nothing is cached. RPC trouble of any kind is
surfaced as ``TransientReadError`` so callers never mistake a failed read for
an authoritative zero.
"""
from __future__ import annotations

from typing import Any

import requests
from web3.contract import Contract
from web3.exceptions import Web3Exception

from round_settlement.errors import RoundNotFound, TransientReadError
from round_settlement.ledger.types import Round
from round_settlement.utils import get_logger

logger = get_logger(__name__)

_RPC_ERRORS = (requests.exceptions.RequestException, Web3Exception, ValueError, TimeoutError, ConnectionError)


class LedgerReader:
    def __init__(self, contract: Contract):
        self._contract = contract

    def _call(self, fn_name: str, *args: Any, round_id: int | None = None) -> Any:
        try:
            return getattr(self._contract.functions, fn_name)(*args).call()
        except _RPC_ERRORS as e:
            logger.warning("Ledger read failed", call=fn_name, round_id=round_id, error=str(e))
            raise TransientReadError(f"{fn_name} failed: {e}", round_id=round_id) from e

    def get_current_round_id(self) -> int:
        value = self._call("currentRaffleId")
        if not isinstance(value, int):
            raise TransientReadError(f"currentRaffleId returned {type(value).__name__}")
        return value

    def get_round(self, round_id: int) -> Round:
        raw = self._call("raffles", round_id, round_id=round_id)
        try:
            round_ = Round.from_contract(round_id, raw)
        except (TypeError, ValueError) as e:
            raise TransientReadError(f"Malformed round struct for {round_id}: {e}", round_id=round_id) from e
        if not round_.exists:
            raise RoundNotFound(round_id)
        return round_

    def get_entry_count(self, round_id: int) -> int:
        value = self._call("raffleTotalEntries", round_id, round_id=round_id)
        if not isinstance(value, int):
            raise TransientReadError(f"raffleTotalEntries returned {type(value).__name__}", round_id=round_id)
        return value

    def get_winners(self, round_id: int) -> list[str]:
        return [str(a) for a in self._call("getRaffleWinners", round_id, round_id=round_id)]

    def get_runner_ups(self, round_id: int) -> list[str]:
        return [str(a) for a in self._call("getRaffleRunnerUps", round_id, round_id=round_id)]


__all__ = ["LedgerReader"]
