"""Settlement transaction submission.

Signs the parameterless ``selectWinners()`` call with the admin account, sends it
and blocks (bounded) until a receipt arrives. The two revert reasons that mean
"nothing to settle" are raised as ``ExpectedRevert``; everything else that stops
the transaction from confirming is a ``SubmissionFailure``.
"""
from __future__ import annotations

import time

import requests
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from round_settlement.config import EXPECTED_REVERT_REASONS, LEDGER_SETTINGS
from round_settlement.errors import ExpectedRevert, SubmissionFailure
from round_settlement.utils import get_logger, log_performance

logger = get_logger(__name__)


def classify_revert(message: str) -> str | None:
    """Return the EXPECTED_REVERT_REASONS key matching a revert message, if any."""
    lowered = message.lower()
    for key, reason in EXPECTED_REVERT_REASONS.items():
        if reason.lower() in lowered:
            return key
    return None


class LedgerWriter:
    def __init__(
        self,
        web3: Web3,
        contract: Contract,
        account: LocalAccount,
        *,
        confirmation_timeout: float | None = None,
        poll_latency: float | None = None,
    ):
        self._web3 = web3
        self._contract = contract
        self._account = account
        self._confirmation_timeout = float(
            confirmation_timeout if confirmation_timeout is not None else LEDGER_SETTINGS["confirmation_timeout_seconds"]  # type: ignore[arg-type]
        )
        self._poll_latency = float(
            poll_latency if poll_latency is not None else LEDGER_SETTINGS["confirmation_poll_seconds"]  # type: ignore[arg-type]
        )

    def _revert_or_failure(self, e: Exception, round_id: int) -> Exception:
        key = classify_revert(str(e))
        if key is not None:
            return ExpectedRevert(key, str(e), round_id=round_id)
        return SubmissionFailure(f"Settlement rejected: {e}", round_id=round_id)

    def submit_settlement(self, round_id: int) -> str:
        """Submit and confirm the settlement transaction. Returns the tx hash."""
        sender = self._account.address
        start = time.time()
        try:
            nonce = self._web3.eth.get_transaction_count(sender, "pending")
            # build_transaction estimates gas, which is where reverts surface
            tx = self._contract.functions.selectWinners().build_transaction({"from": sender, "nonce": nonce})
            signed = self._account.sign_transaction(tx)
            tx_hash = self._web3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise self._revert_or_failure(e, round_id) from e
        except (requests.exceptions.RequestException, Web3Exception, ValueError, TimeoutError, ConnectionError) as e:
            raise SubmissionFailure(f"Settlement submission failed: {e}", round_id=round_id) from e

        tx_hex = Web3.to_hex(tx_hash)
        logger.info("Settlement transaction sent", round_id=round_id, tx_hash=tx_hex, nonce=nonce)

        try:
            receipt = self._web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._confirmation_timeout, poll_latency=self._poll_latency
            )
        except TimeExhausted as e:
            raise SubmissionFailure(
                f"Settlement not confirmed within {self._confirmation_timeout}s", round_id=round_id, tx_hash=tx_hex
            ) from e
        except (requests.exceptions.RequestException, Web3Exception, TimeoutError, ConnectionError) as e:
            raise SubmissionFailure(f"Receipt lookup failed: {e}", round_id=round_id, tx_hash=tx_hex) from e

        status = receipt.get("status")
        if status is not None and int(status) != 1:
            raise SubmissionFailure("Settlement transaction reverted", round_id=round_id, tx_hash=tx_hex)

        log_performance(
            operation="settlement_submission",
            duration_ms=round((time.time() - start) * 1000, 2),
            additional_data={"round_id": round_id, "tx_hash": tx_hex, "block_number": receipt.get("blockNumber")},
        )
        return tx_hex


__all__ = ["LedgerWriter", "classify_revert"]
