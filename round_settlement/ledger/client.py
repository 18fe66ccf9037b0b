"""Construction of the web3 connection, contract binding and signing account."""
from __future__ import annotations

from dataclasses import dataclass

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract

from round_settlement.config import LEDGER_SETTINGS
from round_settlement.errors import FatalInitError
from round_settlement.ledger.abi import ROUND_CONTRACT_ABI
from round_settlement.utils import get_logger

logger = get_logger(__name__)


@dataclass
class LedgerConnection:
    web3: Web3
    contract: Contract
    account: LocalAccount


def build_web3(rpc_url: str, *, timeout: float) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


def connect_ledger() -> LedgerConnection:
    """Build the process-wide ledger connection from LEDGER_SETTINGS.

    Raises FatalInitError when configuration is missing or malformed; the
    service cannot reason about rounds without it.
    """
    rpc_url = LEDGER_SETTINGS.get("rpc_url")
    address = LEDGER_SETTINGS.get("contract_address")
    private_key = LEDGER_SETTINGS.get("admin_private_key")
    missing = [
        name
        for name, value in (
            ("LEDGER_RPC_URL", rpc_url),
            ("ROUND_CONTRACT_ADDRESS", address),
            ("LEDGER_ADMIN_PRIVATE_KEY", private_key),
        )
        if not value
    ]
    if missing:
        raise FatalInitError(f"Ledger configuration missing: {', '.join(missing)}")

    timeout = float(LEDGER_SETTINGS.get("read_timeout_seconds") or 10)
    w3 = build_web3(str(rpc_url), timeout=timeout)
    try:
        checksum = Web3.to_checksum_address(str(address))
        account: LocalAccount = Account.from_key(str(private_key))
    except ValueError as e:
        raise FatalInitError(f"Invalid ledger configuration: {e}") from e

    contract = w3.eth.contract(address=checksum, abi=ROUND_CONTRACT_ABI)
    logger.info(
        "Ledger client configured",
        rpc_url=rpc_url,
        contract_address=checksum,
        signer=account.address,
    )
    return LedgerConnection(web3=w3, contract=contract, account=account)


__all__ = ["LedgerConnection", "build_web3", "connect_ledger"]
