"""Ledger reader and writer against mocked web3 objects (no chain required)."""
from unittest.mock import MagicMock

import pytest
import requests
from web3.exceptions import ContractLogicError, TimeExhausted

from round_settlement.config import LEDGER_SETTINGS
from round_settlement.errors import ExpectedRevert, FatalInitError, RoundNotFound, SubmissionFailure, TransientReadError
from round_settlement.ledger import LedgerReader, LedgerWriter
from round_settlement.ledger.client import connect_ledger
from round_settlement.ledger.writer import classify_revert

TX_HASH = b"\x12" * 32


@pytest.fixture
def contract():
    return MagicMock()


@pytest.fixture
def reader(contract):
    return LedgerReader(contract)


@pytest.fixture
def web3():
    w3 = MagicMock()
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.send_raw_transaction.return_value = TX_HASH
    w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 123}
    return w3


@pytest.fixture
def writer(web3, contract):
    account = MagicMock()
    account.address = "0x" + "ab" * 20
    return LedgerWriter(web3, contract, account, confirmation_timeout=1, poll_latency=0.01)


def test_reads_round_struct(reader, contract):
    contract.functions.raffles.return_value.call.return_value = (100, 200, 10**24, 3, False, 99)
    round_ = reader.get_round(4)
    assert round_.id == 4
    assert round_.end_time_ms == 200_000
    assert round_.prize_pool == 10**24
    assert round_.completed is False
    contract.functions.raffles.assert_called_with(4)


def test_zero_struct_is_round_not_found(reader, contract):
    contract.functions.raffles.return_value.call.return_value = (0, 0, 0, 0, False, 0)
    with pytest.raises(RoundNotFound):
        reader.get_round(12)


def test_malformed_struct_is_transient(reader, contract):
    contract.functions.raffles.return_value.call.return_value = (1, 2)
    with pytest.raises(TransientReadError):
        reader.get_round(1)


@pytest.mark.parametrize(
    "error",
    [requests.exceptions.ConnectionError("refused"), TimeoutError("timed out"), ValueError("bad response")],
)
def test_rpc_errors_become_transient(reader, contract, error):
    contract.functions.currentRaffleId.return_value.call.side_effect = error
    with pytest.raises(TransientReadError):
        reader.get_current_round_id()


def test_non_integer_counter_is_transient(reader, contract):
    contract.functions.currentRaffleId.return_value.call.return_value = None
    with pytest.raises(TransientReadError):
        reader.get_current_round_id()


def test_entry_count_and_winner_lists(reader, contract):
    contract.functions.raffleTotalEntries.return_value.call.return_value = 12
    contract.functions.getRaffleWinners.return_value.call.return_value = ["0xA", "0xB"]
    contract.functions.getRaffleRunnerUps.return_value.call.return_value = []
    assert reader.get_entry_count(3) == 12
    assert reader.get_winners(3) == ["0xA", "0xB"]
    assert reader.get_runner_ups(3) == []


def test_classify_revert():
    assert classify_revert("execution reverted: No entries in raffle") == "no_entries"
    assert classify_revert("execution reverted: Raffle already completed") == "already_completed"
    assert classify_revert("execution reverted: Ownable: caller is not the owner") is None


def test_submit_returns_hex_hash(writer, web3, contract):
    assert writer.submit_settlement(5) == "0x" + "12" * 32
    contract.functions.selectWinners.return_value.build_transaction.assert_called_with(
        {"from": "0x" + "ab" * 20, "nonce": 7}
    )
    web3.eth.get_transaction_count.assert_called_with("0x" + "ab" * 20, "pending")


def test_expected_revert_raised(writer, contract):
    contract.functions.selectWinners.return_value.build_transaction.side_effect = ContractLogicError(
        "execution reverted: No entries in raffle"
    )
    with pytest.raises(ExpectedRevert) as exc:
        writer.submit_settlement(5)
    assert exc.value.reason_key == "no_entries"


def test_unexpected_revert_is_failure(writer, contract):
    contract.functions.selectWinners.return_value.build_transaction.side_effect = ContractLogicError(
        "execution reverted: Ownable: caller is not the owner"
    )
    with pytest.raises(SubmissionFailure):
        writer.submit_settlement(5)


def test_send_failure(writer, web3):
    web3.eth.send_raw_transaction.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(SubmissionFailure):
        writer.submit_settlement(5)


def test_confirmation_timeout(writer, web3):
    web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("no receipt")
    with pytest.raises(SubmissionFailure) as exc:
        writer.submit_settlement(5)
    assert exc.value.tx_hash == "0x" + "12" * 32


def test_reverted_receipt(writer, web3):
    web3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 124}
    with pytest.raises(SubmissionFailure):
        writer.submit_settlement(5)


def test_connect_ledger_requires_configuration(monkeypatch):
    monkeypatch.setitem(LEDGER_SETTINGS, "rpc_url", None)
    monkeypatch.setitem(LEDGER_SETTINGS, "contract_address", None)
    monkeypatch.setitem(LEDGER_SETTINGS, "admin_private_key", None)
    with pytest.raises(FatalInitError) as exc:
        connect_ledger()
    assert "LEDGER_RPC_URL" in str(exc.value)


def test_connect_ledger_builds_connection(monkeypatch):
    monkeypatch.setitem(LEDGER_SETTINGS, "rpc_url", "http://127.0.0.1:8545")
    monkeypatch.setitem(LEDGER_SETTINGS, "contract_address", "0x" + "22" * 20)
    monkeypatch.setitem(LEDGER_SETTINGS, "admin_private_key", "0x" + "11" * 32)
    connection = connect_ledger()
    assert connection.contract.address.lower() == "0x" + "22" * 20
    assert connection.account.address.startswith("0x")


def test_connect_ledger_rejects_bad_key(monkeypatch):
    monkeypatch.setitem(LEDGER_SETTINGS, "rpc_url", "http://127.0.0.1:8545")
    monkeypatch.setitem(LEDGER_SETTINGS, "contract_address", "0x" + "22" * 20)
    monkeypatch.setitem(LEDGER_SETTINGS, "admin_private_key", "not-a-key")
    with pytest.raises(FatalInitError):
        connect_ledger()
