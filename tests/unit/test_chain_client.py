"""
Tests for the lottery chain client.

web3 is mocked; these tests pin down how contract data is parsed and
how node errors are classified.
"""

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from web3.exceptions import ContractLogicError, TransactionNotFound

from keeper.chain_client import LOTTERY_ABI, LotteryChainClient, classify_write_error
from keeper.errors import (
    ChainReadError,
    ChainWriteError,
    ConfirmationAborted,
    ConfirmationTimeout,
    TransactionFailed,
    WriteFailure,
)
from keeper.models import PendingTransaction

from conftest import WALLET


@pytest.fixture
def mock_w3():
    """Mock Web3 instance with a keeper account."""
    w3 = MagicMock()
    w3.eth.account.from_key.return_value.address = WALLET
    w3.eth.contract.return_value.events.RoundEnded.return_value.process_receipt.return_value = []
    return w3


@pytest.fixture
def client(config, mock_w3):
    return LotteryChainClient(config, web3=mock_w3)


@pytest.fixture
def contract(client):
    return client.contract


def _pending(tx_hash="0x" + "ab" * 32):
    return PendingTransaction(tx_hash=tx_hash, nonce=3, submitted_at=datetime.now(timezone.utc))


class TestClassifyWriteError:
    """Node error message -> failure cause."""

    @pytest.mark.parametrize("message", [
        "insufficient funds for gas * price + value",
        "Insufficient funds for transfer",
    ])
    def test_insufficient_funds(self, message):
        assert classify_write_error(ValueError(message)) == WriteFailure.INSUFFICIENT_FUNDS

    def test_rpc_error_dict_payload(self):
        """Older providers raise ValueError with the JSON-RPC error dict."""
        error = ValueError({"code": -32000, "message": "insufficient funds for gas * price + value"})

        assert classify_write_error(error) == WriteFailure.INSUFFICIENT_FUNDS

    @pytest.mark.parametrize("message", [
        "nonce too low",
        "already known",
        "replacement transaction underpriced",
        "nonce expired",
    ])
    def test_nonce_conflict(self, message):
        assert classify_write_error(ValueError(message)) == WriteFailure.NONCE_CONFLICT

    def test_contract_logic_error_is_revert(self):
        error = ContractLogicError("execution reverted: Round not ended")

        assert classify_write_error(error) == WriteFailure.REVERTED

    def test_revert_message(self):
        assert classify_write_error(ValueError("execution reverted")) == WriteFailure.REVERTED

    def test_everything_else_is_network(self):
        assert classify_write_error(ConnectionError("connection reset")) == WriteFailure.NETWORK_ERROR


class TestReads:
    """Contract and balance reads."""

    def test_abi_has_keeper_surface(self):
        names = {entry["name"] for entry in LOTTERY_ABI}

        assert {"endRound", "getCurrentRound", "currentRoundId", "getRoundDetails", "RoundEnded"} <= names

    def test_read_round_snapshot(self, client, contract):
        contract.functions.getCurrentRound.return_value.call.return_value = (
            7, 1_699_996_400, 1_700_000_000, 12, 1_200_000, False,
        )

        snapshot = client.read_round_snapshot()

        assert snapshot.round_id == 7
        assert snapshot.end_time == 1_700_000_000
        assert snapshot.ticket_count == 12
        assert snapshot.prize_pool == 1_200_000
        assert isinstance(snapshot.prize_pool, int)
        assert snapshot.ended is False

    def test_read_failure_wrapped(self, client, contract):
        contract.functions.getCurrentRound.return_value.call.side_effect = OSError("timed out")

        with pytest.raises(ChainReadError, match="timed out"):
            client.read_round_snapshot()

    def test_malformed_response_wrapped(self, client, contract):
        contract.functions.getCurrentRound.return_value.call.return_value = (7, 1, 2)

        with pytest.raises(ChainReadError):
            client.read_round_snapshot()

    def test_read_round_details(self, client, contract):
        contract.functions.getRoundDetails.return_value.call.return_value = (
            100, 200, 3, 300_000, True, 4, 9, WALLET, 270_000, False,
        )

        snapshot = client.read_round(5)

        contract.functions.getRoundDetails.assert_called_with(5)
        assert snapshot.round_id == 5
        assert snapshot.ended is True
        assert snapshot.ticket_count == 3

    def test_read_current_round_id(self, client, contract):
        contract.functions.currentRoundId.return_value.call.return_value = 11

        assert client.read_current_round_id() == 11

    def test_read_wallet_balance(self, client, mock_w3):
        mock_w3.eth.get_balance.return_value = 5 * 10**15

        wallet = client.read_wallet()

        mock_w3.eth.get_balance.assert_called_with(WALLET)
        assert wallet.address == WALLET
        assert wallet.native_balance == 5 * 10**15
        assert wallet.balance_ether == "0.005"

    def test_balance_failure_wrapped(self, client, mock_w3):
        mock_w3.eth.get_balance.side_effect = ValueError({"code": -32603, "message": "internal error"})

        with pytest.raises(ChainReadError, match="internal error"):
            client.read_wallet_balance()


class TestSubmit:
    """endRound() submission."""

    def test_submit_builds_signs_and_sends(self, client, contract, mock_w3):
        mock_w3.eth.get_transaction_count.return_value = 4
        contract.functions.endRound.return_value.build_transaction.return_value = {"to": "x"}
        client.account.sign_transaction.return_value.raw_transaction = b"signed"
        mock_w3.eth.send_raw_transaction.return_value = b"\x12" * 32

        pending = client.submit_close_round()

        mock_w3.eth.get_transaction_count.assert_called_with(WALLET, "pending")
        params = contract.functions.endRound.return_value.build_transaction.call_args[0][0]
        assert params["nonce"] == 4
        assert params["from"] == WALLET
        mock_w3.eth.send_raw_transaction.assert_called_once_with(b"signed")
        assert pending.tx_hash == "0x" + "12" * 32
        assert pending.nonce == 4

    def test_submit_revert_during_estimation(self, client, contract, mock_w3):
        mock_w3.eth.get_transaction_count.return_value = 4
        contract.functions.endRound.return_value.build_transaction.side_effect = ContractLogicError(
            "execution reverted: Round already ended"
        )

        with pytest.raises(ChainWriteError) as exc_info:
            client.submit_close_round()

        assert exc_info.value.cause == WriteFailure.REVERTED
        mock_w3.eth.send_raw_transaction.assert_not_called()

    def test_submit_insufficient_funds(self, client, contract, mock_w3):
        mock_w3.eth.get_transaction_count.return_value = 4
        client.account.sign_transaction.return_value.raw_transaction = b"signed"
        mock_w3.eth.send_raw_transaction.side_effect = ValueError(
            {"code": -32000, "message": "insufficient funds for gas * price + value"}
        )

        with pytest.raises(ChainWriteError) as exc_info:
            client.submit_close_round()

        assert exc_info.value.cause == WriteFailure.INSUFFICIENT_FUNDS

    def test_replacement_reuses_nonce_and_outbids(self, client, contract, mock_w3):
        contract.functions.endRound.return_value.build_transaction.return_value = {
            "to": "x",
            "maxFeePerGas": 100,
            "maxPriorityFeePerGas": 10,
        }
        client.account.sign_transaction.return_value.raw_transaction = b"signed"
        mock_w3.eth.send_raw_transaction.return_value = b"\x34" * 32
        stuck = PendingTransaction(
            tx_hash="0x" + "12" * 32,
            nonce=9,
            submitted_at=datetime.now(timezone.utc),
            fees={"maxFeePerGas": 200, "maxPriorityFeePerGas": 20},
        )

        pending = client.submit_close_round(replacing=stuck)

        mock_w3.eth.get_transaction_count.assert_not_called()
        params = contract.functions.endRound.return_value.build_transaction.call_args[0][0]
        assert params["nonce"] == 9
        signed_tx = client.account.sign_transaction.call_args[0][0]
        assert signed_tx["maxFeePerGas"] == 251
        assert signed_tx["maxPriorityFeePerGas"] == 26
        assert pending.nonce == 9
        assert pending.fees == {"maxFeePerGas": 251, "maxPriorityFeePerGas": 26}

    def test_submit_records_fees(self, client, contract, mock_w3):
        mock_w3.eth.get_transaction_count.return_value = 2
        contract.functions.endRound.return_value.build_transaction.return_value = {"gasPrice": 7}
        client.account.sign_transaction.return_value.raw_transaction = b"signed"
        mock_w3.eth.send_raw_transaction.return_value = b"\x56" * 32

        pending = client.submit_close_round()

        assert pending.fees == {"gasPrice": 7}

    def test_submit_network_error(self, client, mock_w3):
        mock_w3.eth.get_transaction_count.side_effect = ConnectionError("refused")

        with pytest.raises(ChainWriteError) as exc_info:
            client.submit_close_round()

        assert exc_info.value.cause == WriteFailure.NETWORK_ERROR


class TestAwaitConfirmation:
    """Receipt polling."""

    def test_returns_receipt_once_mined(self, client, mock_w3):
        mock_w3.eth.get_transaction_receipt.side_effect = [
            TransactionNotFound("not yet"),
            {"status": 1, "gasUsed": 51_234, "blockNumber": 77},
        ]

        receipt = client.await_confirmation(_pending(), timeout=2)

        assert receipt.success is True
        assert receipt.gas_used == 51_234
        assert receipt.block_number == 77
        assert receipt.round_ended is None

    def test_decodes_round_ended_event(self, client, contract, mock_w3):
        mock_w3.eth.get_transaction_receipt.return_value = {"status": 1, "gasUsed": 1, "blockNumber": 1}
        contract.events.RoundEnded.return_value.process_receipt.return_value = [
            {"args": {"roundId": 7, "winner": WALLET, "prize": 1_080_000}},
        ]

        receipt = client.await_confirmation(_pending(), timeout=2)

        assert receipt.round_ended.round_id == 7
        assert receipt.round_ended.prize == 1_080_000

    def test_failed_status_raises(self, client, mock_w3):
        mock_w3.eth.get_transaction_receipt.return_value = {"status": 0, "gasUsed": 30_000, "blockNumber": 1}

        with pytest.raises(TransactionFailed) as exc_info:
            client.await_confirmation(_pending(), timeout=2)

        assert exc_info.value.receipt.gas_used == 30_000

    def test_times_out(self, client, mock_w3):
        mock_w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not yet")

        with pytest.raises(ConfirmationTimeout) as exc_info:
            client.await_confirmation(_pending(), timeout=0.05)

        assert not isinstance(exc_info.value, ConfirmationAborted)

    def test_poll_errors_do_not_abort_wait(self, client, mock_w3):
        mock_w3.eth.get_transaction_receipt.side_effect = [
            OSError("connection reset"),
            {"status": 1, "gasUsed": 1, "blockNumber": 1},
        ]

        receipt = client.await_confirmation(_pending(), timeout=2)

        assert receipt.success is True

    def test_get_receipt_unmined_is_none(self, client, mock_w3):
        mock_w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not yet")

        assert client.get_receipt(_pending()) is None

    def test_get_receipt_read_failure(self, client, mock_w3):
        mock_w3.eth.get_transaction_receipt.side_effect = OSError("connection reset")

        with pytest.raises(ChainReadError):
            client.get_receipt(_pending())

    def test_stop_event_aborts(self, client, mock_w3):
        mock_w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not yet")
        stop = threading.Event()
        stop.set()

        with pytest.raises(ConfirmationAborted):
            client.await_confirmation(_pending(), timeout=10, stop_event=stop)
