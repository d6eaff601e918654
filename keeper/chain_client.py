"""
Lottery contract client for the keeper.

The keeper's only window onto chain state. Reads are idempotent; the
single write is endRound(), broadcast once per submit_close_round()
call. Every web3/transport exception is translated here into the
keeper's own error types.
"""

import threading
import time
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from keeper.config import KeeperConfig
from keeper.errors import (
    ChainReadError,
    ChainWriteError,
    ConfigurationError,
    ConfirmationAborted,
    ConfirmationTimeout,
    TransactionFailed,
    WriteFailure,
)
from keeper.models import (
    PendingTransaction,
    Receipt,
    RoundEndedEvent,
    RoundSnapshot,
    WalletSnapshot,
)

logger = structlog.get_logger(__name__)

# Only the functions and events the keeper touches
LOTTERY_ABI = [
    {
        "type": "function",
        "name": "endRound",
        "stateMutability": "nonpayable",
        "inputs": [],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getCurrentRound",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "roundId", "type": "uint256"},
            {"name": "startTime", "type": "uint256"},
            {"name": "endTime", "type": "uint256"},
            {"name": "totalTickets", "type": "uint256"},
            {"name": "prizePool", "type": "uint256"},
            {"name": "ended", "type": "bool"},
        ],
    },
    {
        "type": "function",
        "name": "currentRoundId",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "getRoundDetails",
        "stateMutability": "view",
        "inputs": [{"name": "roundId", "type": "uint256"}],
        "outputs": [
            {"name": "startTime", "type": "uint256"},
            {"name": "endTime", "type": "uint256"},
            {"name": "totalTickets", "type": "uint256"},
            {"name": "prizePool", "type": "uint256"},
            {"name": "ended", "type": "bool"},
            {"name": "winningNumber1", "type": "uint8"},
            {"name": "winningNumber2", "type": "uint8"},
            {"name": "winner", "type": "address"},
            {"name": "winnerPrize", "type": "uint256"},
            {"name": "prizeClaimed", "type": "bool"},
        ],
    },
    {
        "type": "event",
        "name": "RoundEnded",
        "anonymous": False,
        "inputs": [
            {"name": "roundId", "type": "uint256", "indexed": True},
            {"name": "winner", "type": "address", "indexed": True},
            {"name": "prize", "type": "uint256", "indexed": False},
        ],
    },
]

# Transport failures surface as OSError (requests), RPC errors as
# Web3Exception or, on older nodes/providers, plain ValueError.
READ_ERRORS = (Web3Exception, OSError, ValueError, TimeoutError)

_NONCE_MARKERS = (
    "nonce too low",
    "nonce too high",
    "nonce expired",
    "already known",
    "replacement transaction underpriced",
    "known transaction",
)

FEE_FIELDS = ("maxFeePerGas", "maxPriorityFeePerGas", "gasPrice")


def _bump_fee(fee: int) -> int:
    """Fee a same-nonce replacement must at least offer (nodes require +10%)."""
    return fee * 125 // 100 + 1


def _error_message(exc: BaseException) -> str:
    """Best-effort human message out of a web3/RPC exception."""
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("message", exc.args[0]))
    return str(exc)


def classify_write_error(exc: BaseException) -> WriteFailure:
    """
    Decide why a transaction submission failed.

    Node error messages are not standardised; these substrings cover
    geth, erigon, reth and the hosted RPC providers in common use.
    """
    if isinstance(exc, ContractLogicError):
        return WriteFailure.REVERTED

    message = _error_message(exc).lower()

    if "insufficient funds" in message:
        return WriteFailure.INSUFFICIENT_FUNDS
    if any(marker in message for marker in _NONCE_MARKERS):
        return WriteFailure.NONCE_CONFLICT
    if "revert" in message:
        return WriteFailure.REVERTED
    return WriteFailure.NETWORK_ERROR


class LotteryChainClient:
    """
    Typed read/write access to the lottery contract and keeper wallet.

    This client:
    - Reads round state (getCurrentRound, getRoundDetails, currentRoundId)
    - Reads the wallet's native balance
    - Submits endRound() and waits for its receipt
    """

    def __init__(
        self,
        config: KeeperConfig,
        web3: Optional[Web3] = None,
    ):
        """
        Initialize chain client.

        Args:
            config: Keeper configuration (RPC URL, key, contract address)
            web3: Pre-built Web3 instance (tests); built from config if omitted
        """
        self.config = config
        self.w3 = web3 or Web3(
            Web3.HTTPProvider(
                config.rpc_url,
                request_kwargs={"timeout": config.rpc_timeout_seconds},
            )
        )

        try:
            self.account = self.w3.eth.account.from_key(config.private_key)
            contract_address = Web3.to_checksum_address(config.contract_address)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid keeper credentials: {e}") from e

        self.contract = self.w3.eth.contract(address=contract_address, abi=LOTTERY_ABI)
        self.address: str = self.account.address

        logger.info(
            "chain_client_initialized",
            contract=contract_address,
            wallet=self.address,
        )

    # ==========================================================================
    # READS
    # ==========================================================================

    def read_round_snapshot(self) -> RoundSnapshot:
        """Read the current round via getCurrentRound()."""
        try:
            raw = self.contract.functions.getCurrentRound().call()
            round_id, start_time, end_time, tickets, prize_pool, ended = raw
            return RoundSnapshot(
                round_id=int(round_id),
                start_time=int(start_time),
                end_time=int(end_time),
                ticket_count=int(tickets),
                prize_pool=int(prize_pool),
                ended=bool(ended),
            )
        except READ_ERRORS as e:
            raise ChainReadError(f"getCurrentRound failed: {_error_message(e)}") from e
        except TypeError as e:
            raise ChainReadError(f"getCurrentRound returned malformed data: {e}") from e

    def read_round(self, round_id: int) -> RoundSnapshot:
        """Read a specific round via getRoundDetails(roundId)."""
        try:
            raw = self.contract.functions.getRoundDetails(round_id).call()
            start_time, end_time, tickets, prize_pool, ended = raw[:5]
            return RoundSnapshot(
                round_id=int(round_id),
                start_time=int(start_time),
                end_time=int(end_time),
                ticket_count=int(tickets),
                prize_pool=int(prize_pool),
                ended=bool(ended),
            )
        except READ_ERRORS as e:
            raise ChainReadError(f"getRoundDetails({round_id}) failed: {_error_message(e)}") from e
        except TypeError as e:
            raise ChainReadError(f"getRoundDetails({round_id}) returned malformed data: {e}") from e

    def read_current_round_id(self) -> int:
        """Read currentRoundId()."""
        try:
            return int(self.contract.functions.currentRoundId().call())
        except READ_ERRORS as e:
            raise ChainReadError(f"currentRoundId failed: {_error_message(e)}") from e

    def read_wallet_balance(self) -> int:
        """Native balance of the keeper wallet in wei."""
        try:
            return int(self.w3.eth.get_balance(self.address))
        except READ_ERRORS as e:
            raise ChainReadError(f"get_balance failed: {_error_message(e)}") from e

    def read_wallet(self) -> WalletSnapshot:
        return WalletSnapshot(
            address=self.address,
            native_balance=self.read_wallet_balance(),
            observed_at=datetime.now(timezone.utc),
        )

    # ==========================================================================
    # WRITE
    # ==========================================================================

    def submit_close_round(self, replacing: Optional[PendingTransaction] = None) -> PendingTransaction:
        """
        Build, sign and broadcast endRound().

        Gas is estimated by the node while building, so a call the
        contract would reject fails here as REVERTED without spending gas.

        Args:
            replacing: An earlier, still unmined endRound(). The new
                transaction reuses its nonce and outbids its fees, so
                at most one of the two can ever be mined.

        Raises:
            ChainWriteError: with the classified cause
        """
        try:
            if replacing is not None:
                nonce = replacing.nonce
            else:
                nonce = self.w3.eth.get_transaction_count(self.address, "pending")
            params: dict[str, Any] = {"from": self.address, "nonce": nonce}
            if self.config.chain_id is not None:
                params["chainId"] = self.config.chain_id

            tx = self.contract.functions.endRound().build_transaction(params)
            if replacing is not None:
                for key, prior in replacing.fees.items():
                    if key in tx:
                        tx[key] = max(int(tx[key]), _bump_fee(prior))
            fees = {key: int(tx[key]) for key in FEE_FIELDS if key in tx}

            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except READ_ERRORS as e:
            cause = classify_write_error(e)
            logger.warning(
                "end_round_submit_failed",
                cause=cause.value,
                nonce=replacing.nonce if replacing is not None else None,
                error=_error_message(e),
            )
            raise ChainWriteError(cause, _error_message(e)) from e

        pending = PendingTransaction(
            tx_hash=Web3.to_hex(tx_hash),
            nonce=int(nonce),
            submitted_at=datetime.now(timezone.utc),
            fees=fees,
        )
        logger.info(
            "end_round_submitted",
            tx_hash=pending.tx_hash,
            nonce=pending.nonce,
            replaces=replacing.tx_hash if replacing is not None else None,
        )
        return pending

    def get_receipt(self, pending: PendingTransaction) -> Optional[Receipt]:
        """
        Look up the receipt once, without waiting.

        Returns:
            The receipt, or None while the transaction is unmined

        Raises:
            ChainReadError: the lookup itself failed
            TransactionFailed: mined with status 0
        """
        try:
            raw = self.w3.eth.get_transaction_receipt(pending.tx_hash)
        except TransactionNotFound:
            return None
        except READ_ERRORS as e:
            raise ChainReadError(f"get_transaction_receipt failed: {_error_message(e)}") from e

        receipt = self._to_receipt(pending.tx_hash, raw)
        if not receipt.success:
            raise TransactionFailed(receipt)
        return receipt

    def await_confirmation(
        self,
        pending: PendingTransaction,
        timeout: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> Receipt:
        """
        Poll for the transaction receipt.

        Args:
            pending: Handle from submit_close_round()
            timeout: Seconds to wait (defaults to config)
            stop_event: Set on shutdown; aborts the wait early

        Raises:
            ConfirmationTimeout: no receipt before the deadline
            ConfirmationAborted: stop_event was set while waiting
            TransactionFailed: mined with status 0
        """
        timeout = timeout if timeout is not None else self.config.confirmation_timeout_seconds
        poll = self.config.confirmation_poll_seconds
        deadline = time.monotonic() + timeout

        while True:
            try:
                receipt = self.get_receipt(pending)
            except ChainReadError as e:
                logger.warning("receipt_poll_failed", tx_hash=pending.tx_hash, error=str(e))
                receipt = None

            if receipt is not None:
                return receipt

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConfirmationTimeout(pending.tx_hash, timeout)

            wait = min(poll, remaining)
            if stop_event is not None:
                if stop_event.wait(wait):
                    raise ConfirmationAborted(pending.tx_hash)
            else:
                time.sleep(wait)

    def _to_receipt(self, tx_hash: str, raw) -> Receipt:
        return Receipt(
            tx_hash=tx_hash,
            gas_used=int(raw["gasUsed"]),
            success=int(raw["status"]) == 1,
            block_number=int(raw["blockNumber"]) if raw.get("blockNumber") is not None else None,
            round_ended=self._decode_round_ended(raw),
        )

    def _decode_round_ended(self, raw) -> Optional[RoundEndedEvent]:
        """Pull the RoundEnded event out of a receipt, if present."""
        try:
            events = self.contract.events.RoundEnded().process_receipt(raw, errors=DISCARD)
            for event in events:
                args = event["args"]
                return RoundEndedEvent(
                    round_id=int(args["roundId"]),
                    winner=str(args["winner"]),
                    prize=int(args["prize"]),
                )
        except (Web3Exception, ValueError, KeyError, TypeError) as e:
            logger.debug("round_ended_event_decode_failed", error=str(e))
        return None
