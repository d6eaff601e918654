"""
Close-round transaction submitter.

Protocol for one close:
1. Take the single-flight token for the round (or report "in progress")
2. Broadcast endRound()
3. Wait (bounded) for the receipt
4. Release the token, whatever happened
5. Classify the outcome

Failure handling:
- Insufficient funds -> critical, stop submitting until the wallet is topped up
- Nonce conflict     -> someone else is already sending; look again next tick
- Reverted           -> re-read the round; usually it was already closed
- Network error      -> next tick decides again from a fresh read
- Timeout            -> the transaction is remembered; the next close of the
                        same round checks its receipt first and, if still
                        unmined, replaces it at the same nonce
"""

import threading
from typing import Callable, Optional

import structlog

from keeper.errors import (
    ChainReadError,
    ChainWriteError,
    ConfirmationAborted,
    ConfirmationTimeout,
    TransactionFailed,
    WriteFailure,
)
from keeper.models import (
    CloseAttempt,
    CloseOutcome,
    CloseResult,
    PendingTransaction,
    Receipt,
    RoundSnapshot,
)

logger = structlog.get_logger(__name__)


class TransactionSubmitter:
    """
    Keeps at most one endRound() per round pending from this process.

    The insufficient-funds block lives here: it is a property of the
    wallet, not of any single round.
    """

    def __init__(self, context):
        """
        Initialize submitter.

        Args:
            context: KeeperContext with chain, guard, health and config
        """
        self.context = context
        self.chain = context.chain
        self.guard = context.guard
        self.health = context.health
        self.config = context.config

        self._funds_lock = threading.Lock()
        self._funds_blocked = False
        self._balance_at_block: Optional[int] = None

        # Timed-out endRound() per round, replaced at the same nonce on the
        # next attempt. Only touched while holding the guard.
        self._unconfirmed: dict[int, PendingTransaction] = {}

    @property
    def funds_blocked(self) -> bool:
        with self._funds_lock:
            return self._funds_blocked

    def close_round(
        self,
        snapshot: RoundSnapshot,
        on_acquired: Optional[Callable[[CloseAttempt], None]] = None,
    ) -> CloseResult:
        """
        Close the round in snapshot.

        Args:
            snapshot: Round the monitor decided to close
            on_acquired: Called once the single-flight token is held

        Returns:
            CloseResult describing what happened
        """
        round_id = snapshot.round_id

        if self.guard.is_closed(round_id):
            return self._already_closed_locally(round_id)

        if not self._funds_available():
            message = (
                f"Close of round #{round_id} withheld: keeper wallet "
                f"{self.chain.address} has not been topped up"
            )
            logger.warning("close_withheld_insufficient_funds", round_id=round_id)
            return CloseResult(CloseOutcome.FUNDS_BLOCKED, round_id, message)

        with self.guard.hold(round_id) as attempt:
            if attempt is None:
                if self.guard.is_closed(round_id):
                    return self._already_closed_locally(round_id)
                return CloseResult(
                    CloseOutcome.IN_PROGRESS,
                    round_id,
                    f"Close already in progress for round #{round_id}",
                )

            if on_acquired is not None:
                on_acquired(attempt)

            result = self._submit_and_confirm(snapshot, attempt)
            attempt.confirmed_closed = result.outcome in (
                CloseOutcome.CLOSED,
                CloseOutcome.ALREADY_CLOSED,
            )

        self.health.record_close(result)
        return result

    def check_balance(self) -> Optional[int]:
        """
        Read and record the wallet balance, warning when it runs low.

        Returns:
            Balance in wei, or None if the read failed
        """
        try:
            wallet = self.chain.read_wallet()
        except ChainReadError as e:
            logger.error("balance_check_failed", error=str(e))
            return None

        self.health.record_wallet(wallet)
        logger.info(
            "wallet_balance",
            wallet=wallet.address,
            balance_eth=wallet.balance_ether,
        )
        if wallet.native_balance < self.config.min_balance_wei:
            logger.warning(
                "wallet_balance_low",
                wallet=wallet.address,
                balance_wei=wallet.native_balance,
                min_balance_wei=self.config.min_balance_wei,
                message="Add more ETH to continue operations",
            )
        return wallet.native_balance

    # ==========================================================================
    # INTERNALS
    # ==========================================================================

    def _submit_and_confirm(self, snapshot: RoundSnapshot, attempt: CloseAttempt) -> CloseResult:
        round_id = snapshot.round_id

        # Timed-out transactions for earlier rounds are settled by now
        for stale in [r for r in self._unconfirmed if r < round_id]:
            del self._unconfirmed[stale]

        prior = self._unconfirmed.get(round_id)
        if prior is not None:
            settled = self._settle_prior(round_id, prior)
            if settled is not None:
                return settled

        logger.info(
            "closing_round",
            round_id=round_id,
            tickets=snapshot.ticket_count,
            prize_pool=snapshot.prize_pool,
            replaces=prior.tx_hash if prior is not None else None,
        )

        try:
            pending = self.chain.submit_close_round(replacing=prior)
        except ChainWriteError as e:
            if prior is not None and "nonce too low" in (e.detail or "").lower():
                # The nonce is spent; the next tick reads whatever got mined
                self._unconfirmed.pop(round_id, None)
            return self._handle_write_error(round_id, e)

        attempt.tx_hash = pending.tx_hash
        attempt.submitted_at = pending.submitted_at
        self._unconfirmed.pop(round_id, None)

        try:
            receipt = self.chain.await_confirmation(
                pending,
                timeout=self.config.confirmation_timeout_seconds,
                stop_event=self.context.stop_event,
            )
        except ConfirmationAborted:
            self._unconfirmed[round_id] = pending
            logger.warning("confirmation_aborted", round_id=round_id, tx_hash=pending.tx_hash)
            return CloseResult(
                CloseOutcome.ABORTED,
                round_id,
                "Shutdown requested while waiting for confirmation",
                tx_hash=pending.tx_hash,
            )
        except ConfirmationTimeout as e:
            self._unconfirmed[round_id] = pending
            logger.warning(
                "confirmation_timeout",
                round_id=round_id,
                tx_hash=pending.tx_hash,
                nonce=pending.nonce,
                timeout_seconds=e.timeout_seconds,
            )
            return CloseResult(
                CloseOutcome.CONFIRMATION_TIMEOUT,
                round_id,
                f"No receipt for {pending.tx_hash} yet; will re-check next tick",
                tx_hash=pending.tx_hash,
            )
        except TransactionFailed as e:
            return self._confirm_already_closed(
                round_id,
                detail="transaction reverted on-chain",
                tx_hash=pending.tx_hash,
                gas_used=e.receipt.gas_used,
            )

        return self._closed(round_id, receipt)

    def _settle_prior(self, round_id: int, prior: PendingTransaction) -> Optional[CloseResult]:
        """
        Check an endRound() that timed out on an earlier tick.

        Returns:
            The outcome if that transaction has been mined (or its state
            cannot be read), None if it is still pending and should be
            replaced at the same nonce.
        """
        try:
            receipt = self.chain.get_receipt(prior)
        except TransactionFailed as e:
            self._unconfirmed.pop(round_id, None)
            return self._confirm_already_closed(
                round_id,
                detail="earlier transaction reverted on-chain",
                tx_hash=prior.tx_hash,
                gas_used=e.receipt.gas_used,
            )
        except ChainReadError as e:
            logger.warning(
                "prior_close_unverified",
                round_id=round_id,
                tx_hash=prior.tx_hash,
                error=str(e),
            )
            return CloseResult(
                CloseOutcome.NETWORK_ERROR,
                round_id,
                f"Could not check earlier transaction {prior.tx_hash}: {e}",
                tx_hash=prior.tx_hash,
            )

        if receipt is None:
            logger.info(
                "replacing_unconfirmed_close",
                round_id=round_id,
                tx_hash=prior.tx_hash,
                nonce=prior.nonce,
            )
            return None

        self._unconfirmed.pop(round_id, None)
        return self._closed(round_id, receipt)

    def _closed(self, round_id: int, receipt: Receipt) -> CloseResult:
        event = receipt.round_ended
        logger.info(
            "round_closed",
            round_id=round_id,
            tx_hash=receipt.tx_hash,
            gas_used=receipt.gas_used,
            block=receipt.block_number,
            winner=event.winner if event else None,
            prize=event.prize if event else None,
        )

        self.check_balance()

        return CloseResult(
            CloseOutcome.CLOSED,
            round_id,
            f"Round #{round_id} ended successfully",
            tx_hash=receipt.tx_hash,
            gas_used=receipt.gas_used,
        )

    def _handle_write_error(self, round_id: int, error: ChainWriteError) -> CloseResult:
        if error.cause == WriteFailure.INSUFFICIENT_FUNDS:
            return self._block_on_insufficient_funds(round_id, error)

        if error.cause == WriteFailure.NONCE_CONFLICT:
            logger.warning(
                "nonce_conflict",
                round_id=round_id,
                message="Transaction may have been sent by another process",
                error=error.detail,
            )
            return CloseResult(
                CloseOutcome.NONCE_CONFLICT,
                round_id,
                "Nonce conflict - another submission may be in flight",
            )

        if error.cause == WriteFailure.REVERTED:
            return self._confirm_already_closed(round_id, detail=error.detail or "reverted")

        logger.warning("close_network_error", round_id=round_id, error=error.detail)
        return CloseResult(
            CloseOutcome.NETWORK_ERROR,
            round_id,
            f"Network error submitting endRound: {error.detail}",
        )

    def _block_on_insufficient_funds(self, round_id: int, error: ChainWriteError) -> CloseResult:
        address = self.chain.address
        try:
            balance = self.chain.read_wallet_balance()
        except ChainReadError:
            balance = None

        with self._funds_lock:
            self._funds_blocked = True
            self._balance_at_block = balance

        message = f"Insufficient funds for gas! Add ETH to keeper wallet {address}"
        logger.critical(
            "insufficient_funds",
            round_id=round_id,
            wallet=address,
            balance_wei=balance,
            error=error.detail,
        )
        self.health.set_fatal(message)
        return CloseResult(CloseOutcome.INSUFFICIENT_FUNDS, round_id, message)

    def _funds_available(self) -> bool:
        """
        False while blocked on insufficient funds.

        The block lifts once the balance has grown past what it was at the
        failure and is at least the configured minimum.
        """
        with self._funds_lock:
            if not self._funds_blocked:
                return True
            balance_at_block = self._balance_at_block

        try:
            balance = self.chain.read_wallet_balance()
        except ChainReadError as e:
            logger.error("balance_check_failed", error=str(e))
            return False

        topped_up = balance >= self.config.min_balance_wei and (
            balance_at_block is None or balance > balance_at_block
        )
        if not topped_up:
            return False

        with self._funds_lock:
            self._funds_blocked = False
            self._balance_at_block = None
        logger.info("wallet_topped_up", wallet=self.chain.address, balance_wei=balance)
        self.health.clear_fatal()
        return True

    def _confirm_already_closed(
        self,
        round_id: int,
        detail: str,
        tx_hash: Optional[str] = None,
        gas_used: Optional[int] = None,
    ) -> CloseResult:
        """A close was rejected by the contract; check whether the round ended anyway."""
        try:
            current = self.chain.read_round(round_id)
        except ChainReadError as e:
            logger.warning(
                "close_reverted_unconfirmed",
                round_id=round_id,
                detail=detail,
                error=str(e),
            )
            return CloseResult(
                CloseOutcome.NETWORK_ERROR,
                round_id,
                f"endRound rejected ({detail}) and round state could not be re-read",
                tx_hash=tx_hash,
                gas_used=gas_used,
            )

        if current.ended:
            logger.info("round_already_closed", round_id=round_id, detail=detail)
            return CloseResult(
                CloseOutcome.ALREADY_CLOSED,
                round_id,
                f"Round #{round_id} was already ended",
                tx_hash=tx_hash,
                gas_used=gas_used,
            )

        logger.error(
            "close_reverted_round_still_open",
            round_id=round_id,
            detail=detail,
            tx_hash=tx_hash,
        )
        return CloseResult(
            CloseOutcome.ANOMALY,
            round_id,
            f"endRound rejected ({detail}) but round #{round_id} is still open",
            tx_hash=tx_hash,
            gas_used=gas_used,
        )

    @staticmethod
    def _already_closed_locally(round_id: int) -> CloseResult:
        logger.info("round_closed_by_this_keeper", round_id=round_id)
        return CloseResult(
            CloseOutcome.ALREADY_CLOSED,
            round_id,
            f"Round #{round_id} already closed by this keeper",
        )
