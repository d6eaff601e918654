"""
Error taxonomy for the round keeper.

Library exceptions (web3, transport errors) are translated into these
at the chain client boundary. Nothing above the chain client should
ever see a web3 exception.
"""

from enum import Enum
from typing import Optional


class KeeperError(Exception):
    """Base class for all keeper errors."""


class ConfigurationError(KeeperError):
    """Required configuration is missing or invalid. Fatal at startup."""


class ChainReadError(KeeperError):
    """A contract or balance read failed. Transient."""


class WriteFailure(Enum):
    """Why a close-round transaction could not be submitted."""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NONCE_CONFLICT = "nonce_conflict"
    REVERTED = "reverted"
    NETWORK_ERROR = "network_error"


class ChainWriteError(KeeperError):
    """
    Submitting the close-round transaction failed.

    The cause decides how the submitter reacts: INSUFFICIENT_FUNDS is
    fatal for the wallet, REVERTED usually means the round was already
    closed, everything else is retried on the next tick.
    """

    def __init__(self, cause: WriteFailure, detail: str = ""):
        self.cause = cause
        self.detail = detail
        super().__init__(f"{cause.value}: {detail}" if detail else cause.value)


class ConfirmationTimeout(KeeperError):
    """The transaction was not mined before the confirmation deadline."""

    def __init__(self, tx_hash: str, timeout_seconds: Optional[float] = None):
        self.tx_hash = tx_hash
        self.timeout_seconds = timeout_seconds
        super().__init__(f"No receipt for {tx_hash} after {timeout_seconds}s")


class ConfirmationAborted(ConfirmationTimeout):
    """The confirmation wait was cut short by a shutdown request."""

    def __init__(self, tx_hash: str):
        super().__init__(tx_hash)
        self.args = (f"Confirmation wait for {tx_hash} aborted by shutdown",)


class TransactionFailed(KeeperError):
    """The transaction was mined but its receipt reports failure."""

    def __init__(self, receipt):
        self.receipt = receipt
        super().__init__(f"Transaction {receipt.tx_hash} reverted on-chain")
