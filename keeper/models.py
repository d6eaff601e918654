"""
Value types exchanged between keeper components.

Everything read from the contract is an integer on the wire and stays
an integer here. Formatting to human units goes through Decimal.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


def format_units(amount: int, decimals: int) -> str:
    """Render a raw fixed-point amount, e.g. format_units(1500000, 6) -> '1.5'."""
    # String construction is exact; arithmetic would round at context precision
    value = Decimal(f"{int(amount)}e-{int(decimals)}")
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


@dataclass(frozen=True)
class RoundSnapshot:
    """
    Point-in-time read of one lottery round.

    Only valid for the tick that fetched it.
    """
    round_id: int
    start_time: int
    end_time: int
    ticket_count: int
    prize_pool: int  # raw token units
    ended: bool

    def to_dict(self, prize_token_decimals: Optional[int] = None) -> dict:
        data = {
            "roundId": self.round_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "ticketCount": self.ticket_count,
            "prizePool": str(self.prize_pool),
            "ended": self.ended,
        }
        if prize_token_decimals is not None:
            data["prizePoolFormatted"] = format_units(self.prize_pool, prize_token_decimals)
        return data


@dataclass(frozen=True)
class WalletSnapshot:
    """Keeper wallet and its native (gas) balance in wei."""
    address: str
    native_balance: int
    observed_at: datetime

    @property
    def balance_ether(self) -> str:
        return format_units(self.native_balance, 18)


class Action(Enum):
    """What the keeper should do with the current round."""
    SKIP_ENDED = "skip"
    SKIP_ACTIVE = "skip_active"
    SKIP_EMPTY_EXPIRED = "skip_empty_expired"
    CLOSE_ROUND = "close_round"
    ERROR = "error"


@dataclass(frozen=True)
class Decision:
    """Result of evaluating a round snapshot at a point in time."""
    action: Action
    round_id: Optional[int] = None
    reason: str = ""
    seconds_remaining: Optional[int] = None
    error_kind: Optional[str] = None

    @property
    def should_close(self) -> bool:
        return self.action == Action.CLOSE_ROUND

    @classmethod
    def error(cls, kind: str, reason: str = "", round_id: Optional[int] = None) -> "Decision":
        return cls(Action.ERROR, round_id=round_id, reason=reason, error_kind=kind)


@dataclass
class CloseAttempt:
    """
    In-flight close of one round.

    Owned by SingleFlightGuard and discarded once the transaction
    settles or fails. tx_hash is filled in after broadcast.
    """
    round_id: int
    submitted_at: Optional[datetime] = None
    tx_hash: Optional[str] = None
    confirmed_closed: bool = False


@dataclass(frozen=True)
class PendingTransaction:
    """
    Handle for a broadcast transaction awaiting its receipt.

    fees holds the fee fields it was signed with (maxFeePerGas,
    maxPriorityFeePerGas or gasPrice) so a replacement can outbid it.
    """
    tx_hash: str
    nonce: int
    submitted_at: datetime
    fees: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RoundEndedEvent:
    """Decoded RoundEnded(roundId, winner, prize) log."""
    round_id: int
    winner: str
    prize: int


@dataclass(frozen=True)
class Receipt:
    """Mined transaction receipt, reduced to what the keeper needs."""
    tx_hash: str
    gas_used: int
    success: bool
    block_number: Optional[int] = None
    round_ended: Optional[RoundEndedEvent] = None


class CloseOutcome(Enum):
    """How a close attempt ended."""
    CLOSED = "closed"
    ALREADY_CLOSED = "already_closed"
    IN_PROGRESS = "in_progress"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    FUNDS_BLOCKED = "funds_blocked"
    NONCE_CONFLICT = "nonce_conflict"
    NETWORK_ERROR = "network_error"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    ABORTED = "aborted"
    ANOMALY = "anomaly"


@dataclass(frozen=True)
class CloseResult:
    """Outcome of one pass through the transaction submitter."""
    outcome: CloseOutcome
    round_id: int
    message: str = ""
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None

    @property
    def closed(self) -> bool:
        return self.outcome == CloseOutcome.CLOSED

    @property
    def is_transient(self) -> bool:
        """Whether the next tick should simply try again."""
        return self.outcome in (
            CloseOutcome.NONCE_CONFLICT,
            CloseOutcome.NETWORK_ERROR,
            CloseOutcome.CONFIRMATION_TIMEOUT,
            CloseOutcome.ABORTED,
        )

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "roundId": self.round_id,
            "message": self.message,
            "txHash": self.tx_hash,
            "gasUsed": self.gas_used,
        }


@dataclass(frozen=True)
class TickResult:
    """Outcome of one scheduler cycle (scheduled or manual)."""
    trigger: str
    started_at: datetime
    finished_at: datetime
    decision: Optional[Decision] = None
    close: Optional[CloseResult] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        """True only when this cycle closed a round."""
        return self.close is not None and self.close.closed

    @property
    def round_id(self) -> Optional[int]:
        if self.close is not None:
            return self.close.round_id
        if self.decision is not None:
            return self.decision.round_id
        return None

    @property
    def message(self) -> str:
        if self.error:
            return self.error
        if self.close is not None:
            return self.close.message
        if self.decision is not None and self.decision.reason:
            return self.decision.reason
        return "No action needed"

    @property
    def outcome(self) -> str:
        if self.close is not None:
            return self.close.outcome.value
        if self.decision is not None:
            return self.decision.action.value
        return "error"
