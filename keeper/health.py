"""
Health reporting for the keeper.

Keeps the last observed round/wallet state plus the outcome of the
most recent tick, and turns it into the /health payload. It never
triggers closes: ticks write into it, the HTTP layer reads from it.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from keeper.clock import SystemClock, isoformat
from keeper.errors import ChainReadError
from keeper.models import CloseResult, RoundSnapshot, WalletSnapshot

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HealthStatus:
    """Immutable copy of everything the reporter knows."""
    wallet_address: str
    round: Optional[RoundSnapshot]
    wallet: Optional[WalletSnapshot]
    last_tick_at: Optional[datetime]
    last_error: Optional[str]
    last_error_at: Optional[datetime]
    last_close: Optional[CloseResult]
    fatal: Optional[str]


class HealthReporter:
    """
    Thread-safe store of the keeper's last observations.

    Writes come from one tick at a time (plus /health probes); reads may
    happen concurrently from the HTTP layer.
    """

    def __init__(
        self,
        wallet_address: str,
        clock=None,
        prize_token_decimals: int = 6,
    ):
        """
        Initialize health reporter.

        Args:
            wallet_address: Keeper wallet (included in every report)
            clock: Clock providing utcnow()
            prize_token_decimals: Decimals of the prize token for display
        """
        self.wallet_address = wallet_address
        self.clock = clock or SystemClock()
        self.prize_token_decimals = prize_token_decimals

        self._lock = threading.Lock()
        self._round: Optional[RoundSnapshot] = None
        self._wallet: Optional[WalletSnapshot] = None
        self._last_tick_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_error_at: Optional[datetime] = None
        self._last_close: Optional[CloseResult] = None
        self._fatal: Optional[str] = None

    # ==========================================================================
    # WRITES
    # ==========================================================================

    def record_round(self, snapshot: RoundSnapshot) -> None:
        with self._lock:
            self._round = snapshot

    def record_wallet(self, wallet: WalletSnapshot) -> None:
        with self._lock:
            self._wallet = wallet

    def record_tick(self) -> None:
        """Mark a tick that completed without error."""
        with self._lock:
            self._last_tick_at = self.clock.utcnow()
            self._last_error = None
            self._last_error_at = None

    def record_error(self, message: str) -> None:
        with self._lock:
            self._last_error = message
            self._last_error_at = self.clock.utcnow()

    def record_close(self, result: CloseResult) -> None:
        with self._lock:
            self._last_close = result

    def set_fatal(self, message: str) -> None:
        """Flag a condition that needs an operator (e.g. empty gas wallet)."""
        with self._lock:
            self._fatal = message

    def clear_fatal(self) -> None:
        with self._lock:
            if self._fatal is not None:
                logger.info("health_fatal_cleared", previous=self._fatal)
            self._fatal = None

    # ==========================================================================
    # READS
    # ==========================================================================

    def status(self) -> HealthStatus:
        with self._lock:
            return HealthStatus(
                wallet_address=self.wallet_address,
                round=self._round,
                wallet=self._wallet,
                last_tick_at=self._last_tick_at,
                last_error=self._last_error,
                last_error_at=self._last_error_at,
                last_close=self._last_close,
                fatal=self._fatal,
            )

    def probe(self, chain) -> None:
        """
        Refresh wallet balance and current round from the chain.

        Raises:
            ChainReadError: if either read fails
        """
        wallet = chain.read_wallet()
        self.record_wallet(wallet)
        snapshot = chain.read_round_snapshot()
        self.record_round(snapshot)

    def report(self, chain=None) -> tuple[bool, dict]:
        """
        Build the /health payload.

        Args:
            chain: If given, wallet and round are re-read first

        Returns:
            (healthy, payload)
        """
        read_error: Optional[str] = None
        if chain is not None:
            try:
                self.probe(chain)
            except ChainReadError as e:
                logger.error("health_probe_failed", error=str(e))
                read_error = str(e)

        status = self.status()
        payload = {
            "wallet": status.wallet_address,
            "balance": status.wallet.balance_ether if status.wallet else None,
            "currentRound": status.round.round_id if status.round else None,
            "round": (
                status.round.to_dict(self.prize_token_decimals) if status.round else None
            ),
            "lastTick": isoformat(status.last_tick_at) if status.last_tick_at else None,
            "lastError": status.last_error,
            "lastClose": status.last_close.to_dict() if status.last_close else None,
            "timestamp": isoformat(self.clock.utcnow()),
        }

        message = read_error or status.fatal
        if message:
            return False, {"status": "error", "message": message, **payload}
        return True, {"status": "ok", **payload}
