"""
Single-flight guard for round closes.

One token for the whole process: whoever holds it is the only caller
allowed to submit endRound(). A second caller (timer tick racing a
manual trigger) gets None back and must report "in progress".

The guard also remembers which rounds this process has already seen
closed, so a lagging RPC node that still reports ended=false for such
a round cannot provoke a second transaction.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from keeper.models import CloseAttempt

logger = structlog.get_logger(__name__)


class SingleFlightGuard:
    """Mutual exclusion token keyed by round id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._attempt: Optional[CloseAttempt] = None
        self._highest_closed: Optional[int] = None

    @property
    def current(self) -> Optional[CloseAttempt]:
        """The in-flight attempt, if any."""
        with self._state_lock:
            return self._attempt

    @property
    def is_held(self) -> bool:
        return self.current is not None

    def is_closed(self, round_id: int) -> bool:
        """Whether this process has already confirmed round_id closed."""
        with self._state_lock:
            return self._closed_locked(round_id)

    def _closed_locked(self, round_id: int) -> bool:
        # Caller holds _state_lock
        return self._highest_closed is not None and round_id <= self._highest_closed

    def try_acquire(self, round_id: int) -> Optional[CloseAttempt]:
        """
        Claim the token for round_id without blocking.

        Returns:
            A fresh CloseAttempt, or None if another attempt is in flight
            or the round is already known to be closed.
        """
        if self.is_closed(round_id):
            logger.info("guard_round_already_closed", round_id=round_id)
            return None

        if not self._lock.acquire(blocking=False):
            holder = self.current
            logger.info(
                "guard_busy",
                round_id=round_id,
                held_for=holder.round_id if holder else None,
            )
            return None

        # The previous holder may have confirmed this round between the
        # check above and taking the lock
        attempt = CloseAttempt(round_id=round_id)
        with self._state_lock:
            closed_meanwhile = self._closed_locked(round_id)
            if not closed_meanwhile:
                self._attempt = attempt
        if closed_meanwhile:
            self._lock.release()
            logger.info("guard_round_already_closed", round_id=round_id)
            return None

        logger.debug("guard_acquired", round_id=round_id)
        return attempt

    def release(self, attempt: CloseAttempt, closed: bool = False) -> None:
        """
        Give the token back and drop the attempt.

        Args:
            attempt: The attempt returned by try_acquire
            closed: True if the round is now confirmed closed
        """
        with self._state_lock:
            if self._attempt is not attempt:
                logger.warning(
                    "guard_release_mismatch",
                    round_id=attempt.round_id,
                    held_for=self._attempt.round_id if self._attempt else None,
                )
                return
            self._attempt = None
            if closed and (self._highest_closed is None or attempt.round_id > self._highest_closed):
                self._highest_closed = attempt.round_id
        self._lock.release()
        logger.debug("guard_released", round_id=attempt.round_id, closed=closed)

    @contextmanager
    def hold(self, round_id: int) -> Iterator[Optional[CloseAttempt]]:
        """
        Context manager form of try_acquire/release.

        Yields None when the token could not be taken. Set
        ``attempt.confirmed_closed`` inside the block to record a
        confirmed close. The token is released on every exit path,
        exceptions included.
        """
        attempt = self.try_acquire(round_id)
        if attempt is None:
            yield None
            return
        try:
            yield attempt
        finally:
            self.release(attempt, closed=attempt.confirmed_closed)
