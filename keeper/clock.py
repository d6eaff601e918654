"""Clocks. Decisions compare whole unix seconds against contract timestamps."""

import time
from datetime import datetime, timezone


class SystemClock:
    """Wall clock."""

    def now(self) -> int:
        """Current unix time in whole seconds."""
        return int(time.time())

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """
    Manually advanced clock for deterministic tests and replays.

    Usage:
        clock = FixedClock(1_700_000_000)
        clock.advance(61)
    """

    def __init__(self, now: int):
        self._now = int(now)

    def now(self) -> int:
        return self._now

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self._now, tz=timezone.utc)

    def set(self, now: int) -> None:
        self._now = int(now)

    def advance(self, seconds: int) -> None:
        self._now += int(seconds)


def isoformat(moment: datetime) -> str:
    """ISO-8601 UTC timestamp with a trailing Z."""
    return moment.astimezone(timezone.utc).replace(tzinfo=None).isoformat() + "Z"
