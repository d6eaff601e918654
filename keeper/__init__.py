"""
Lottery Round Keeper.

A scheduled process that watches the lottery contract and closes each
expired round exactly once:
- Reads the current round from the contract every interval
- Decides whether it must be closed (expired, unclosed, has tickets)
- Submits endRound() behind a single-flight guard
- Reports wallet and round health over HTTP

The keeper holds no state across restarts. The contract is the only
source of truth.
"""

from keeper.config import KeeperConfig
from keeper.context import KeeperContext
from keeper.monitor import decide
from keeper.scheduler import Scheduler

__all__ = ["KeeperConfig", "KeeperContext", "Scheduler", "decide"]
