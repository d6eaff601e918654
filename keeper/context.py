"""
Keeper context.

Built once at startup and handed to every component instead of
module-level client/wallet/contract globals.
"""

import threading
from dataclasses import dataclass, field
from typing import Optional

from keeper.chain_client import LotteryChainClient
from keeper.clock import SystemClock
from keeper.config import KeeperConfig
from keeper.guard import SingleFlightGuard
from keeper.health import HealthReporter


@dataclass
class KeeperContext:
    """
    Shared handles for one keeper process.

    Attributes:
        config: Frozen runtime settings
        chain: Chain client (or a fake with the same methods)
        clock: Provides now() and utcnow()
        guard: The single-flight token for round closes
        health: Last observed state for /health
        stop_event: Set when the process is shutting down
    """
    config: KeeperConfig
    chain: object
    clock: object = field(default_factory=SystemClock)
    guard: SingleFlightGuard = field(default_factory=SingleFlightGuard)
    health: Optional[HealthReporter] = None
    stop_event: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self):
        if self.health is None:
            self.health = HealthReporter(
                wallet_address=self.chain.address,
                clock=self.clock,
                prize_token_decimals=self.config.prize_token_decimals,
            )

    @property
    def wallet_address(self) -> str:
        return self.chain.address

    @classmethod
    def from_config(cls, config: KeeperConfig, clock=None) -> "KeeperContext":
        """Wire up a production context (real web3 client)."""
        chain = LotteryChainClient(config)
        return cls(config=config, chain=chain, clock=clock or SystemClock())
