"""
Keeper configuration.

Everything comes from the environment (a .env file is loaded by the
entry point). The keeper must not start without an RPC endpoint, a
signing key and the lottery contract address.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from keeper.errors import ConfigurationError

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class KeeperConfig:
    """
    Runtime settings for the keeper process. FROZEN after load.

    The private key is excluded from repr so it never ends up in logs.
    """

    # ==========================================================================
    # CHAIN ACCESS (required)
    # ==========================================================================

    rpc_url: str
    private_key: str = field(repr=False)
    contract_address: str

    # Read from the node when not set
    chain_id: Optional[int] = None

    # ==========================================================================
    # SERVICE
    # ==========================================================================

    port: int = 3001

    # ==========================================================================
    # TIMING
    # ==========================================================================

    # One check per minute
    check_interval_seconds: int = 60

    # Upper bound on any single RPC request
    rpc_timeout_seconds: float = 10.0

    # How long to wait for endRound() to be mined before giving up this tick
    confirmation_timeout_seconds: float = 120.0
    confirmation_poll_seconds: float = 2.0

    # ==========================================================================
    # WALLET
    # ==========================================================================

    # Warn below 0.001 ETH of gas money
    min_balance_wei: int = 10**15

    # Prize pool is denominated in USDC
    prize_token_decimals: int = 6

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "KeeperConfig":
        """
        Build config from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Raises:
            ConfigurationError: naming every missing or malformed variable
        """
        env = os.environ if environ is None else environ
        problems: list[str] = []

        def required(name: str) -> str:
            value = (env.get(name) or "").strip()
            if not value:
                problems.append(f"{name} is not set")
            return value

        def number(name: str, default, cast, allow_zero: bool = False):
            raw = (env.get(name) or "").strip()
            if not raw:
                return default
            try:
                value = cast(raw)
            except ValueError:
                problems.append(f"{name} must be a number, got {raw!r}")
                return default
            if value < 0 or (value == 0 and not allow_zero):
                problems.append(f"{name} must be positive")
            return value

        rpc_url = required("RPC_URL")
        private_key = required("PRIVATE_KEY")
        contract_address = required("LOTTERY_CONTRACT_ADDRESS")

        if rpc_url and not rpc_url.startswith(("http://", "https://")):
            problems.append("RPC_URL must be an http(s) URL")
        if private_key and not _PRIVATE_KEY_RE.match(private_key):
            problems.append("PRIVATE_KEY must be a 32-byte hex string")
        if contract_address and not _ADDRESS_RE.match(contract_address):
            problems.append("LOTTERY_CONTRACT_ADDRESS must be a 20-byte hex address")

        chain_id = number("CHAIN_ID", None, int)
        port = number("PORT", 3001, int)
        interval = number("CHECK_INTERVAL_SECONDS", 60, int)
        rpc_timeout = number("RPC_TIMEOUT_SECONDS", 10.0, float)
        confirm_timeout = number("CONFIRMATION_TIMEOUT_SECONDS", 120.0, float)
        confirm_poll = number("CONFIRMATION_POLL_SECONDS", 2.0, float)
        min_balance = number("MIN_BALANCE_WEI", 10**15, int, allow_zero=True)
        decimals = number("PRIZE_TOKEN_DECIMALS", 6, int, allow_zero=True)

        if problems:
            raise ConfigurationError("; ".join(problems))

        return cls(
            rpc_url=rpc_url,
            private_key=private_key,
            contract_address=contract_address,
            chain_id=chain_id,
            port=port,
            check_interval_seconds=interval,
            rpc_timeout_seconds=rpc_timeout,
            confirmation_timeout_seconds=confirm_timeout,
            confirmation_poll_seconds=confirm_poll,
            min_balance_wei=min_balance,
            prize_token_decimals=decimals,
        )
