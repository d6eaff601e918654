#!/usr/bin/env python3
"""
Entry point for the lottery round keeper.

Usage:
    python scripts/run_keeper.py

    # Or in background:
    nohup python scripts/run_keeper.py > logs/keeper.log 2>&1 &

Required environment (or .env):
    RPC_URL, PRIVATE_KEY, LOTTERY_CONTRACT_ADDRESS

The keeper checks the current round every interval, closes expired
rounds that sold tickets, and serves /health and /trigger-end-round.
Exits 0 on SIGINT/SIGTERM, 1 if configuration is missing.
"""

import argparse
import dataclasses
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import structlog
import uvicorn
from dotenv import load_dotenv

from api.main import create_app
from keeper.config import KeeperConfig
from keeper.context import KeeperContext
from keeper.errors import ConfigurationError


def setup_logging(log_level: str = "INFO", log_file: str = None) -> None:
    """Configure structured logging for the keeper."""
    import logging

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=handlers,
    )


def main():
    parser = argparse.ArgumentParser(
        description="Lottery Round Keeper",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with settings from .env
    python scripts/run_keeper.py

    # Check every 30 seconds on port 8080
    python scripts/run_keeper.py --interval 30 --port 8080
        """,
    )

    parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Interface for the HTTP service",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="HTTP port (overrides PORT)",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Check interval in seconds (overrides CHECK_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Optional path to a log file",
    )

    args = parser.parse_args()

    # Load environment variables
    load_dotenv()

    setup_logging(args.log_level, args.log_file)
    logger = structlog.get_logger(__name__)

    try:
        config = KeeperConfig.from_env()
        overrides = {}
        if args.port is not None:
            overrides["port"] = args.port
        if args.interval is not None:
            overrides["check_interval_seconds"] = args.interval
        if overrides:
            config = dataclasses.replace(config, **overrides)

        context = KeeperContext.from_config(config)
    except ConfigurationError as e:
        logger.error("configuration_error", error=str(e))
        sys.exit(1)

    logger.info(
        "starting_keeper",
        contract=config.contract_address,
        wallet=context.wallet_address,
        port=config.port,
        interval=config.check_interval_seconds,
    )

    app = create_app(context=context)

    # uvicorn handles SIGINT/SIGTERM; the app lifespan stops the scheduler
    uvicorn.run(app, host=args.host, port=config.port, log_config=None)

    logger.info("keeper_stopped")


if __name__ == "__main__":
    main()
