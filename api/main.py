#!/usr/bin/env python3
"""
FastAPI service for the Lottery Round Keeper.

Provides:
- GET  /health             wallet, balance and current round (500 on error)
- POST /trigger-end-round  one manual keeper cycle

The scheduler runs on a background thread for the lifetime of the app.
Handlers are plain (sync) functions so blocking chain reads run on
FastAPI's worker threads, never on the event loop.

Run with `python -m api.main` or scripts/run_keeper.py; both exit 1
on bad configuration.
"""

import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
import structlog

from keeper.clock import isoformat
from keeper.config import KeeperConfig
from keeper.context import KeeperContext
from keeper.errors import ConfigurationError
from keeper.scheduler import Scheduler

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_scheduler(request: Request) -> Scheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Keeper not initialized")
    return scheduler


# ============================================================================
# REST Endpoints
# ============================================================================

@router.get("/health")
def health_check(scheduler: Scheduler = Depends(get_scheduler)):
    """Wallet balance and current round, read fresh from the chain."""
    context = scheduler.context
    healthy, payload = context.health.report(chain=context.chain)
    payload["scheduler"] = scheduler.state.value

    if not healthy:
        return JSONResponse(status_code=500, content=payload)
    return payload


@router.post("/trigger-end-round")
def trigger_end_round(scheduler: Scheduler = Depends(get_scheduler)):
    """
    Run one keeper cycle now.

    Shares the single-flight guard with the timer, so calling this while
    a close is in flight reports "in progress" instead of sending a
    second transaction.
    """
    result = scheduler.trigger()

    return {
        "success": result.success,
        "message": result.message,
        "outcome": result.outcome,
        "roundId": result.round_id,
        "timestamp": isoformat(result.finished_at),
    }


def create_app(
    context: Optional[KeeperContext] = None,
    scheduler: Optional[Scheduler] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Build the keeper app.

    Args:
        context: Pre-built keeper context (built from the environment if omitted)
        scheduler: Pre-built scheduler (built from context if omitted)
        start_scheduler: Start the periodic loop with the app

    Raises:
        ConfigurationError: at startup, if the environment is incomplete
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for FastAPI app."""
        logger.info("api_starting")

        keeper = scheduler
        if keeper is None:
            ctx = context or KeeperContext.from_config(KeeperConfig.from_env())
            keeper = Scheduler(ctx)
        app.state.scheduler = keeper

        if start_scheduler:
            keeper.start()

        logger.info("api_ready", wallet=keeper.context.wallet_address)

        yield

        # Shutdown
        logger.info("api_shutting_down")
        config = keeper.context.config
        keeper.stop(
            timeout=config.rpc_timeout_seconds + config.confirmation_poll_seconds + 5
        )
        logger.info("api_shutdown_complete")

    app = FastAPI(
        title="Lottery Round Keeper",
        description="Closes expired lottery rounds exactly once",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


app = create_app()


def run(host: str = "0.0.0.0", port: Optional[int] = None) -> None:
    """
    Serve the keeper, checking configuration before uvicorn starts.

    Exits with status 1 on missing or invalid configuration. Serving
    `api.main:app` directly defers that check to the lifespan, where
    uvicorn turns it into its own startup-failure exit code.
    """
    import uvicorn

    try:
        context = KeeperContext.from_config(KeeperConfig.from_env())
    except ConfigurationError as e:
        logger.error("configuration_error", error=str(e))
        sys.exit(1)

    uvicorn.run(
        create_app(context=context),
        host=host,
        port=port or context.config.port,
        log_level="info",
    )


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    run()
