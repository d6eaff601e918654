"""
Round keeper scheduler.

Drives the monitor on a fixed interval and on demand. Every cycle,
timer or manual, goes through run_cycle():

IDLE → TICKING → IDLE                       (nothing to do / read failed)
             ↓
        AWAITING_GUARD → IDLE               (another close in flight)
             ↓
          CLOSING → IDLE                    (settled, failed or timed out)

Nothing raised inside a cycle escapes run_cycle(); failures are logged
and recorded for /health, and the next tick starts from a fresh read.
"""

import threading
from enum import Enum
from typing import Optional

import structlog

from keeper.errors import ChainReadError
from keeper.models import Action, CloseOutcome, CloseResult, Decision, TickResult
from keeper.monitor import decide
from keeper.submitter import TransactionSubmitter

logger = structlog.get_logger(__name__)


class CycleState(Enum):
    """Scheduler cycle states."""
    IDLE = "idle"
    TICKING = "ticking"
    AWAITING_GUARD = "awaiting_guard"
    CLOSING = "closing"


_VALID_TRANSITIONS = {
    CycleState.IDLE: {CycleState.TICKING},
    CycleState.TICKING: {CycleState.IDLE, CycleState.AWAITING_GUARD},
    CycleState.AWAITING_GUARD: {CycleState.IDLE, CycleState.CLOSING},
    CycleState.CLOSING: {CycleState.IDLE},
}

_STATE_RANK = {
    CycleState.IDLE: 0,
    CycleState.TICKING: 1,
    CycleState.AWAITING_GUARD: 2,
    CycleState.CLOSING: 3,
}

# Close outcomes that count as a healthy tick
_OK_OUTCOMES = (
    CloseOutcome.CLOSED,
    CloseOutcome.ALREADY_CLOSED,
    CloseOutcome.IN_PROGRESS,
)


class TickCycle:
    """State machine for one pass through the scheduler."""

    def __init__(self, trigger: str):
        self.trigger = trigger
        self.state = CycleState.IDLE
        self.history: list[CycleState] = [CycleState.IDLE]

    def advance(self, to: CycleState) -> bool:
        """Move to a new state. Invalid transitions are logged and refused."""
        if to not in _VALID_TRANSITIONS[self.state]:
            logger.warning(
                "invalid_cycle_transition",
                trigger=self.trigger,
                from_state=self.state.value,
                to_state=to.value,
            )
            return False
        self.state = to
        self.history.append(to)
        return True


class Scheduler:
    """
    Periodic and on-demand driver for the round keeper.

    Both entry points share one submitter and therefore one
    single-flight guard, so a manual trigger landing mid-close is told
    "in progress" instead of racing the timer.
    """

    def __init__(
        self,
        context,
        submitter: Optional[TransactionSubmitter] = None,
        interval_seconds: Optional[int] = None,
    ):
        """
        Initialize scheduler.

        Args:
            context: KeeperContext
            submitter: Transaction submitter (built from context if omitted)
            interval_seconds: Tick interval (defaults to config)
        """
        self.context = context
        self.chain = context.chain
        self.clock = context.clock
        self.health = context.health
        self.stop_event = context.stop_event
        self.submitter = submitter or TransactionSubmitter(context)
        self.interval = interval_seconds or context.config.check_interval_seconds

        self._cycles_lock = threading.Lock()
        self._active: list[TickCycle] = []
        self._thread: Optional[threading.Thread] = None

        logger.info("scheduler_initialized", interval_seconds=self.interval)

    @property
    def state(self) -> CycleState:
        """Furthest state reached by any in-flight cycle."""
        with self._cycles_lock:
            if not self._active:
                return CycleState.IDLE
            return max((c.state for c in self._active), key=_STATE_RANK.__getitem__)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ==========================================================================
    # ENTRY POINTS
    # ==========================================================================

    def trigger(self) -> TickResult:
        """Run one manual cycle (POST /trigger-end-round)."""
        logger.info("manual_trigger_requested")
        return self.run_cycle("manual")

    def run_cycle(self, trigger: str = "scheduled") -> TickResult:
        """
        Read, decide and (if needed) close. Never raises.

        Args:
            trigger: "scheduled", "manual" or "startup" (for logs)
        """
        cycle = TickCycle(trigger)
        started_at = self.clock.utcnow()
        decision: Optional[Decision] = None
        close: Optional[CloseResult] = None
        error: Optional[str] = None

        with self._cycles_lock:
            self._active.append(cycle)
        try:
            decision, close, error = self._run(cycle)
        except Exception as e:
            logger.exception("tick_failed", trigger=trigger, error=str(e))
            error = f"Unexpected error: {e}"
            self.health.record_error(error)
        finally:
            if cycle.state != CycleState.IDLE:
                cycle.advance(CycleState.IDLE)
            with self._cycles_lock:
                self._active.remove(cycle)

        return TickResult(
            trigger=trigger,
            started_at=started_at,
            finished_at=self.clock.utcnow(),
            decision=decision,
            close=close,
            error=error,
        )

    def run_forever(self) -> None:
        """
        Main loop: balance check, immediate first tick, then one tick
        per interval until the stop event is set.
        """
        logger.info("scheduler_starting", interval_seconds=self.interval)

        self.submitter.check_balance()
        self.run_cycle("startup")

        while not self.stop_event.wait(self.interval):
            self.run_cycle("scheduled")

        logger.info("scheduler_stopped")

    def start(self) -> None:
        """Run the loop on a background thread."""
        if self.is_running:
            return
        self._thread = threading.Thread(
            target=self.run_forever,
            name="round-keeper-scheduler",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal shutdown and wait for the loop to exit.

        An in-flight confirmation wait notices the stop event and
        aborts; the guard is released on its way out.
        """
        logger.info("scheduler_stop_requested")
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("scheduler_thread_still_running", timeout=timeout)

    # ==========================================================================
    # INTERNALS
    # ==========================================================================

    def _run(self, cycle: TickCycle):
        cycle.advance(CycleState.TICKING)
        logger.debug("tick_started", trigger=cycle.trigger)

        try:
            snapshot = self.chain.read_round_snapshot()
        except ChainReadError as e:
            logger.error("round_read_failed", trigger=cycle.trigger, error=str(e))
            self.health.record_error(str(e))
            return Decision.error("chain_read", reason=str(e)), None, str(e)

        self.health.record_round(snapshot)
        decision = decide(snapshot, self.clock.now())

        logger.info(
            "round_evaluated",
            trigger=cycle.trigger,
            round_id=snapshot.round_id,
            tickets=snapshot.ticket_count,
            ended=snapshot.ended,
            action=decision.action.value,
            reason=decision.reason,
        )

        if decision.action == Action.ERROR:
            logger.error(
                "round_snapshot_invalid",
                round_id=snapshot.round_id,
                kind=decision.error_kind,
                reason=decision.reason,
            )
            self.health.record_error(decision.reason)
            return decision, None, decision.reason

        if not decision.should_close:
            self.health.record_tick()
            return decision, None, None

        cycle.advance(CycleState.AWAITING_GUARD)
        close = self.submitter.close_round(
            snapshot,
            on_acquired=lambda attempt: cycle.advance(CycleState.CLOSING),
        )
        self._record_close(close)
        return decision, close, None

    def _record_close(self, close: CloseResult) -> None:
        if close.outcome in (CloseOutcome.CLOSED, CloseOutcome.ALREADY_CLOSED):
            try:
                self.health.record_round(self.chain.read_round_snapshot())
            except ChainReadError as e:
                logger.warning("post_close_read_failed", round_id=close.round_id, error=str(e))

        if close.outcome in _OK_OUTCOMES:
            self.health.record_tick()
            return

        self.health.record_error(close.message)
        if close.is_transient:
            logger.warning(
                "close_retry_next_tick",
                round_id=close.round_id,
                outcome=close.outcome.value,
                interval_seconds=self.interval,
            )
        else:
            logger.error(
                "close_needs_operator",
                round_id=close.round_id,
                outcome=close.outcome.value,
                message=close.message,
            )
