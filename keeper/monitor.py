"""
Round monitor.

Pure decision rule: given a round snapshot and the current time, what
should the keeper do? No I/O and no hidden state, so calling it twice
with the same inputs always gives the same answer.

Order of checks matters:
1. Already ended      -> skip
2. Still running      -> skip (ticket count is irrelevant)
3. Expired, 0 tickets -> skip (closing would burn gas for nobody;
                         the next purchase starts a fresh round)
4. Expired, tickets   -> close
"""

from keeper.models import Action, Decision, RoundSnapshot


def validate_snapshot(snapshot: RoundSnapshot) -> tuple[bool, str]:
    """Check a snapshot is internally consistent."""
    if snapshot.ticket_count < 0:
        return False, f"negative ticket count {snapshot.ticket_count}"
    if snapshot.end_time < snapshot.start_time:
        return False, f"end_time {snapshot.end_time} precedes start_time {snapshot.start_time}"
    return True, ""


def decide(snapshot: RoundSnapshot, now: int) -> Decision:
    """
    Map a round snapshot and the current unix time to an action.

    Args:
        snapshot: Fresh read of the current round
        now: Current unix time in seconds

    Returns:
        Decision describing the action and why
    """
    round_id = snapshot.round_id

    ok, problem = validate_snapshot(snapshot)
    if not ok:
        return Decision.error("invalid_snapshot", reason=problem, round_id=round_id)

    if snapshot.ended:
        return Decision(
            Action.SKIP_ENDED,
            round_id=round_id,
            reason=f"Round #{round_id} already ended",
        )

    if now < snapshot.end_time:
        remaining = snapshot.end_time - now
        return Decision(
            Action.SKIP_ACTIVE,
            round_id=round_id,
            reason=f"Round #{round_id} still active - {remaining // 60} minutes remaining",
            seconds_remaining=remaining,
        )

    if snapshot.ticket_count == 0:
        return Decision(
            Action.SKIP_EMPTY_EXPIRED,
            round_id=round_id,
            reason=f"Round #{round_id} expired with no tickets - skipping",
            seconds_remaining=0,
        )

    return Decision(
        Action.CLOSE_ROUND,
        round_id=round_id,
        reason=f"Round #{round_id} expired with {snapshot.ticket_count} tickets",
        seconds_remaining=0,
    )
