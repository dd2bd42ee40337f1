"""Guarded status writes shared by the settlement handlers.

Each write checks the transition table, then commits conditionally on the
status the caller read. Losing a race is not an error: another delivery or
handler already moved the record, so the caller skips it. A write that does
not land leaves the in-memory record as it was.
"""

from typing import Any, Optional

import structlog

from parlay.core.retry import ConditionFailedError
from parlay.domain.models import Bet, Position, utcnow
from parlay.domain.status import (
    BetStatus,
    PositionStatus,
    ensure_bet_transition,
    ensure_position_transition,
)
from parlay.services.record_store import RecordStore

log = structlog.get_logger()


def _apply(record: Any, fields: dict[str, Any]) -> dict[str, Any]:
    """Set fields on record; returns the values they replaced."""
    previous = {name: getattr(record, name) for name in fields}
    for name, value in fields.items():
        setattr(record, name, value)
    return previous


async def transition_bet(
    store: RecordStore,
    bet: Bet,
    target: BetStatus,
    **updates: Any,
) -> bool:
    """Move bet to target, applying field updates in the same write.

    Returns:
        False if the stored bet was no longer in bet.status.

    Raises:
        InvalidTransitionError: If bet.status -> target is not allowed.
    """
    current = bet.status
    ensure_bet_transition(current, target)
    previous = _apply(bet, {**updates, "status": target})
    try:
        await store.update_bet(bet, expected_status=current)
    except Exception as e:
        _apply(bet, previous)
        if not isinstance(e, ConditionFailedError):
            raise
        log.info(
            "bet_transition_lost_race",
            bet_id=bet.bet_id,
            expected=current.value,
            target=target.value,
        )
        return False
    return True


async def transition_position(
    store: RecordStore,
    position: Position,
    target: PositionStatus,
    **updates: Any,
) -> bool:
    """Move position to target; terminal targets also stamp completed_at.

    Returns:
        False if the stored position was no longer in position.status.

    Raises:
        InvalidTransitionError: If position.status -> target is not allowed.
    """
    current = position.status
    ensure_position_transition(current, target)
    fields = {**updates, "status": target}
    if target.is_terminal and position.completed_at is None:
        fields["completed_at"] = utcnow()
    previous = _apply(position, fields)
    try:
        await store.update_position(position, expected_status=current)
    except Exception as e:
        _apply(position, previous)
        if not isinstance(e, ConditionFailedError):
            raise
        log.info(
            "position_transition_lost_race",
            position_id=position.position_id,
            expected=current.value,
            target=target.value,
        )
        return False
    return True


async def fail_position(
    store: RecordStore,
    position_id: str,
    reason: str,
    **updates: Any,
) -> Optional[Position]:
    """Mark a position FAILED unless it already ended.

    Returns:
        The failed position, or None if it was missing or already terminal.
    """
    position = await store.get_position(position_id)
    if position is None:
        log.error("position_not_found", position_id=position_id)
        return None
    if position.status.is_terminal:
        log.info(
            "position_already_terminal",
            position_id=position_id,
            status=position.status.value,
        )
        return None

    if not await transition_position(
        store, position, PositionStatus.FAILED, failure_reason=reason, **updates
    ):
        return None
    log.warning("position_failed", position_id=position_id, reason=reason)
    return position
