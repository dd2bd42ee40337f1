"""Lifecycle event payloads published to the EventBus.

Handlers publish these after their record writes commit. Consumers
(notifiers, dashboards) must treat the records as the source of truth; an
event is only a hint that something changed.

Event Channel Naming Convention:
- bet.filled / bet.failed / bet.settled
- position.won / position.lost / position.failed / position.cancelled
- fee.collected / fee.failed
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from parlay.domain.models import Bet, Position


def _now_iso(timestamp: Optional[datetime] = None) -> str:
    return (timestamp or datetime.now(timezone.utc)).isoformat()


@dataclass(frozen=True)
class BetEvent:
    """Bet lifecycle event payload.

    Published to: bet.filled, bet.failed, bet.settled

    Attributes:
        bet_id: Bet identifier.
        position_id: Owning position.
        sequence: Leg number within the chain (1-based).
        condition_id: Market condition id.
        status: Bet status after the change.
        timestamp: When the change was applied (ISO format).
        shares_acquired: Filled shares, if any.
        actual_payout: Settled payout, if settled.
        error: Failure message for failed bets.
    """

    bet_id: str
    position_id: str
    sequence: int
    condition_id: str
    status: str
    timestamp: str
    shares_acquired: Optional[str] = None
    actual_payout: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_bet(cls, bet: Bet, timestamp: Optional[datetime] = None) -> "BetEvent":
        return cls(
            bet_id=bet.bet_id,
            position_id=bet.position_id,
            sequence=bet.sequence,
            condition_id=bet.condition_id,
            status=bet.status.value,
            timestamp=_now_iso(timestamp),
            shares_acquired=bet.shares_acquired,
            actual_payout=bet.actual_payout,
            error=bet.error_message,
        )


@dataclass(frozen=True)
class PositionEvent:
    """Position terminal-status event payload.

    Published to: position.{won,lost,failed,cancelled}
    """

    position_id: str
    chain_id: str
    wallet_address: str
    status: str
    current_value: str
    completed_legs: int
    total_legs: int
    timestamp: str
    reason: Optional[str] = None

    @classmethod
    def from_position(
        cls, position: Position, timestamp: Optional[datetime] = None
    ) -> "PositionEvent":
        return cls(
            position_id=position.position_id,
            chain_id=position.chain_id,
            wallet_address=position.wallet_address,
            status=position.status.value,
            current_value=position.current_value,
            completed_legs=position.completed_legs,
            total_legs=position.total_legs,
            timestamp=_now_iso(timestamp),
            reason=position.failure_reason,
        )


@dataclass(frozen=True)
class FeeEvent:
    """Platform fee collection event payload.

    Published to: fee.collected, fee.failed
    """

    position_id: str
    wallet_address: str
    fee_amount: str
    success: bool
    timestamp: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None
