"""Domain models - pure data structures and math with no I/O dependencies."""

from parlay.domain.events import BetEvent, FeeEvent, PositionEvent
from parlay.domain.models import (
    Bet,
    Chain,
    ChainLeg,
    ChangeEventName,
    ChangeRecord,
    Market,
    Position,
    RecordType,
    generate_chain_id,
    generate_position_id,
    make_bet_id,
)
from parlay.domain.status import (
    BetStatus,
    ChainStatus,
    MarketStatus,
    Outcome,
    PositionStatus,
    Side,
)

__all__ = [
    # Records
    "Chain",
    "ChainLeg",
    "Position",
    "Bet",
    "Market",
    "ChangeRecord",
    "ChangeEventName",
    "RecordType",
    "generate_chain_id",
    "generate_position_id",
    "make_bet_id",
    # Status vocabularies
    "BetStatus",
    "ChainStatus",
    "MarketStatus",
    "Outcome",
    "PositionStatus",
    "Side",
    # Event payloads
    "BetEvent",
    "PositionEvent",
    "FeeEvent",
]
