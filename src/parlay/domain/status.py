"""Status vocabularies and transition tables.

Every status change made by a handler goes through ensure_transition(), so
an illegal move (e.g. SETTLED back to READY after a redelivered event) is
rejected at the handler boundary instead of being written.
"""

from enum import Enum
from typing import Mapping, TypeVar

from parlay.core.retry import InvalidTransitionError


class Side(str, Enum):
    """Side of a binary market a leg bets on."""

    YES = "YES"
    NO = "NO"


class Outcome(str, Enum):
    """Resolved outcome of a market."""

    YES = "YES"
    NO = "NO"
    VOID = "VOID"


class ChainStatus(str, Enum):
    ACTIVE = "ACTIVE"
    WON = "WON"
    LOST = "LOST"


class PositionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    WON = "WON"
    LOST = "LOST"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_POSITION_STATUSES


class MarketStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_MARKET_STATUSES


class BetStatus(str, Enum):
    # Lifecycle
    QUEUED = "QUEUED"
    READY = "READY"
    EXECUTING = "EXECUTING"
    PLACED = "PLACED"
    FILLED = "FILLED"
    SETTLED = "SETTLED"
    # Cleanup
    CANCELLED = "CANCELLED"
    VOIDED = "VOIDED"
    # Execution failures
    UNFILLED = "UNFILLED"
    NO_CREDENTIALS = "NO_CREDENTIALS"
    INSUFFICIENT_LIQUIDITY = "INSUFFICIENT_LIQUIDITY"
    MARKET_CLOSED = "MARKET_CLOSED"
    MARKET_CLOSING_SOON = "MARKET_CLOSING_SOON"
    ORDER_REJECTED = "ORDER_REJECTED"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    UNKNOWN_FAILURE = "UNKNOWN_FAILURE"

    @property
    def is_terminal(self) -> bool:
        return not BET_TRANSITIONS[self]

    @property
    def is_failure(self) -> bool:
        return self in BET_FAILURE_STATUSES


TERMINAL_POSITION_STATUSES = frozenset({
    PositionStatus.WON,
    PositionStatus.LOST,
    PositionStatus.CANCELLED,
    PositionStatus.FAILED,
})

# Positions in these statuses hand their stake back out of the chain total
RELEASING_POSITION_STATUSES = frozenset({
    PositionStatus.CANCELLED,
    PositionStatus.FAILED,
})

TERMINAL_MARKET_STATUSES = frozenset({
    MarketStatus.RESOLVED,
    MarketStatus.CANCELLED,
})

BET_FAILURE_STATUSES = frozenset({
    BetStatus.UNFILLED,
    BetStatus.NO_CREDENTIALS,
    BetStatus.INSUFFICIENT_LIQUIDITY,
    BetStatus.MARKET_CLOSED,
    BetStatus.MARKET_CLOSING_SOON,
    BetStatus.ORDER_REJECTED,
    BetStatus.EXECUTION_ERROR,
    BetStatus.UNKNOWN_FAILURE,
})

# At most one bet per position may sit in one of these
ACTIVE_BET_STATUSES = frozenset({
    BetStatus.READY,
    BetStatus.EXECUTING,
    BetStatus.PLACED,
    BetStatus.FILLED,
})

# Bets with a possibly-live order on the exchange
IN_FLIGHT_BET_STATUSES = frozenset({
    BetStatus.EXECUTING,
    BetStatus.PLACED,
})

_EXECUTION_OUTCOMES = frozenset({
    BetStatus.PLACED,
    BetStatus.FILLED,
    BetStatus.CANCELLED,
    BetStatus.VOIDED,
}) | BET_FAILURE_STATUSES

BET_TRANSITIONS: Mapping[BetStatus, frozenset] = {
    BetStatus.QUEUED: frozenset({
        BetStatus.READY,
        BetStatus.VOIDED,
        BetStatus.MARKET_CLOSED,
        BetStatus.CANCELLED,
    }),
    BetStatus.READY: frozenset({
        BetStatus.EXECUTING,
        BetStatus.VOIDED,
        BetStatus.CANCELLED,
    }),
    BetStatus.EXECUTING: _EXECUTION_OUTCOMES,
    BetStatus.PLACED: frozenset({
        BetStatus.FILLED,
        BetStatus.UNFILLED,
        BetStatus.EXECUTION_ERROR,
        BetStatus.CANCELLED,
        BetStatus.VOIDED,
    }),
    BetStatus.FILLED: frozenset({
        BetStatus.SETTLED,
        BetStatus.VOIDED,
    }),
    BetStatus.SETTLED: frozenset(),
    BetStatus.CANCELLED: frozenset(),
    BetStatus.VOIDED: frozenset(),
    BetStatus.UNFILLED: frozenset(),
    BetStatus.NO_CREDENTIALS: frozenset(),
    BetStatus.INSUFFICIENT_LIQUIDITY: frozenset(),
    BetStatus.MARKET_CLOSED: frozenset(),
    BetStatus.MARKET_CLOSING_SOON: frozenset(),
    BetStatus.ORDER_REJECTED: frozenset(),
    BetStatus.EXECUTION_ERROR: frozenset(),
    BetStatus.UNKNOWN_FAILURE: frozenset(),
}

POSITION_TRANSITIONS: Mapping[PositionStatus, frozenset] = {
    PositionStatus.PENDING: frozenset({
        PositionStatus.ACTIVE,
        PositionStatus.CANCELLED,
        PositionStatus.FAILED,
    }),
    PositionStatus.ACTIVE: frozenset({
        PositionStatus.WON,
        PositionStatus.LOST,
        PositionStatus.CANCELLED,
        PositionStatus.FAILED,
    }),
    PositionStatus.WON: frozenset(),
    PositionStatus.LOST: frozenset(),
    PositionStatus.CANCELLED: frozenset(),
    PositionStatus.FAILED: frozenset(),
}

MARKET_TRANSITIONS: Mapping[MarketStatus, frozenset] = {
    MarketStatus.ACTIVE: frozenset({
        MarketStatus.CLOSED,
        MarketStatus.RESOLVED,
        MarketStatus.CANCELLED,
    }),
    # A closed market may reopen if trading was only paused
    MarketStatus.CLOSED: frozenset({
        MarketStatus.ACTIVE,
        MarketStatus.RESOLVED,
        MarketStatus.CANCELLED,
    }),
    MarketStatus.RESOLVED: frozenset(),
    MarketStatus.CANCELLED: frozenset(),
}

CHAIN_TRANSITIONS: Mapping[ChainStatus, frozenset] = {
    ChainStatus.ACTIVE: frozenset({ChainStatus.WON, ChainStatus.LOST}),
    ChainStatus.WON: frozenset(),
    ChainStatus.LOST: frozenset(),
}

S = TypeVar("S", bound=Enum)


def can_transition(table: Mapping[S, frozenset], current: S, target: S) -> bool:
    return target in table[current]


def ensure_transition(entity: str, table: Mapping[S, frozenset], current: S, target: S) -> S:
    """Return target if current -> target is allowed.

    Raises:
        InvalidTransitionError: If the table does not allow the move.
    """
    if target not in table[current]:
        raise InvalidTransitionError(entity, current.value, target.value)
    return target


def ensure_bet_transition(current: BetStatus, target: BetStatus) -> BetStatus:
    return ensure_transition("Bet", BET_TRANSITIONS, current, target)


def ensure_position_transition(current: PositionStatus, target: PositionStatus) -> PositionStatus:
    return ensure_transition("Position", POSITION_TRANSITIONS, current, target)


def ensure_market_transition(current: MarketStatus, target: MarketStatus) -> MarketStatus:
    return ensure_transition("Market", MARKET_TRANSITIONS, current, target)


def effective_outcome(status: MarketStatus, outcome: "Outcome | None") -> "Outcome | None":
    """Outcome the settlement engine should act on.

    A cancelled market always settles as VOID, whatever it reported.
    """
    if status == MarketStatus.CANCELLED:
        return Outcome.VOID
    if status == MarketStatus.RESOLVED:
        return outcome
    return None
