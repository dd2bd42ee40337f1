"""Chain, Position, Bet and Market records.

Money fields are decimal strings; arithmetic happens in parlay.domain.money.
Each record serializes to a flat JSON-safe dict, which is also the image
format carried by the change feed.
"""

import hashlib
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from parlay.domain.status import (
    BetStatus,
    ChainStatus,
    MarketStatus,
    Outcome,
    PositionStatus,
    Side,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


class RecordMixin:
    """to_dict()/from_dict() for the record dataclasses."""

    _enum_fields: dict[str, type] = {}
    _datetime_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        kwargs = {k: v for k, v in data.items() if k in known}
        for name, enum_type in cls._enum_fields.items():
            if kwargs.get(name) is not None:
                kwargs[name] = enum_type(kwargs[name])
        for name in cls._datetime_fields:
            if name in kwargs:
                kwargs[name] = _parse_dt(kwargs[name])
        return cls(**kwargs)


@dataclass
class ChainLeg(RecordMixin):
    """One leg of a chain definition."""

    sequence: int
    condition_id: str
    token_id: str
    side: Side
    question: str = ""
    end_date: Optional[datetime] = None

    _enum_fields = {"side": Side}
    _datetime_fields = ("end_date",)

    @property
    def key(self) -> str:
        return f"{self.condition_id}:{self.side.value}"


def generate_chain_id(legs: list[ChainLeg]) -> str:
    """Deterministic id for an ordered leg sequence.

    Identical (condition, side) sequences always map to the same chain.
    """
    material = "|".join(leg.key for leg in sorted(legs, key=lambda l: l.sequence))
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"chain_{digest[:16]}"


def generate_position_id() -> str:
    return f"pos_{uuid.uuid4().hex}"


def make_bet_id(position_id: str, sequence: int) -> str:
    return f"{position_id}-{sequence:02d}"


@dataclass
class Chain(RecordMixin):
    """Immutable leg sequence shared by every participant."""

    chain_id: str
    legs: list[ChainLeg]
    total_value: str = "0.000000"
    status: ChainStatus = ChainStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    _enum_fields = {"status": ChainStatus}
    _datetime_fields = ("created_at", "updated_at")

    @property
    def leg_count(self) -> int:
        return len(self.legs)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Chain":
        chain = super().from_dict(data)
        chain.legs = [
            leg if isinstance(leg, ChainLeg) else ChainLeg.from_dict(leg)
            for leg in chain.legs
        ]
        return chain


@dataclass
class Position(RecordMixin):
    """One user's stake and progress against a chain."""

    position_id: str
    chain_id: str
    wallet_address: str
    initial_stake: str
    current_value: str
    total_legs: int
    status: PositionStatus = PositionStatus.PENDING
    completed_legs: int = 0
    won_legs: int = 0
    skipped_legs: int = 0
    current_leg_sequence: int = 1
    failure_reason: Optional[str] = None
    platform_fee: Optional[str] = None
    fee_tx_hash: Optional[str] = None
    fee_collection_failed: bool = False
    fee_collection_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    _enum_fields = {"status": PositionStatus}
    _datetime_fields = ("created_at", "updated_at", "completed_at")


@dataclass
class Bet(RecordMixin):
    """One leg of one position."""

    bet_id: str
    position_id: str
    chain_id: str
    wallet_address: str
    sequence: int
    condition_id: str
    token_id: str
    side: Side
    target_price: str
    stake: str
    potential_payout: str
    status: BetStatus = BetStatus.QUEUED
    market_question: str = ""
    order_id: Optional[str] = None
    actual_stake: Optional[str] = None
    fill_price: Optional[str] = None
    shares_acquired: Optional[str] = None
    fill_percentage: Optional[str] = None
    price_impact: Optional[str] = None
    fill_block_number: Optional[int] = None
    outcome: Optional[Outcome] = None
    won: Optional[bool] = None
    actual_payout: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    executed_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    _enum_fields = {"side": Side, "status": BetStatus, "outcome": Outcome}
    _datetime_fields = ("created_at", "updated_at", "executed_at", "filled_at", "settled_at")


@dataclass
class Market(RecordMixin):
    """Cached lifecycle snapshot of one market (resolution truth)."""

    condition_id: str
    status: MarketStatus = MarketStatus.ACTIVE
    question: str = ""
    outcome: Optional[Outcome] = None
    end_date: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    _enum_fields = {"status": MarketStatus, "outcome": Outcome}
    _datetime_fields = ("end_date", "updated_at")

    def __post_init__(self) -> None:
        # CANCELLED always carries VOID; outcome only exists once terminal
        if self.status == MarketStatus.CANCELLED:
            self.outcome = Outcome.VOID
        elif self.status != MarketStatus.RESOLVED:
            self.outcome = None


class RecordType(str, Enum):
    CHAIN = "chain"
    POSITION = "position"
    BET = "bet"
    MARKET = "market"


class ChangeEventName(str, Enum):
    INSERT = "INSERT"
    MODIFY = "MODIFY"


RECORD_CLASSES: dict[RecordType, type] = {
    RecordType.CHAIN: Chain,
    RecordType.POSITION: Position,
    RecordType.BET: Bet,
    RecordType.MARKET: Market,
}


@dataclass
class ChangeRecord:
    """One entry of the change feed: a record's before and after images."""

    seq: int
    record_type: RecordType
    record_id: str
    event_name: ChangeEventName
    old_image: Optional[dict[str, Any]]
    new_image: Optional[dict[str, Any]]
    created_at: Optional[datetime] = None

    def old(self):
        if self.old_image is None:
            return None
        return RECORD_CLASSES[self.record_type].from_dict(self.old_image)

    def new(self):
        if self.new_image is None:
            return None
        return RECORD_CLASSES[self.record_type].from_dict(self.new_image)
