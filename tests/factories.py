"""Record and client-response builders shared by the unit and integration tests."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
from unittest.mock import MagicMock

from parlay.domain.models import Bet, Market, Position, make_bet_id
from parlay.domain.money import to_micro
from parlay.domain.status import BetStatus, MarketStatus, PositionStatus, Side
from parlay.integrations.polymarket.types import (
    MarketInfo,
    OrderFill,
    OrderPlacement,
    OrderStatus,
)

WALLET = "0x" + "ab" * 20


def make_config(values: Optional[dict[str, Any]] = None) -> MagicMock:
    """MagicMock ConfigManager answering from values, else the caller's default."""
    values = values or {}
    config = MagicMock()

    def get_side_effect(key, default=None):
        return values.get(key, default)

    def get_int_side_effect(key, default=0):
        return int(values.get(key, default))

    def get_float_side_effect(key, default=0.0):
        return float(values.get(key, default))

    def get_bool_side_effect(key, default=False):
        return bool(values.get(key, default))

    def get_micro_side_effect(key, default):
        return to_micro(str(values.get(key, default)))

    def get_decimal_side_effect(key, default=Decimal("0")):
        return Decimal(str(values[key])) if key in values else default

    config.get.side_effect = get_side_effect
    config.get_int.side_effect = get_int_side_effect
    config.get_float.side_effect = get_float_side_effect
    config.get_bool.side_effect = get_bool_side_effect
    config.get_micro.side_effect = get_micro_side_effect
    config.get_decimal.side_effect = get_decimal_side_effect
    return config


def make_position(
    position_id: str = "pos_1",
    status: PositionStatus = PositionStatus.ACTIVE,
    total_legs: int = 3,
    initial_stake: str = "100.00",
    **overrides: Any,
) -> Position:
    fields = dict(
        position_id=position_id,
        chain_id="chain_1",
        wallet_address=WALLET,
        initial_stake=initial_stake,
        current_value=initial_stake,
        total_legs=total_legs,
        status=status,
    )
    fields.update(overrides)
    return Position(**fields)


def make_bet(
    sequence: int = 1,
    status: BetStatus = BetStatus.READY,
    position_id: str = "pos_1",
    condition_id: Optional[str] = None,
    side: Side = Side.YES,
    target_price: str = "0.50",
    stake: str = "100.000000",
    **overrides: Any,
) -> Bet:
    fields = dict(
        bet_id=make_bet_id(position_id, sequence),
        position_id=position_id,
        chain_id="chain_1",
        wallet_address=WALLET,
        sequence=sequence,
        condition_id=condition_id or f"cond_{sequence}",
        token_id=f"token_{sequence}",
        side=side,
        target_price=target_price,
        stake=stake,
        potential_payout="200.000000",
        status=status,
    )
    fields.update(overrides)
    return Bet(**fields)


def make_market_info(
    condition_id: str = "cond_1",
    active: bool = True,
    closed: bool = False,
    hours_left: Optional[float] = 72,
    accepting_orders: bool = True,
) -> MarketInfo:
    end_date = (
        datetime.now(timezone.utc) + timedelta(hours=hours_left)
        if hours_left is not None
        else None
    )
    return MarketInfo(
        condition_id=condition_id,
        question=f"Question {condition_id}?",
        active=active,
        closed=closed,
        accepting_orders=accepting_orders,
        end_date=end_date,
    )


def make_fill(
    filled_size: str = "200",
    price: str = "0.50",
    status: OrderStatus = OrderStatus.MATCHED,
    order_id: str = "order_1",
) -> OrderFill:
    return OrderFill(
        order_id=order_id,
        status=status,
        filled_size=Decimal(filled_size),
        price=Decimal(price),
    )


def make_placement(order_id: str = "order_1") -> OrderPlacement:
    return OrderPlacement(
        order_id=order_id,
        status=OrderStatus.LIVE,
        submitted_at=datetime.now(timezone.utc),
    )


def make_market(
    condition_id: str = "cond_1",
    status: MarketStatus = MarketStatus.ACTIVE,
    **overrides: Any,
) -> Market:
    return Market(condition_id=condition_id, status=status, **overrides)

