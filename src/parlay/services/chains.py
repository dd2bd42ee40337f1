"""Chain Service - joining and leaving chains.

This is the write path a client uses to create work for the settlement
engine: a Position with its pre-allocated Bets. Creating the first Bet as
READY is what starts the pipeline; nothing else needs to be scheduled.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from parlay.core.retry import ConditionFailedError, ResourceNotFoundError, ValidationError
from parlay.domain.money import (
    SCALE,
    calculate_potential_payout,
    from_micro,
    is_positive,
    to_micro,
    to_storage,
)
from parlay.domain.models import (
    Bet,
    Chain,
    ChainLeg,
    Position,
    generate_chain_id,
    generate_position_id,
    make_bet_id,
    utcnow,
)
from parlay.domain.status import BetStatus, PositionStatus, Side, ensure_position_transition
from parlay.services.record_store import RecordStore

log = structlog.get_logger()

MAX_LEGS = 10


@dataclass(frozen=True)
class LegRequest:
    """One requested leg: which outcome to back, and at what price."""

    condition_id: str
    token_id: str
    side: Side
    target_price: str
    question: str = ""
    end_date: Optional[datetime] = None


def order_legs(requests: list[LegRequest]) -> list[LegRequest]:
    """Order legs by market end date; legs without one go last.

    The sort is stable, so equal or missing end dates keep request order.
    """
    dated = [r for r in requests if r.end_date is not None]
    undated = [r for r in requests if r.end_date is None]
    return sorted(dated, key=lambda r: r.end_date) + undated


def validate_legs(requests: list[LegRequest], stake: str) -> None:
    """Raises ValidationError describing the first problem found."""
    if not requests:
        raise ValidationError("At least one leg is required")
    if len(requests) > MAX_LEGS:
        raise ValidationError(f"Maximum {MAX_LEGS} legs per chain")
    if not is_positive(to_micro(stake)):
        raise ValidationError("Initial stake must be greater than 0")

    seen = set()
    for leg in requests:
        if not leg.condition_id or not leg.token_id:
            raise ValidationError("Each leg requires condition_id and token_id")
        if leg.condition_id in seen:
            raise ValidationError(f"Market {leg.condition_id} appears twice")
        seen.add(leg.condition_id)
        price = to_micro(leg.target_price)
        if price <= 0 or price >= SCALE:
            raise ValidationError("Target price must be between 0 and 1")


class ChainService:
    """Creates and cancels Positions against Chains."""

    def __init__(self, store: RecordStore):
        self._store = store
        self._log = log.bind(component="chain_service")

    async def create_position(
        self,
        wallet_address: str,
        legs: list[LegRequest],
        stake: str,
    ) -> tuple[Position, list[Bet]]:
        """Join (or create) the chain for legs with stake.

        Raises:
            ValidationError: Bad legs or stake, or the wallet already holds
                a live position on this chain.
        """
        validate_legs(legs, stake)
        ordered = order_legs(legs)
        wallet = wallet_address.lower()

        chain_legs = [
            ChainLeg(
                sequence=index,
                condition_id=req.condition_id,
                token_id=req.token_id,
                side=req.side,
                question=req.question,
                end_date=req.end_date,
            )
            for index, req in enumerate(ordered, start=1)
        ]
        chain = Chain(chain_id=generate_chain_id(chain_legs), legs=chain_legs)
        await self._store.create_chain_if_absent(chain)

        existing = await self._store.get_positions_for_wallet(wallet, chain.chain_id)
        if any(not p.status.is_terminal for p in existing):
            raise ValidationError("You already have a position on this chain")

        stake_micro = to_micro(stake)
        position = Position(
            position_id=generate_position_id(),
            chain_id=chain.chain_id,
            wallet_address=wallet,
            initial_stake=from_micro(stake_micro),
            current_value=from_micro(stake_micro),
            total_legs=len(chain_legs),
            status=PositionStatus.ACTIVE,
        )

        bets = []
        leg_stake = stake_micro
        for leg, req in zip(chain_legs, ordered):
            price_micro = to_micro(req.target_price)
            payout_micro = calculate_potential_payout(leg_stake, price_micro)
            bets.append(
                Bet(
                    bet_id=make_bet_id(position.position_id, leg.sequence),
                    position_id=position.position_id,
                    chain_id=chain.chain_id,
                    wallet_address=wallet,
                    sequence=leg.sequence,
                    condition_id=leg.condition_id,
                    token_id=leg.token_id,
                    side=leg.side,
                    target_price=req.target_price,
                    stake=to_storage(leg_stake),
                    potential_payout=to_storage(payout_micro),
                    status=BetStatus.READY if leg.sequence == 1 else BetStatus.QUEUED,
                    market_question=leg.question,
                )
            )
            leg_stake = payout_micro

        await self._store.create_position_with_bets(position, bets)
        self._log.info(
            "position_opened",
            position_id=position.position_id,
            chain_id=chain.chain_id,
            wallet=wallet,
            legs=len(bets),
            stake=position.initial_stake,
        )
        return position, bets

    async def cancel_position(self, position_id: str, wallet_address: str) -> Position:
        """Owner-initiated cancel. Cleanup happens in the termination handler.

        Raises:
            ResourceNotFoundError: Unknown position or not owned by wallet.
            InvalidTransitionError: Position already terminal.
            ConditionFailedError: Position changed status concurrently.
        """
        position = await self._store.get_position(position_id)
        if position is None or position.wallet_address != wallet_address.lower():
            raise ResourceNotFoundError(f"Position {position_id} not found")

        current = position.status
        position.status = ensure_position_transition(current, PositionStatus.CANCELLED)
        position.failure_reason = "Cancelled by owner"
        position.completed_at = utcnow()
        try:
            await self._store.update_position(position, expected_status=current)
        except ConditionFailedError:
            self._log.warning("position_cancel_raced", position_id=position_id)
            raise

        self._log.info("position_cancelled", position_id=position_id)
        return position
