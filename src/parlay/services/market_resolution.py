"""Market Resolution Handler - settles bets when their market ends.

This service:
- Reacts to Market changes into RESOLVED or CANCELLED (old status not terminal)
- Re-polls PLACED orders once more, then settles FILLED bets against the outcome
- VOID (or CANCELLED) voids the leg and fails its position
- LOST ends the position; WON either completes it (and collects the fee)
  or skips ahead past closed markets and marks the next leg READY

Advancement is recomputed from the bets' stored statuses rather than from
counters carried in memory. Already-SETTLED bets on the market are revisited
on redelivery, so a batch that failed halfway resumes where it stopped.
"""

import asyncio
from typing import Optional

import structlog

from parlay.core.config import ConfigManager
from parlay.core.events import EventBus, publish_quietly
from parlay.core.logging import record_context
from parlay.domain.events import BetEvent, PositionEvent
from parlay.domain.models import Bet, ChangeRecord, Position, utcnow
from parlay.domain.money import (
    calculate_payout,
    calculate_potential_payout,
    from_micro,
    to_micro,
    to_storage,
)
from parlay.domain.status import (
    ACTIVE_BET_STATUSES,
    TERMINAL_MARKET_STATUSES,
    BetStatus,
    MarketStatus,
    Outcome,
    PositionStatus,
    effective_outcome,
)
from parlay.integrations.polymarket.gamma import GammaClient
from parlay.services.bet_executor import fill_updates
from parlay.services.credentials import CredentialService
from parlay.services.fees import FeeCollector, FeeResult
from parlay.services.metrics import MetricsEmitter
from parlay.services.reconciliation import PayoutReconciler
from parlay.services.record_store import RecordStore
from parlay.services.transitions import (
    fail_position,
    transition_bet,
    transition_position,
)

log = structlog.get_logger()

DEFAULT_REPOLL_TIMEOUT_SECONDS = 10.0

# Bets on a resolving market that still need work, by outcome kind
VOID_STATUSES = [BetStatus.EXECUTING, BetStatus.PLACED, BetStatus.FILLED]
BINARY_STATUSES = [BetStatus.PLACED, BetStatus.FILLED, BetStatus.SETTLED]


def is_resolution_transition(change: ChangeRecord) -> bool:
    """True if this change moved a market into a terminal status."""
    new = change.new_image
    if new is None or MarketStatus(new["status"]) not in TERMINAL_MARKET_STATUSES:
        return False
    old = change.old_image
    return old is None or MarketStatus(old["status"]) not in TERMINAL_MARKET_STATUSES


class MarketResolutionHandler:
    """Settles every bet on a market that just resolved or was cancelled.

    Subscribed to: market changes

    Event channels published:
    - bet.settled - Bet settled WON or LOST
    - bet.failed - Bet voided or stuck at resolution
    - position.won - Last leg won
    """

    def __init__(
        self,
        config: ConfigManager,
        store: RecordStore,
        credentials: CredentialService,
        gamma_client: GammaClient,
        fee_collector: FeeCollector,
        reconciler: Optional[PayoutReconciler] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsEmitter] = None,
    ):
        self._store = store
        self._credentials = credentials
        self._gamma = gamma_client
        self._fees = fee_collector
        self._reconciler = reconciler
        self._event_bus = event_bus
        self._metrics = metrics
        self._log = log.bind(component="market_resolution")

        self._repoll_timeout = config.get_float(
            "resolution.repoll_timeout_seconds", DEFAULT_REPOLL_TIMEOUT_SECONDS
        )

    # ============ Change feed entry point ============

    async def handle_batch(self, changes: list[ChangeRecord]) -> None:
        """Resolve every market in the batch that just became terminal.

        Raises:
            Exception: The first failure, once the whole batch has been tried,
                so the feed redelivers it.
        """
        errors: list[Exception] = []
        for change in changes:
            if not is_resolution_transition(change):
                continue
            market = change.new()
            outcome = effective_outcome(market.status, market.outcome)
            if outcome is None:
                self._log.error(
                    "market_resolved_without_outcome",
                    condition_id=market.condition_id,
                )
                continue
            try:
                await self.resolve_market(market.condition_id, outcome)
            except Exception as e:
                errors.append(e)

        if errors:
            raise errors[0]

    async def resolve_market(self, condition_id: str, outcome: Outcome) -> int:
        """Settle all outstanding bets on condition_id.

        Returns:
            Number of bets examined.

        Raises:
            Exception: The first per-bet failure, after every bet was tried.
        """
        statuses = VOID_STATUSES if outcome == Outcome.VOID else BINARY_STATUSES
        bets = await self._store.get_bets_for_condition(condition_id, statuses)
        self._log.info(
            "processing_market_resolution",
            condition_id=condition_id,
            outcome=outcome.value,
            bets=len(bets),
        )

        errors: list[Exception] = []
        for bet in bets:
            with record_context(
                bet_id=bet.bet_id,
                position_id=bet.position_id,
                condition_id=condition_id,
            ):
                try:
                    if outcome == Outcome.VOID:
                        await self._void_bet(bet, condition_id)
                    else:
                        await self._settle_bet(bet, outcome)
                except Exception as e:
                    self._log.error(
                        "bet_settlement_error",
                        bet_id=bet.bet_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    errors.append(e)

        if errors:
            raise errors[0]
        return len(bets)

    # ============ VOID ============

    async def _void_bet(self, bet: Bet, condition_id: str) -> None:
        if not await transition_bet(
            self._store,
            bet,
            BetStatus.VOIDED,
            outcome=Outcome.VOID,
            settled_at=utcnow(),
        ):
            return
        self._log.info("bet_voided", bet_id=bet.bet_id)
        await self._after_bet_event(bet, "bet.failed")
        await fail_position(
            self._store,
            bet.position_id,
            reason=f"Market {condition_id} resolved VOID at leg {bet.sequence}",
        )

    # ============ YES / NO ============

    async def _settle_bet(self, bet: Bet, outcome: Outcome) -> None:
        if bet.status == BetStatus.PLACED:
            if not await self._repoll(bet):
                await self._mark_stuck(bet)
                return

        if bet.status == BetStatus.FILLED:
            won = bet.side.value == outcome.value
            payout_micro = calculate_payout(to_micro(bet.shares_acquired)) if won else 0
            if not await transition_bet(
                self._store,
                bet,
                BetStatus.SETTLED,
                outcome=outcome,
                won=won,
                actual_payout=to_storage(payout_micro),
                settled_at=utcnow(),
            ):
                return
            self._log.info(
                "bet_settled",
                bet_id=bet.bet_id,
                side=bet.side.value,
                outcome=outcome.value,
                won=won,
                payout=bet.actual_payout,
            )
            await self._after_bet_event(bet, "bet.settled")
            if won:
                await self._reconcile(bet)

        if bet.status == BetStatus.SETTLED:
            await self._advance_position(bet)

    async def _repoll(self, bet: Bet) -> bool:
        """Re-check a PLACED order; True if it is now recorded FILLED."""
        try:
            client = await self._credentials.client_for(bet.wallet_address)
            fill = await asyncio.wait_for(
                client.get_order(bet.order_id), timeout=self._repoll_timeout
            )
        except Exception as e:
            self._log.warning("order_repoll_failed", bet_id=bet.bet_id, error=str(e))
            return False

        if not fill.is_filled:
            self._log.warning(
                "order_still_unfilled",
                bet_id=bet.bet_id,
                order_id=bet.order_id,
                status=fill.status.value,
            )
            return False

        updated = await transition_bet(
            self._store,
            bet,
            BetStatus.FILLED,
            filled_at=utcnow(),
            **fill_updates(fill, to_micro(bet.stake), to_micro(bet.target_price)),
        )
        if updated:
            self._log.info(
                "bet_filled_on_repoll",
                bet_id=bet.bet_id,
                shares=bet.shares_acquired,
                fill_price=bet.fill_price,
            )
        return updated

    async def _mark_stuck(self, bet: Bet) -> None:
        if bet.status != BetStatus.PLACED:
            return
        if not await transition_bet(
            self._store,
            bet,
            BetStatus.EXECUTION_ERROR,
            error_message="Order fill never confirmed before market resolution",
        ):
            return
        self._log.warning("bet_stuck_at_resolution", bet_id=bet.bet_id, order_id=bet.order_id)
        await self._after_bet_event(bet, "bet.failed")
        await fail_position(
            self._store,
            bet.position_id,
            reason=f"Leg {bet.sequence} order unconfirmed at resolution",
            completed_legs=bet.sequence - 1,
        )

    async def _reconcile(self, bet: Bet) -> None:
        if self._reconciler is None:
            return
        await self._reconciler.verify(
            bet.wallet_address,
            bet.actual_payout,
            from_block=bet.fill_block_number,
            bet_id=bet.bet_id,
        )

    # ============ Position advancement ============

    async def _advance_position(self, bet: Bet) -> None:
        """Apply a settled leg to its position. Safe to repeat."""
        position = await self._store.get_position(bet.position_id)
        if position is None:
            self._log.error("position_not_found", position_id=bet.position_id)
            return
        if position.status.is_terminal:
            self._log.debug(
                "position_already_terminal",
                position_id=position.position_id,
                status=position.status.value,
            )
            return

        if not bet.won:
            if await transition_position(
                self._store,
                position,
                PositionStatus.LOST,
                completed_legs=bet.sequence,
                current_leg_sequence=bet.sequence,
                current_value="0.00",
            ):
                self._log.info("position_lost", position_id=position.position_id, leg=bet.sequence)
            return

        bets = await self._store.get_bets_for_position(position.position_id)
        if bet.sequence >= position.total_legs:
            await self._complete_position(position, bet, bets)
            return

        later = [b for b in bets if b.sequence > bet.sequence]
        if any(b.status in ACTIVE_BET_STATUSES or b.status == BetStatus.SETTLED for b in later):
            self._log.debug("position_already_advanced", position_id=position.position_id)
            return

        next_bet = None
        for candidate in later:
            if candidate.status == BetStatus.MARKET_CLOSED:
                continue
            if candidate.status != BetStatus.QUEUED:
                break
            if await self._is_leg_open(candidate):
                next_bet = candidate
                break
            if await transition_bet(
                self._store,
                candidate,
                BetStatus.MARKET_CLOSED,
                error_message="Market closed before the leg was reached",
            ):
                self._log.info(
                    "leg_skipped",
                    bet_id=candidate.bet_id,
                    sequence=candidate.sequence,
                    condition_id=candidate.condition_id,
                )
                if self._metrics:
                    self._metrics.record_skipped_leg()

        won_legs = sum(1 for b in bets if b.status == BetStatus.SETTLED and b.won)
        stop_at = next_bet.sequence if next_bet else position.total_legs + 1
        skipped_legs = sum(
            1 for b in bets
            if b.status == BetStatus.MARKET_CLOSED and b.sequence < stop_at
        )

        if next_bet is None:
            await fail_position(
                self._store,
                position.position_id,
                reason="No remaining leg has an open market",
                completed_legs=position.total_legs,
                won_legs=won_legs,
                skipped_legs=skipped_legs,
                current_value=bet.actual_payout,
            )
            return

        position.completed_legs = next_bet.sequence - 1
        position.won_legs = won_legs
        position.skipped_legs = skipped_legs
        position.current_leg_sequence = next_bet.sequence
        position.current_value = bet.actual_payout
        await self._store.update_position(position, expected_status=position.status)

        payout_micro = to_micro(bet.actual_payout)
        if await transition_bet(
            self._store,
            next_bet,
            BetStatus.READY,
            stake=to_storage(payout_micro),
            potential_payout=to_storage(
                calculate_potential_payout(payout_micro, to_micro(next_bet.target_price))
            ),
        ):
            self._log.info(
                "next_leg_ready",
                position_id=position.position_id,
                bet_id=next_bet.bet_id,
                sequence=next_bet.sequence,
                stake=next_bet.stake,
                skipped_legs=skipped_legs,
            )

    async def _is_leg_open(self, bet: Bet) -> bool:
        """A leg can still be played if its market is neither ended nor closed."""
        snapshot = await self._store.get_market(bet.condition_id)
        if snapshot is not None and snapshot.status != MarketStatus.ACTIVE:
            return False
        info = await self._gamma.get_market_info(bet.condition_id)
        if info is None:
            return False
        return info.active and not info.closed

    async def _complete_position(
        self,
        position: Position,
        bet: Bet,
        bets: list[Bet],
    ) -> None:
        won_legs = sum(1 for b in bets if b.status == BetStatus.SETTLED and b.won)
        if not await transition_position(
            self._store,
            position,
            PositionStatus.WON,
            current_value=from_micro(to_micro(bet.actual_payout)),
            completed_legs=bet.sequence,
            won_legs=won_legs,
            current_leg_sequence=bet.sequence,
        ):
            return

        self._log.info(
            "position_won",
            position_id=position.position_id,
            payout=position.current_value,
            initial_stake=position.initial_stake,
        )
        if self._metrics:
            self._metrics.record_position_status(PositionStatus.WON.value)
        await publish_quietly(
            self._event_bus, "position.won", PositionEvent.from_position(position)
        )

        if position.total_legs > 1:
            await self._collect_fee(position, bet.actual_payout)

    async def _collect_fee(self, position: Position, payout: str) -> None:
        """Collect and record the platform fee. Never unwinds the win."""
        try:
            result = await self._fees.collect(position, payout)
        except Exception as e:
            self._log.error(
                "fee_collection_error",
                position_id=position.position_id,
                error=str(e),
            )
            result = FeeResult(success=False, fee_amount="0", error=str(e))

        if result.success and result.fee_amount == "0":
            return

        position.platform_fee = result.fee_amount
        position.fee_tx_hash = result.tx_hash
        position.fee_collection_failed = not result.success
        position.fee_collection_error = result.error
        await self._store.update_position(position, expected_status=PositionStatus.WON)

    async def _after_bet_event(self, bet: Bet, channel: str) -> None:
        if self._metrics:
            self._metrics.record_bet_status(bet.status.value)
        await publish_quietly(self._event_bus, channel, BetEvent.from_bet(bet))
