"""Bet Executor - places the order for a Bet that became READY.

This service:
- Reacts to Bet changes whose new status is READY (and old status was not)
- Claims the bet by moving it READY -> EXECUTING with a conditional write
- Resolves the wallet's exchange client, then re-checks market tradability
- Places one fill-and-kill BUY and polls briefly for the fill
- Records FILLED, leaves PLACED for the resolution re-poll, or records a
  classified failure and fails the Position

A failure of one bet never escapes as an exception: it is classified and
written. Only a failure to write that outcome propagates, so the feed
redelivers the batch; the EXECUTING claim keeps the redelivery from placing
a second order.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog

from parlay.core.config import ConfigManager
from parlay.core.events import EventBus, publish_quietly
from parlay.core.logging import record_context
from parlay.core.retry import (
    InsufficientFundsError,
    TransientError,
)
from parlay.core.retry import OrderRejectedError as CoreOrderRejectedError
from parlay.domain.events import BetEvent
from parlay.domain.models import Bet, ChangeRecord, utcnow
from parlay.domain.money import (
    calculate_payout,
    calculate_shares,
    from_micro,
    min_micro,
    multiply_by_price,
    ratio_micro,
    to_micro,
    to_storage,
)
from parlay.domain.status import (
    BET_TRANSITIONS,
    BetStatus,
    can_transition,
)
from parlay.integrations.chain.client import PolygonClient
from parlay.integrations.chain.keystore import KeystoreError
from parlay.integrations.polymarket.clob import (
    CLOBClient,
    CLOBConnectionError,
    InsufficientBalanceError,
    InsufficientLiquidityError,
    OrderRejectedError,
    OrderSigningError,
)
from parlay.integrations.polymarket.gamma import GammaClient, GammaClientError
from parlay.integrations.polymarket.types import OrderFill
from parlay.services.credentials import CredentialsError, CredentialService
from parlay.services.metrics import MetricsEmitter
from parlay.services.record_store import RecordStore
from parlay.services.transitions import fail_position, transition_bet

log = structlog.get_logger()

# Execution parameters
DEFAULT_SLIPPAGE = "0.025"
DEFAULT_MAX_PRICE = "0.99"
DEFAULT_POLL_ATTEMPTS = 3
DEFAULT_POLL_BACKOFF_MS = 500
DEFAULT_MIN_HOURS_BEFORE_END = 24
DEFAULT_STAKE_DRIFT_WARN_PCT = "1"

MAX_ERROR_MESSAGE_LENGTH = 500

# Message fragments checked in order; the first group that matches wins.
# Cloudflare blocks come back as 403s that would otherwise look like
# order rejections, so they are checked before anything typed.
_BLOCKED_PATTERNS = (
    "cloudflare", "403", "access denied", "just a moment", "challenge",
    "captcha", "ray id", "blocked", "no order id returned",
)
_MESSAGE_RULES: tuple[tuple[tuple[str, ...], BetStatus], ...] = (
    (
        ("credential", "api key", "unauthorized", "no wallet", "failed to sign"),
        BetStatus.NO_CREDENTIALS,
    ),
    (
        ("liquidity", "insufficient", "not enough", "balance", "funds"),
        BetStatus.INSUFFICIENT_LIQUIDITY,
    ),
    (
        ("market closed", "market suspended", "trading halted", "resolved"),
        BetStatus.MARKET_CLOSED,
    ),
    (("rejected", "invalid order"), BetStatus.ORDER_REJECTED),
    (("timeout", "network", "econnrefused", "rate limit"), BetStatus.EXECUTION_ERROR),
)


class MarketNotTradableError(Exception):
    """The pre-trade market check failed; status says which way."""

    def __init__(self, status: BetStatus, message: str):
        super().__init__(message)
        self.status = status


class StakeUnavailableError(Exception):
    """No settled winning predecessor to take this leg's stake from."""

    pass


def classify_bet_error(error: BaseException) -> BetStatus:
    """Map an execution error to the bet's terminal failure status."""
    message = str(error).lower()
    if any(pattern in message for pattern in _BLOCKED_PATTERNS):
        return BetStatus.EXECUTION_ERROR

    if isinstance(error, MarketNotTradableError):
        return error.status
    if isinstance(error, (CredentialsError, KeystoreError, OrderSigningError)):
        return BetStatus.NO_CREDENTIALS
    if isinstance(error, (OrderRejectedError, CoreOrderRejectedError)):
        return BetStatus.ORDER_REJECTED
    if isinstance(
        error,
        (InsufficientLiquidityError, InsufficientBalanceError, InsufficientFundsError),
    ):
        return BetStatus.INSUFFICIENT_LIQUIDITY
    if isinstance(
        error,
        (
            CLOBConnectionError,
            GammaClientError,
            TransientError,
            httpx.HTTPError,
            asyncio.TimeoutError,
        ),
    ):
        return BetStatus.EXECUTION_ERROR

    for patterns, status in _MESSAGE_RULES:
        if any(pattern in message for pattern in patterns):
            return status
    return BetStatus.UNKNOWN_FAILURE


def fill_updates(fill: OrderFill, stake_micro: int, target_micro: int) -> dict[str, Any]:
    """Bet fields describing a fill. Missing fill price falls back to target."""
    shares_micro = to_micro(str(fill.filled_size))
    fill_price_micro = to_micro(str(fill.price)) or target_micro
    actual_stake_micro = multiply_by_price(shares_micro, fill_price_micro)
    return {
        "fill_price": from_micro(fill_price_micro, 6),
        "shares_acquired": to_storage(shares_micro),
        "actual_stake": to_storage(actual_stake_micro),
        "fill_percentage": from_micro(ratio_micro(actual_stake_micro, stake_micro), 4),
        "price_impact": from_micro(
            ratio_micro(fill_price_micro - target_micro, target_micro), 4
        ),
        "potential_payout": to_storage(calculate_payout(shares_micro)),
    }


def is_ready_transition(change: ChangeRecord) -> bool:
    """True if this change moved a bet into READY."""
    new = change.new_image
    if new is None or new.get("status") != BetStatus.READY.value:
        return False
    old = change.old_image
    return old is None or old.get("status") != BetStatus.READY.value


class BetExecutor:
    """Executes READY bets against the exchange.

    Subscribed to: bet changes

    Event channels published:
    - bet.filled - Order filled (fully or partially)
    - bet.failed - Bet ended in a failure status
    """

    def __init__(
        self,
        config: ConfigManager,
        store: RecordStore,
        credentials: CredentialService,
        gamma_client: GammaClient,
        polygon_client: Optional[PolygonClient] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsEmitter] = None,
    ):
        self._store = store
        self._credentials = credentials
        self._gamma = gamma_client
        self._polygon = polygon_client
        self._event_bus = event_bus
        self._metrics = metrics
        self._log = log.bind(component="bet_executor")

        self._slippage_micro = config.get_micro("execution.slippage", DEFAULT_SLIPPAGE)
        self._max_price_micro = config.get_micro("execution.max_price", DEFAULT_MAX_PRICE)
        self._poll_attempts = config.get_int("execution.poll_attempts", DEFAULT_POLL_ATTEMPTS)
        self._poll_backoff_ms = config.get_int("execution.poll_backoff_ms", DEFAULT_POLL_BACKOFF_MS)
        self._min_hours_before_end = config.get_int(
            "execution.min_hours_before_end", DEFAULT_MIN_HOURS_BEFORE_END
        )
        self._stake_drift_warn = config.get_decimal(
            "execution.stake_drift_warn_pct", Decimal(DEFAULT_STAKE_DRIFT_WARN_PCT)
        )

    # ============ Change feed entry point ============

    async def handle_batch(self, changes: list[ChangeRecord]) -> None:
        """Execute every bet in the batch that just became READY.

        Raises:
            Exception: The first error that kept a bet's outcome from being
                recorded, after the rest of the batch has been processed.
        """
        errors: list[Exception] = []
        for change in changes:
            if not is_ready_transition(change):
                continue
            bet = change.new()
            with record_context(bet_id=bet.bet_id, position_id=bet.position_id):
                try:
                    await self.execute(bet)
                except Exception as e:
                    self._log.error(
                        "bet_execution_unrecorded",
                        bet_id=bet.bet_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    errors.append(e)

        if errors:
            raise errors[0]

    # ============ Execution ============

    async def execute(self, bet: Bet) -> None:
        """Run one READY bet to FILLED, PLACED or a failure status."""
        self._log.info(
            "executing_bet",
            bet_id=bet.bet_id,
            position_id=bet.position_id,
            sequence=bet.sequence,
            condition_id=bet.condition_id,
            side=bet.side.value,
            target_price=bet.target_price,
            stake=bet.stake,
        )

        if not await transition_bet(self._store, bet, BetStatus.EXECUTING):
            await self._recover_interrupted(bet.bet_id)
            return

        try:
            position = await self._store.get_position(bet.position_id)
            if position is None or position.status.is_terminal:
                self._log.info("position_ended_before_execution", bet_id=bet.bet_id)
                await transition_bet(
                    self._store,
                    bet,
                    BetStatus.CANCELLED,
                    error_message="Position ended before the order was placed",
                )
                return

            client = await self._credentials.client_for(bet.wallet_address)
            await self._check_market(bet)
            stake_micro = await self._determine_stake(bet)
            await self._place_and_track(client, bet, stake_micro)
        except Exception as e:
            status = classify_bet_error(e)
            self._log.error(
                "bet_execution_failed",
                bet_id=bet.bet_id,
                status=status.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._record_failure(bet, status, str(e))

    async def _recover_interrupted(self, bet_id: str) -> None:
        """Fail a bet an earlier delivery claimed but never got an order out for.

        Deliveries of one subscription run one after another, so a stored
        EXECUTING bet without an order id means that attempt died before
        recording its outcome.
        """
        stored = await self._store.get_bet(bet_id)
        if stored is None or stored.status != BetStatus.EXECUTING or stored.order_id:
            self._log.info("bet_already_claimed", bet_id=bet_id)
            return
        self._log.warning("bet_execution_interrupted", bet_id=bet_id)
        await self._record_failure(
            stored,
            BetStatus.EXECUTION_ERROR,
            "Execution interrupted before an order was recorded",
        )

    async def _check_market(self, bet: Bet) -> None:
        """Raises MarketNotTradableError if the market cannot take the order."""
        info = await self._gamma.get_market_info(bet.condition_id)
        if info is None:
            raise MarketNotTradableError(BetStatus.MARKET_CLOSED, "Market not found")
        if not info.is_tradable():
            if info.closed:
                reason = "Market is closed"
            elif not info.active:
                reason = "Market is not active"
            else:
                reason = "Market is not accepting orders"
            raise MarketNotTradableError(BetStatus.MARKET_CLOSED, reason)

        min_end = utcnow() + timedelta(hours=self._min_hours_before_end)
        if not info.is_tradable(min_end_date=min_end):
            hours = info.hours_until_end()
            raise MarketNotTradableError(
                BetStatus.MARKET_CLOSING_SOON,
                f"Market closes in {hours:.1f}h, less than {self._min_hours_before_end}h",
            )

    async def _determine_stake(self, bet: Bet) -> int:
        """Stake for this leg in micro-units.

        The first leg spends the position's stake. Later legs spend the
        payout of the most recent winning leg before them.
        """
        planned_micro = to_micro(bet.stake)
        if bet.sequence == 1:
            return planned_micro

        bets = await self._store.get_bets_for_position(bet.position_id)
        previous = [
            b for b in bets
            if b.sequence < bet.sequence and b.status == BetStatus.SETTLED and b.won
        ]
        if not previous or not previous[-1].actual_payout:
            raise StakeUnavailableError(
                f"No settled winning leg before sequence {bet.sequence}"
            )

        actual_micro = to_micro(previous[-1].actual_payout)
        if planned_micro > 0:
            drift_pct = Decimal(abs(actual_micro - planned_micro) * 100) / planned_micro
            if drift_pct > self._stake_drift_warn:
                self._log.warning(
                    "stake_drift_detected",
                    bet_id=bet.bet_id,
                    planned_stake=bet.stake,
                    actual_payout=previous[-1].actual_payout,
                    drift_pct=f"{drift_pct:.2f}",
                )
        return actual_micro

    def _max_price_micro_for(self, target_micro: int) -> int:
        with_slippage = target_micro + multiply_by_price(target_micro, self._slippage_micro)
        return min_micro(with_slippage, self._max_price_micro)

    async def _place_and_track(self, client: CLOBClient, bet: Bet, stake_micro: int) -> None:
        target_micro = to_micro(bet.target_price)
        shares_micro = calculate_shares(stake_micro, target_micro)
        size = Decimal(from_micro(shares_micro, 2))
        price = Decimal(from_micro(self._max_price_micro_for(target_micro), 6))

        self._log.info(
            "calculated_order",
            bet_id=bet.bet_id,
            stake=from_micro(stake_micro, 6),
            target_price=bet.target_price,
            max_price=str(price),
            size=str(size),
        )

        placement = await client.place_fak_buy(bet.token_id, price, size)
        if not await transition_bet(
            self._store,
            bet,
            BetStatus.PLACED,
            order_id=placement.order_id,
            executed_at=placement.submitted_at,
        ):
            return

        fill = await self._poll_fill(client, placement.order_id)

        if fill is not None and fill.is_filled:
            await self._record_fill(bet, fill, stake_micro, target_micro)
        elif fill is not None and fill.is_unfilled_final:
            self._log.warning(
                "order_unfilled",
                bet_id=bet.bet_id,
                order_id=placement.order_id,
                status=fill.status.value,
            )
            await self._record_failure(
                bet, BetStatus.UNFILLED, f"Fill-and-kill order got zero fills ({fill.status.value})"
            )
        else:
            self._log.warning(
                "order_fill_unconfirmed",
                bet_id=bet.bet_id,
                order_id=placement.order_id,
                status=fill.status.value if fill else None,
            )

    async def _poll_fill(self, client: CLOBClient, order_id: str) -> Optional[OrderFill]:
        """Poll with linear backoff until filled, finally unfilled, or out of attempts."""
        fill = None
        for attempt in range(1, self._poll_attempts + 1):
            await asyncio.sleep(self._poll_backoff_ms * attempt / 1000)
            try:
                fill = await client.get_order(order_id)
            except Exception as e:
                # The order is out; a lookup failure must not fail the bet
                self._log.warning(
                    "order_poll_failed",
                    order_id=order_id,
                    attempt=attempt,
                    error=str(e),
                )
                continue
            self._log.debug(
                "order_polled",
                order_id=order_id,
                attempt=attempt,
                status=fill.status.value,
                filled_size=str(fill.filled_size),
            )
            if fill.is_filled or fill.is_unfilled_final:
                break
        return fill

    async def _record_fill(
        self,
        bet: Bet,
        fill: OrderFill,
        stake_micro: int,
        target_micro: int,
    ) -> None:
        updates = fill_updates(fill, stake_micro, target_micro)
        filled_at = utcnow()

        if not await transition_bet(
            self._store,
            bet,
            BetStatus.FILLED,
            filled_at=filled_at,
            fill_block_number=await self._current_block(),
            **updates,
        ):
            return

        self._log.info(
            "bet_filled",
            bet_id=bet.bet_id,
            order_id=bet.order_id,
            fill_price=bet.fill_price,
            shares=bet.shares_acquired,
            actual_stake=bet.actual_stake,
            fill_percentage=bet.fill_percentage,
            price_impact=bet.price_impact,
        )
        if self._metrics:
            self._metrics.record_bet_status(BetStatus.FILLED.value)
            if bet.executed_at is not None:
                self._metrics.record_fill(
                    (filled_at - bet.executed_at).total_seconds(),
                    to_micro(bet.fill_percentage) / 1_000_000,
                )
        await publish_quietly(self._event_bus, "bet.filled", BetEvent.from_bet(bet))

    async def _current_block(self) -> Optional[int]:
        """Block number at fill time, the lower bound for payout reconciliation."""
        if self._polygon is None:
            return None
        try:
            return await self._polygon.get_block_number()
        except Exception as e:
            self._log.warning("fill_block_unavailable", error=str(e))
            return None

    async def _record_failure(self, bet: Bet, status: BetStatus, message: str) -> None:
        """Write the failure status on the bet, then fail its position."""
        if not can_transition(BET_TRANSITIONS, bet.status, status):
            # Once an order is out, only EXECUTION_ERROR is a legal failure
            status = BetStatus.EXECUTION_ERROR
        if not await transition_bet(
            self._store,
            bet,
            status,
            error_message=message[:MAX_ERROR_MESSAGE_LENGTH],
        ):
            return

        if self._metrics:
            self._metrics.record_bet_status(status.value)
        await publish_quietly(self._event_bus, "bet.failed", BetEvent.from_bet(bet))

        await fail_position(
            self._store,
            bet.position_id,
            reason=f"Leg {bet.sequence} {status.value}: {message}"[:MAX_ERROR_MESSAGE_LENGTH],
            completed_legs=bet.sequence - 1,
        )
