"""Position Termination Handler - cleanup when a position ends badly.

This service:
- Reacts to Position changes into LOST, CANCELLED or FAILED (old not terminal)
- Voids legs that never started (QUEUED, and READY not yet claimed)
- Cancels live exchange orders (PLACED, EXECUTING) and marks those bets CANCELLED
- Releases the stake from the chain's total_value for CANCELLED and FAILED

It is the only place that reclaims anything for a terminated position; the
other handlers only set the position's status.
"""

from typing import Optional

import structlog

from parlay.core.events import EventBus, publish_quietly
from parlay.core.logging import record_context
from parlay.core.retry import ResourceNotFoundError
from parlay.domain.events import PositionEvent
from parlay.domain.models import Bet, ChangeRecord, Position
from parlay.domain.money import to_micro
from parlay.domain.status import (
    RELEASING_POSITION_STATUSES,
    TERMINAL_POSITION_STATUSES,
    BetStatus,
    PositionStatus,
)
from parlay.services.credentials import CredentialService
from parlay.services.metrics import MetricsEmitter
from parlay.services.record_store import RecordStore
from parlay.services.transitions import transition_bet

log = structlog.get_logger()

TERMINATING_STATUSES = frozenset({
    PositionStatus.LOST,
    PositionStatus.CANCELLED,
    PositionStatus.FAILED,
})

UNSTARTED_BET_STATUSES = (BetStatus.QUEUED, BetStatus.READY)
LIVE_ORDER_BET_STATUSES = (BetStatus.EXECUTING, BetStatus.PLACED)


def is_termination_transition(change: ChangeRecord) -> bool:
    """True if this change ended a position as LOST, CANCELLED or FAILED."""
    new = change.new_image
    if new is None or PositionStatus(new["status"]) not in TERMINATING_STATUSES:
        return False
    old = change.old_image
    return old is None or PositionStatus(old["status"]) not in TERMINAL_POSITION_STATUSES


class PositionTerminationHandler:
    """Cleans up after a terminated position.

    Subscribed to: position changes

    Event channels published:
    - position.lost / position.cancelled / position.failed
    """

    def __init__(
        self,
        store: RecordStore,
        credentials: CredentialService,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsEmitter] = None,
    ):
        self._store = store
        self._credentials = credentials
        self._event_bus = event_bus
        self._metrics = metrics
        self._log = log.bind(component="position_termination")

    async def handle_batch(self, changes: list[ChangeRecord]) -> None:
        """Terminate every position in the batch that just ended.

        Raises:
            Exception: The first failure, once the whole batch has been tried.
        """
        errors: list[Exception] = []
        for change in changes:
            if not is_termination_transition(change):
                continue
            position = change.new()
            with record_context(position_id=position.position_id, chain_id=position.chain_id):
                try:
                    await self.terminate(position)
                except Exception as e:
                    self._log.error(
                        "position_termination_error",
                        position_id=position.position_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    errors.append(e)

        if errors:
            raise errors[0]

    async def terminate(self, position: Position) -> None:
        """Release everything a terminated position still holds."""
        self._log.info(
            "processing_position_termination",
            position_id=position.position_id,
            status=position.status.value,
        )

        bets = await self._store.get_bets_for_position(position.position_id)
        voided = 0
        cancelled = 0
        for bet in bets:
            if bet.status in UNSTARTED_BET_STATUSES:
                if await transition_bet(self._store, bet, BetStatus.VOIDED):
                    voided += 1
            elif bet.status in LIVE_ORDER_BET_STATUSES:
                await self._cancel_order(bet)
                if await transition_bet(self._store, bet, BetStatus.CANCELLED):
                    cancelled += 1

        released = False
        if position.status in RELEASING_POSITION_STATUSES:
            released = await self._release_stake(position)

        if self._metrics:
            self._metrics.record_position_status(position.status.value)
        await publish_quietly(
            self._event_bus,
            f"position.{position.status.value.lower()}",
            PositionEvent.from_position(position),
        )
        self._log.info(
            "position_termination_complete",
            position_id=position.position_id,
            status=position.status.value,
            bets_voided=voided,
            bets_cancelled=cancelled,
            stake_released=released,
        )

    async def _cancel_order(self, bet: Bet) -> None:
        """Best-effort exchange cancel; failures are logged and skipped."""
        if not bet.order_id:
            self._log.debug("no_order_to_cancel", bet_id=bet.bet_id)
            return
        try:
            client = await self._credentials.client_for(bet.wallet_address)
            success = await client.cancel_order(bet.order_id)
        except Exception as e:
            self._log.warning(
                "order_cancel_failed",
                bet_id=bet.bet_id,
                order_id=bet.order_id,
                error=str(e),
            )
            success = False
        if self._metrics:
            self._metrics.record_order_cancellation(success)

    async def _release_stake(self, position: Position) -> bool:
        """Subtract the stake from the chain total, at most once per position."""
        try:
            total = await self._store.adjust_chain_total(
                position.chain_id,
                -to_micro(position.initial_stake),
                adjustment_key=f"release:{position.position_id}",
            )
        except ResourceNotFoundError:
            self._log.error(
                "chain_not_found",
                chain_id=position.chain_id,
                position_id=position.position_id,
            )
            return False
        self._log.info(
            "chain_total_released",
            chain_id=position.chain_id,
            stake=position.initial_stake,
            total_micro=total,
        )
        return True
