"""Market snapshot ingestion.

The Market records are written by whatever watches the exchange for
lifecycle changes (a webhook, a poller, an operator). Writing a RESOLVED or
CANCELLED snapshot is what triggers the Market Resolution Handler.
"""

from datetime import datetime
from typing import Optional

import structlog

from parlay.core.retry import ValidationError
from parlay.domain.models import Market
from parlay.domain.status import MarketStatus, Outcome, ensure_market_transition
from parlay.services.record_store import RecordStore

log = structlog.get_logger()


class MarketService:
    def __init__(self, store: RecordStore):
        self._store = store
        self._log = log.bind(component="market_service")

    async def apply_snapshot(
        self,
        condition_id: str,
        status: MarketStatus,
        outcome: Optional[Outcome] = None,
        question: Optional[str] = None,
        end_date: Optional[datetime] = None,
    ) -> Optional[Market]:
        """Record a market's latest lifecycle state.

        Returns:
            The stored market, or None when the snapshot repeats the current
            status and nothing was written.

        Raises:
            ValidationError: RESOLVED without a YES/NO outcome.
            InvalidTransitionError: The snapshot would move a terminal
                market or otherwise break the market state machine.
        """
        if status == MarketStatus.RESOLVED and outcome not in (Outcome.YES, Outcome.NO):
            raise ValidationError(f"Resolved market {condition_id} needs a YES/NO outcome")

        existing = await self._store.get_market(condition_id)
        if existing is not None:
            if existing.status == status:
                self._log.debug(
                    "market_snapshot_unchanged",
                    condition_id=condition_id,
                    status=status.value,
                )
                return None
            ensure_market_transition(existing.status, status)

        market = Market(
            condition_id=condition_id,
            status=status,
            question=question if question is not None else (existing.question if existing else ""),
            outcome=outcome,
            end_date=end_date or (existing.end_date if existing else None),
        )
        await self._store.put_market(market)
        self._log.info(
            "market_snapshot_applied",
            condition_id=condition_id,
            status=market.status.value,
            outcome=market.outcome.value if market.outcome else None,
        )
        return market
