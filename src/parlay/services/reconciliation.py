"""Payout Reconciler - best-effort on-chain cross-check of settlements.

A WON settlement computes its payout from the fill (shares * 1 USDC). The
reconciler looks for a matching USDC Transfer into the custodial wallet.
Disagreement is an observability signal only: it is logged and counted,
and never changes a record.
"""

from typing import Optional

import structlog

from parlay.core.config import ConfigManager
from parlay.domain.money import from_micro, to_micro
from parlay.integrations.chain.client import PolygonClient
from parlay.services.metrics import MetricsEmitter

log = structlog.get_logger()

DEFAULT_LOOKBACK_BLOCKS = 5_000
# Redemptions can be short by rounding on the exchange side
DEFAULT_TOLERANCE_MICRO = 10_000


class PayoutReconciler:
    """Compares an expected payout against the wallet's incoming transfers."""

    def __init__(
        self,
        config: ConfigManager,
        polygon_client: Optional[PolygonClient],
        metrics: Optional[MetricsEmitter] = None,
    ):
        self._polygon = polygon_client
        self._metrics = metrics
        self._log = log.bind(component="payout_reconciler")
        self._enabled = config.get_bool("reconciliation.enabled", False)
        self._lookback_blocks = config.get_int(
            "reconciliation.lookback_blocks", DEFAULT_LOOKBACK_BLOCKS
        )
        self._tolerance_micro = config.get_int(
            "reconciliation.tolerance_micro", DEFAULT_TOLERANCE_MICRO
        )

    @property
    def enabled(self) -> bool:
        return self._enabled and self._polygon is not None

    async def verify(
        self,
        wallet_address: str,
        expected_payout: str,
        from_block: Optional[int] = None,
        bet_id: Optional[str] = None,
    ) -> Optional[bool]:
        """Check for a transfer matching expected_payout.

        Returns:
            True on a match, False on a mismatch, None if the check did not
            run (disabled or RPC failure). Never raises.
        """
        if not self.enabled:
            return None

        expected_micro = to_micro(expected_payout)
        try:
            if from_block is None:
                latest = await self._polygon.get_block_number()
                from_block = max(0, latest - self._lookback_blocks)
            transfers = await self._polygon.get_usdc_transfers_to(
                wallet_address, from_block
            )
        except Exception as e:
            self._log.warning(
                "payout_reconciliation_error",
                bet_id=bet_id,
                wallet=wallet_address,
                error=str(e),
            )
            return None

        for transfer in transfers:
            if abs(transfer.value_micro - expected_micro) <= self._tolerance_micro:
                self._log.debug(
                    "payout_reconciled",
                    bet_id=bet_id,
                    tx_hash=transfer.tx_hash,
                    amount=from_micro(transfer.value_micro, 6),
                )
                return True

        received = sum(t.value_micro for t in transfers)
        self._log.warning(
            "payout_reconciliation_mismatch",
            bet_id=bet_id,
            wallet=wallet_address,
            expected=expected_payout,
            received_total=from_micro(received, 6),
            transfers=len(transfers),
            from_block=from_block,
        )
        if self._metrics:
            self._metrics.record_reconciliation_mismatch()
        return False
