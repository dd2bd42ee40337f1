"""Platform fee on winning multi-leg positions.

The fee is a share of profit (payout minus initial stake), computed in
micro-units. It is moved from the user's custodial wallet to the commission
wallet with an EIP-2612 permit, so the platform wallet pays the gas.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from parlay.core.config import ConfigManager
from parlay.core.events import EventBus, publish_quietly
from parlay.domain.events import FeeEvent
from parlay.domain.money import (
    calculate_percentage,
    from_micro,
    is_positive,
    subtract_micro,
    to_micro,
)
from parlay.domain.models import Position, utcnow
from parlay.integrations.chain.permit import PermitTransfer
from parlay.services.credentials import CredentialsError, CredentialService
from parlay.services.metrics import MetricsEmitter
from parlay.services.record_store import RecordStore

log = structlog.get_logger()

# 2% of profit
DEFAULT_FEE_PERCENT_NUMERATOR = 2
DEFAULT_FEE_PERCENT_DENOMINATOR = 100
# Below 0.01 USDC a transfer is not worth the gas
MIN_FEE_MICRO = 10_000


@dataclass(frozen=True)
class FeeResult:
    success: bool
    fee_amount: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None


def calculate_platform_fee(
    payout: str,
    initial_stake: str,
    numerator: int = DEFAULT_FEE_PERCENT_NUMERATOR,
    denominator: int = DEFAULT_FEE_PERCENT_DENOMINATOR,
    min_fee_micro: int = MIN_FEE_MICRO,
) -> Optional[str]:
    """Fee owed on a win, as a 2dp decimal string, or None if nothing is due.

    >>> calculate_platform_fee("200.00", "100.00")
    '2.00'
    """
    profit_micro = subtract_micro(to_micro(payout), to_micro(initial_stake))
    if not is_positive(profit_micro):
        return None

    fee_micro = calculate_percentage(profit_micro, numerator, denominator)
    if fee_micro < min_fee_micro:
        log.debug("fee_below_minimum", fee_micro=fee_micro, min_fee_micro=min_fee_micro)
        return None
    return from_micro(fee_micro)


class FeeCollector:
    """Computes and collects the platform fee for a won position.

    collect() never raises; the outcome is returned and also recorded in the
    fee_collections table.
    """

    def __init__(
        self,
        config: ConfigManager,
        store: RecordStore,
        credentials: CredentialService,
        permit_transfer: Optional[PermitTransfer] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsEmitter] = None,
    ):
        self._store = store
        self._credentials = credentials
        self._permit_transfer = permit_transfer
        self._event_bus = event_bus
        self._metrics = metrics
        self._log = log.bind(component="fee_collector")

        self._numerator = config.get_int(
            "fees.percent_numerator", DEFAULT_FEE_PERCENT_NUMERATOR
        )
        self._denominator = config.get_int(
            "fees.percent_denominator", DEFAULT_FEE_PERCENT_DENOMINATOR
        )
        self._min_fee_micro = config.get_int("fees.min_fee_micro", MIN_FEE_MICRO)
        self._commission_wallet = config.get("fees.commission_wallet", "") or None

    def fee_for(self, position: Position, payout: str) -> Optional[str]:
        return calculate_platform_fee(
            payout,
            position.initial_stake,
            self._numerator,
            self._denominator,
            self._min_fee_micro,
        )

    async def collect(self, position: Position, payout: str) -> FeeResult:
        """Collect the fee owed on payout for position.

        A position with nothing owed returns success with fee "0".
        """
        fee_amount = self.fee_for(position, payout)
        if fee_amount is None:
            self._log.info(
                "no_platform_fee",
                position_id=position.position_id,
                payout=payout,
                initial_stake=position.initial_stake,
            )
            return FeeResult(success=True, fee_amount="0")

        self._log.info(
            "collecting_platform_fee",
            position_id=position.position_id,
            wallet=position.wallet_address,
            payout=payout,
            initial_stake=position.initial_stake,
            fee_amount=fee_amount,
        )
        result = await self._transfer(position, fee_amount)

        await self._store.record_fee_collection(
            position.position_id,
            position.wallet_address,
            fee_amount,
            result.success,
            tx_hash=result.tx_hash,
            error=result.error,
        )
        if self._metrics:
            self._metrics.record_fee_collection(result.success)

        event = FeeEvent(
            position_id=position.position_id,
            wallet_address=position.wallet_address,
            fee_amount=fee_amount,
            success=result.success,
            timestamp=utcnow().isoformat(),
            tx_hash=result.tx_hash,
            error=result.error,
        )
        channel = "fee.collected" if result.success else "fee.failed"
        await publish_quietly(self._event_bus, channel, event)

        if result.success:
            self._log.info(
                "platform_fee_collected",
                position_id=position.position_id,
                fee_amount=fee_amount,
                tx_hash=result.tx_hash,
            )
        else:
            self._log.warning(
                "fee_collection_failed",
                position_id=position.position_id,
                fee_amount=fee_amount,
                error=result.error,
            )
        return result

    async def _transfer(self, position: Position, fee_amount: str) -> FeeResult:
        if not self._commission_wallet:
            return FeeResult(
                success=False,
                fee_amount=fee_amount,
                error="Commission wallet not configured",
            )
        if self._permit_transfer is None:
            return FeeResult(
                success=False,
                fee_amount=fee_amount,
                error="Fee transfer not configured",
            )

        try:
            owner_key = self._credentials.private_key_for(position.wallet_address)
        except CredentialsError as e:
            return FeeResult(success=False, fee_amount=fee_amount, error=str(e))

        transfer = await self._permit_transfer.transfer(
            owner_key, self._commission_wallet, to_micro(fee_amount)
        )
        return FeeResult(
            success=transfer.success,
            fee_amount=fee_amount,
            tx_hash=transfer.tx_hash,
            error=transfer.error,
        )
