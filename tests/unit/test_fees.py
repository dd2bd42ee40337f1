"""
Unit tests for platform fee calculation and collection.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from parlay.integrations.chain.permit import PermitTransferResult
from parlay.services.credentials import CredentialsError
from parlay.services.fees import FeeCollector, calculate_platform_fee
from tests.factories import WALLET, make_config, make_position


class TestCalculatePlatformFee:
    def test_two_percent_of_profit(self):
        assert calculate_platform_fee("200.00", "100.00") == "2.00"
        assert calculate_platform_fee("1000", "10") == "19.80"

    def test_no_fee_without_profit(self):
        assert calculate_platform_fee("100.00", "100.00") is None
        assert calculate_platform_fee("50.00", "100.00") is None

    def test_below_minimum(self):
        assert calculate_platform_fee("100.40", "100.00") is None
        assert calculate_platform_fee("100.50", "100.00") == "0.01"

    def test_truncates(self):
        assert calculate_platform_fee("133.33", "100.00") == "0.66"

    def test_custom_rate(self):
        assert calculate_platform_fee("200", "100", numerator=5, denominator=100) == "5.00"


@pytest.fixture
def permit_transfer():
    transfer = MagicMock()
    transfer.transfer = AsyncMock(
        return_value=PermitTransferResult(success=True, tx_hash="0xtx")
    )
    return transfer


def _collector(mock_store, mock_credentials, permit_transfer, mock_event_bus, values=None):
    config = make_config(values if values is not None else {"fees.commission_wallet": "0xcomm"})
    return FeeCollector(
        config=config,
        store=mock_store,
        credentials=mock_credentials,
        permit_transfer=permit_transfer,
        event_bus=mock_event_bus,
    )


class TestCollect:
    @pytest.mark.asyncio
    async def test_collects_and_records(
        self, mock_store, mock_credentials, permit_transfer, mock_event_bus
    ):
        collector = _collector(mock_store, mock_credentials, permit_transfer, mock_event_bus)

        result = await collector.collect(make_position(initial_stake="100.00"), "200.000000")

        assert result.success is True
        assert result.fee_amount == "2.00"
        assert result.tx_hash == "0xtx"
        owner_key, recipient, amount = permit_transfer.transfer.call_args.args
        assert owner_key == mock_credentials.private_key_for.return_value
        assert recipient == "0xcomm"
        assert amount == 2_000_000
        mock_store.record_fee_collection.assert_awaited_once_with(
            "pos_1", WALLET, "2.00", True, tx_hash="0xtx", error=None
        )
        assert mock_event_bus.publish.call_args.args[0] == "fee.collected"

    @pytest.mark.asyncio
    async def test_nothing_owed(self, mock_store, mock_credentials, permit_transfer, mock_event_bus):
        collector = _collector(mock_store, mock_credentials, permit_transfer, mock_event_bus)

        result = await collector.collect(make_position(initial_stake="100.00"), "100.000000")

        assert result.success is True
        assert result.fee_amount == "0"
        permit_transfer.transfer.assert_not_called()
        mock_store.record_fee_collection.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_commission_wallet(
        self, mock_store, mock_credentials, permit_transfer, mock_event_bus
    ):
        collector = _collector(
            mock_store, mock_credentials, permit_transfer, mock_event_bus, values={}
        )

        result = await collector.collect(make_position(), "200.000000")

        assert result.success is False
        assert result.error == "Commission wallet not configured"
        mock_store.record_fee_collection.assert_awaited_once()
        assert mock_event_bus.publish.call_args.args[0] == "fee.failed"

    @pytest.mark.asyncio
    async def test_missing_key(self, mock_store, mock_credentials, permit_transfer, mock_event_bus):
        mock_credentials.private_key_for.side_effect = CredentialsError("No key for wallet")
        collector = _collector(mock_store, mock_credentials, permit_transfer, mock_event_bus)

        result = await collector.collect(make_position(), "200.000000")

        assert result.success is False
        assert result.error == "No key for wallet"
        permit_transfer.transfer.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_transfer_is_returned(
        self, mock_store, mock_credentials, permit_transfer, mock_event_bus
    ):
        permit_transfer.transfer.return_value = PermitTransferResult(
            success=False, error="Insufficient balance. Available: 1.00 USDC"
        )
        collector = _collector(mock_store, mock_credentials, permit_transfer, mock_event_bus)

        result = await collector.collect(make_position(), "200.000000")

        assert result.success is False
        assert result.error.startswith("Insufficient balance")
