"""
Unit tests for the Polymarket CLOB and Gamma clients.

The py-clob-client instance is replaced by a MagicMock; Gamma requests go
through an httpx MockTransport.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from parlay.core.retry import RetryPolicy, TransientError
from parlay.integrations.polymarket.clob import (
    CLOBClient,
    CLOBClientError,
    CLOBConnectionError,
    InsufficientBalanceError,
    InsufficientLiquidityError,
    OrderRejectedError,
    OrderSigningError,
    quantize_price,
    quantize_size,
    translate_clob_error,
)
from parlay.integrations.polymarket.gamma import (
    GammaClient,
    GammaClientError,
    GammaUnavailableError,
    parse_market_info,
)
from parlay.integrations.polymarket.types import OrderStatus, PolymarketSettings


class PolyApiException(Exception):
    """Stand-in with the attributes of py-clob-client's exception."""

    def __init__(self, error_msg, status_code=None):
        super().__init__(error_msg)
        self.error_msg = error_msg
        self.status_code = status_code


@pytest.fixture
def clob():
    client = CLOBClient(PolymarketSettings(), private_key="0x" + "11" * 32)
    client._client = MagicMock()
    return client


class TestTranslateClobError:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (PolyApiException("not enough balance / allowance", 400), InsufficientBalanceError),
            (PolyApiException("no orders found to match with FAK order", 400), InsufficientLiquidityError),
            (PolyApiException("failed to sign order"), OrderSigningError),
            (PolyApiException("Request exception!"), CLOBConnectionError),
            (ConnectionResetError("reset"), CLOBConnectionError),
            (PolyApiException("invalid tick size", 400), OrderRejectedError),
            (PolyApiException("internal", 500), CLOBClientError),
        ],
    )
    def test_mapping(self, error, expected):
        assert type(translate_clob_error(error)) is expected

    def test_typed_error_passes_through(self):
        error = OrderRejectedError("x")
        assert translate_clob_error(error) is error

    def test_connection_errors_are_transient(self):
        assert isinstance(translate_clob_error(ConnectionResetError("reset")), TransientError)
        assert not isinstance(translate_clob_error(PolyApiException("bad", 400)), TransientError)


class TestQuantize:
    def test_rounds_down(self):
        assert quantize_price(Decimal("0.5125")) == Decimal("0.51")
        assert quantize_size(Decimal("199.999")) == Decimal("199.99")


class TestPlaceFakBuy:
    @pytest.mark.asyncio
    async def test_success(self, clob):
        clob._client.post_order.return_value = {
            "success": True, "orderID": "0xorder", "status": "matched",
        }

        placement = await clob.place_fak_buy("tok", Decimal("0.5125"), Decimal("200"))

        assert placement.order_id == "0xorder"
        assert placement.status == OrderStatus.MATCHED
        order_args = clob._client.create_order.call_args.args[0]
        assert order_args.price == 0.51
        assert order_args.size == 200.0

    @pytest.mark.asyncio
    async def test_error_message_rejects(self, clob):
        clob._client.post_order.return_value = {"success": False, "errorMsg": "order crosses book"}
        with pytest.raises(OrderRejectedError, match="crosses"):
            await clob.place_fak_buy("tok", Decimal("0.5"), Decimal("10"))

    @pytest.mark.asyncio
    async def test_missing_order_id(self, clob):
        clob._client.post_order.return_value = {"success": True}
        with pytest.raises(CLOBClientError, match="No order ID"):
            await clob.place_fak_buy("tok", Decimal("0.5"), Decimal("10"))

    @pytest.mark.asyncio
    async def test_zero_size_rejected_locally(self, clob):
        with pytest.raises(OrderRejectedError):
            await clob.place_fak_buy("tok", Decimal("0.5"), Decimal("0.001"))
        clob._client.create_order.assert_not_called()

    @pytest.mark.asyncio
    async def test_library_error_translated(self, clob):
        clob._client.post_order.side_effect = PolyApiException("not enough balance", 400)
        with pytest.raises(InsufficientBalanceError):
            await clob.place_fak_buy("tok", Decimal("0.5"), Decimal("10"))

    @pytest.mark.asyncio
    async def test_requires_connect(self):
        client = CLOBClient(PolymarketSettings(), private_key="0x" + "11" * 32)
        with pytest.raises(CLOBClientError, match="not connected"):
            await client.place_fak_buy("tok", Decimal("0.5"), Decimal("10"))


class TestGetOrder:
    @pytest.mark.asyncio
    async def test_parses_fill(self, clob):
        clob._client.get_order.return_value = {
            "status": "MATCHED", "size_matched": "195.5", "price": "0.51", "original_size": "200",
        }
        fill = await clob.get_order("0xorder")
        assert fill.is_filled
        assert fill.filled_size == Decimal("195.5")
        assert fill.price == Decimal("0.51")

    @pytest.mark.asyncio
    async def test_cancelled_spelling(self, clob):
        clob._client.get_order.return_value = {"status": "canceled", "size_matched": "0"}
        fill = await clob.get_order("0xorder")
        assert fill.status == OrderStatus.CANCELLED
        assert fill.is_unfilled_final

    @pytest.mark.asyncio
    async def test_cancel_order(self, clob):
        assert await clob.cancel_order("0xorder") is True
        clob._client.cancel.side_effect = PolyApiException("gone", 404)
        assert await clob.cancel_order("0xorder") is False


FAST_RETRY = RetryPolicy(attempts=2, min_wait=0, max_wait=0, jitter=False)


def _gamma_with(handler) -> GammaClient:
    gamma = GammaClient(PolymarketSettings(gamma_url="https://gamma.test"), retry_policy=FAST_RETRY)
    gamma._client = httpx.AsyncClient(
        base_url="https://gamma.test", transport=httpx.MockTransport(handler)
    )
    return gamma


class TestGamma:
    def test_parse_market_info(self):
        info = parse_market_info({
            "conditionId": "0xc",
            "question": "Rain?",
            "active": True,
            "closed": False,
            "acceptingOrders": False,
            "endDate": "2026-07-01T12:00:00Z",
        })
        assert info.accepting_orders is False
        assert info.end_date.tzinfo is not None
        assert info.is_tradable() is False

    def test_bare_end_date_is_utc(self):
        info = parse_market_info({"conditionId": "0xc", "active": True, "endDateIso": "2026-07-01"})
        assert info.end_date == datetime(2026, 7, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_get_market_info(self):
        def handler(request):
            assert request.url.params["condition_ids"] == "0xC"
            return httpx.Response(200, json=[
                {"conditionId": "0xother", "active": True},
                {"conditionId": "0xc", "active": True, "closed": True},
            ])

        gamma = _gamma_with(handler)
        info = await gamma.get_market_info("0xC")
        await gamma.close()

        assert info.condition_id == "0xc"
        assert info.closed is True

    @pytest.mark.asyncio
    async def test_unknown_market(self):
        gamma = _gamma_with(lambda request: httpx.Response(404))
        assert await gamma.get_market_info("0xc") is None
        await gamma.close()

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        responses = iter([
            httpx.Response(503),
            httpx.Response(200, json={"data": [{"conditionId": "0xc", "active": True}]}),
        ])
        gamma = _gamma_with(lambda request: next(responses))

        info = await gamma.get_market_info("0xc")
        await gamma.close()

        assert info.active is True

    @pytest.mark.asyncio
    async def test_persistent_outage_raises_transient(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        gamma = _gamma_with(handler)
        with pytest.raises(GammaUnavailableError) as exc_info:
            await gamma.get_market_info("0xc")
        await gamma.close()

        assert len(calls) == 2
        assert isinstance(exc_info.value, TransientError)

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(422)

        gamma = _gamma_with(handler)
        with pytest.raises(GammaClientError):
            await gamma.get_market_info("0xc")
        await gamma.close()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_requires_connect(self):
        gamma = GammaClient(PolymarketSettings())
        with pytest.raises(GammaClientError):
            await gamma.get_market_info("0xc")
