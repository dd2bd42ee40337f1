"""Order placement on the Polymarket CLOB for one custodial wallet.

py-clob-client is synchronous, so each call runs in a small thread pool.
Its exceptions are translated into the typed errors below, which the bet
executor maps onto bet failure statuses. Placement is never retried: a
second attempt could fill twice. Order lookups are.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Optional

import structlog

from parlay.core.retry import NetworkError, RetryPolicy, retry_transient
from parlay.integrations.polymarket.types import (
    ApiCredentials,
    OrderFill,
    OrderPlacement,
    OrderStatus,
    PolymarketSettings,
)

log = structlog.get_logger()

PRICE_TICK = Decimal("0.01")
SIZE_STEP = Decimal("0.01")

ORDER_LOOKUP_RETRY = RetryPolicy(attempts=3, min_wait=1.0, max_wait=10.0)


class CLOBClientError(Exception):
    pass


class CLOBConnectionError(CLOBClientError, NetworkError):
    """The request never got an answer."""


class OrderRejectedError(CLOBClientError):
    pass


class InsufficientLiquidityError(CLOBClientError):
    """Nothing on the book to match within the price ceiling."""


class InsufficientBalanceError(CLOBClientError):
    """Wallet balance or allowance too low for the order."""


class OrderSigningError(CLOBClientError):
    """The wallet could not sign an order or the credential handshake."""


def translate_clob_error(error: Exception) -> CLOBClientError:
    """Typed error for a py-clob-client failure.

    PolyApiException carries the HTTP status; no status means the request
    never got an answer.
    """
    if isinstance(error, CLOBClientError):
        return error

    message = str(getattr(error, "error_msg", None) or error)
    lowered = message.lower()
    status_code = getattr(error, "status_code", None)

    if "not enough balance" in lowered or "allowance" in lowered:
        return InsufficientBalanceError(message)
    if "no orders found to match" in lowered or "liquidity" in lowered:
        return InsufficientLiquidityError(message)
    if "sign" in lowered and "signature" not in lowered:
        return OrderSigningError(message)
    if isinstance(error, (ConnectionError, OSError, asyncio.TimeoutError)):
        return CLOBConnectionError(message)
    if status_code is None and type(error).__name__ == "PolyApiException":
        return CLOBConnectionError(message)
    if status_code is not None and 400 <= int(status_code) < 500:
        return OrderRejectedError(message)
    return CLOBClientError(message)


def quantize_price(price: Decimal) -> Decimal:
    """Round down to the tick so the limit never exceeds the ceiling."""
    return price.quantize(PRICE_TICK, rounding=ROUND_DOWN)


def quantize_size(size: Decimal) -> Decimal:
    return size.quantize(SIZE_STEP, rounding=ROUND_DOWN)


def _as_dict(response: Any) -> dict[str, Any]:
    """The library answers with dicts, or objects on some code paths."""
    if isinstance(response, dict):
        return response
    return getattr(response, "__dict__", None) or {}


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value or "0"))


class CLOBClient:
    """Exchange client bound to one wallet's key and API credentials.

    Usage:
        async with CLOBClient(settings, private_key, credentials=creds) as clob:
            placement = await clob.place_fak_buy(token_id, price, size)
            fill = await clob.get_order(placement.order_id)
    """

    def __init__(
        self,
        settings: PolymarketSettings,
        private_key: str,
        credentials: Optional[ApiCredentials] = None,
        funder: Optional[str] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """
        Args:
            settings: Exchange URL, chain id and signature type.
            private_key: Signing key of the wallet this client trades for.
            credentials: L2 API credentials; without them only
                derive_api_credentials() works.
            funder: Proxy wallet holding the funds, if not the signer.
            executor: Thread pool for the library's blocking calls.
        """
        self._settings = settings
        self._private_key = private_key
        self._credentials = credentials
        self._funder = funder
        self._executor = executor or ThreadPoolExecutor(max_workers=4)
        self._client: Any = None
        self._log = log.bind(component="clob_client")

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Build the py-clob-client instance. No network traffic yet."""
        if self._client is not None:
            return

        from py_clob_client.client import ClobClient
        from py_clob_client.clob_types import ApiCreds

        creds = None
        if self._credentials is not None:
            creds = ApiCreds(
                api_key=self._credentials.api_key,
                api_secret=self._credentials.api_secret,
                api_passphrase=self._credentials.api_passphrase,
            )

        try:
            self._client = await self._blocking(
                ClobClient,
                host=self._settings.clob_url.rstrip("/"),
                key=self._private_key,
                chain_id=self._settings.chain_id,
                signature_type=self._settings.signature_type,
                funder=self._funder,
                creds=creds,
            )
        except Exception as e:
            raise OrderSigningError(f"Failed to create CLOB client: {e}") from e
        self._log.debug("clob_client_ready", url=self._settings.clob_url, has_creds=creds is not None)

    async def close(self) -> None:
        self._client = None

    async def __aenter__(self) -> "CLOBClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _library(self) -> Any:
        if self._client is None:
            raise CLOBClientError("Client not connected. Call connect() first.")
        return self._client

    async def _blocking(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def derive_api_credentials(self) -> ApiCredentials:
        """Create or derive the wallet's L2 API credentials (L1 auth).

        Raises:
            OrderSigningError: The wallet could not sign the auth message.
        """
        client = self._library()
        try:
            creds = await self._blocking(client.create_or_derive_api_creds)
        except Exception as e:
            raise OrderSigningError(f"Failed to sign credential derivation: {e}") from e
        return ApiCredentials(
            api_key=creds.api_key,
            api_secret=creds.api_secret,
            api_passphrase=creds.api_passphrase,
        )

    async def place_fak_buy(self, token_id: str, price: Decimal, size: Decimal) -> OrderPlacement:
        """Submit one fill-and-kill BUY.

        Price is rounded down to the tick and size down to 0.01 shares.

        Raises:
            OrderRejectedError: The exchange refused the order, or the size
                rounds to nothing.
            InsufficientLiquidityError: Nothing matched within the price.
            InsufficientBalanceError: The wallet cannot pay.
            CLOBConnectionError: The request failed in transit.
            CLOBClientError: The exchange answered without an order id.
        """
        from py_clob_client.clob_types import OrderArgs, OrderType
        from py_clob_client.order_builder.constants import BUY

        client = self._library()
        price = quantize_price(price)
        size = quantize_size(size)
        if size <= 0:
            raise OrderRejectedError(f"Invalid order size {size}")

        submitted_at = datetime.now(timezone.utc)
        self._log.info("submitting_fak_buy", token_id=token_id, price=str(price), size=str(size))
        try:
            signed = await self._blocking(
                client.create_order,
                OrderArgs(token_id=token_id, price=float(price), size=float(size), side=BUY),
            )
            response = _as_dict(await self._blocking(client.post_order, signed, OrderType.FAK))
        except Exception as e:
            error = translate_clob_error(e)
            self._log.warning(
                "fak_buy_failed",
                token_id=token_id,
                error=str(error),
                error_type=type(error).__name__,
            )
            raise error from e

        if response.get("success") is False or response.get("errorMsg"):
            message = response.get("errorMsg") or "Order rejected"
            error = translate_clob_error(Exception(message))
            # An unrecognised refusal is still a refusal
            raise error if type(error) is not CLOBClientError else OrderRejectedError(message)

        order_id = response.get("orderID") or response.get("orderId") or response.get("id")
        if not order_id:
            raise CLOBClientError("No order ID returned")

        status = OrderStatus.parse(response.get("status"))
        self._log.info("fak_buy_accepted", order_id=order_id, status=status.value)
        return OrderPlacement(order_id=order_id, status=status, submitted_at=submitted_at)

    @retry_transient(ORDER_LOOKUP_RETRY)
    async def get_order(self, order_id: str) -> OrderFill:
        """Matched size and price of an order.

        Raises:
            CLOBConnectionError: Still unreachable after the lookup retries.
            CLOBClientError: Any other lookup failure.
        """
        client = self._library()
        try:
            order = _as_dict(await self._blocking(client.get_order, order_id))
        except Exception as e:
            raise translate_clob_error(e) from e

        return OrderFill(
            order_id=order_id,
            status=OrderStatus.parse(order.get("status")),
            filled_size=_decimal(order.get("size_matched")),
            price=_decimal(order.get("price")),
            original_size=_decimal(order.get("original_size")),
        )

    async def cancel_order(self, order_id: str) -> bool:
        """Best-effort cancel; False if the exchange refused or was unreachable."""
        client = self._library()
        try:
            await self._blocking(client.cancel, order_id)
        except Exception as e:
            self._log.warning("order_cancel_refused", order_id=order_id, error=str(e))
            return False
        self._log.info("order_cancelled", order_id=order_id)
        return True
