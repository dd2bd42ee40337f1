"""Market tradability lookups against the Polymarket Gamma API.

The executor asks Gamma whether a leg's market still takes orders before it
places one. The resolution handler asks again when skipping ahead past
closed legs. Only the tradability fields of a market are read.
"""

from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog

from parlay.core.retry import NetworkError, RetryPolicy, retry_transient
from parlay.integrations.polymarket.types import MarketInfo, PolymarketSettings

log = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 15.0
GAMMA_RETRY = RetryPolicy(attempts=3, min_wait=1.0, max_wait=10.0)


class GammaClientError(Exception):
    """Gamma refused the request or the client is not connected."""


class GammaUnavailableError(GammaClientError, NetworkError):
    """Gamma did not answer, or answered 5xx. Retried."""


def _parse_end_date(value: Optional[str]) -> Optional[datetime]:
    """ISO timestamp or bare date; always returned timezone-aware."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_market_info(data: dict[str, Any]) -> MarketInfo:
    return MarketInfo(
        condition_id=data.get("conditionId", ""),
        question=data.get("question", ""),
        active=bool(data.get("active", False)),
        closed=bool(data.get("closed", False)),
        accepting_orders=bool(data.get("acceptingOrders", True)),
        end_date=_parse_end_date(data.get("endDate") or data.get("endDateIso")),
    )


class GammaClient:
    """httpx client for GET /markets?condition_ids=...

    Usage:
        async with GammaClient(settings) as gamma:
            info = await gamma.get_market_info(condition_id)
    """

    def __init__(
        self,
        settings: PolymarketSettings,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy = GAMMA_RETRY,
    ):
        self._base_url = settings.gamma_url.rstrip("/")
        self._timeout = timeout
        self._proxy = settings.http_proxy
        self._client: Optional[httpx.AsyncClient] = None
        self._fetch_markets = retry_transient(retry_policy)(self._request_markets)
        self._log = log.bind(component="gamma_client")

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=httpx.AsyncHTTPTransport(proxy=self._proxy) if self._proxy else None,
            headers={"Accept": "application/json"},
        )
        self._log.info("gamma_client_connected", base_url=self._base_url, proxied=bool(self._proxy))

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def __aenter__(self) -> "GammaClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request_markets(self, condition_id: str) -> list[dict[str, Any]]:
        if self._client is None:
            raise GammaClientError("Client not connected. Call connect() first.")
        try:
            response = await self._client.get("/markets", params={"condition_ids": condition_id})
        except httpx.TransportError as e:
            raise GammaUnavailableError(f"Gamma request failed: {e}", cause=e) from e

        if response.status_code == 404:
            return []
        if response.status_code >= 500:
            raise GammaUnavailableError(f"Gamma /markets returned {response.status_code}")
        if response.status_code >= 400:
            raise GammaClientError(f"Gamma /markets returned {response.status_code}")

        payload = response.json()
        return payload if isinstance(payload, list) else payload.get("data", [])

    async def get_market_info(self, condition_id: str) -> Optional[MarketInfo]:
        """Tradability snapshot for condition_id, or None if Gamma does not know it.

        Raises:
            GammaUnavailableError: Gamma stayed down through every retry.
            GammaClientError: Any other refusal.
        """
        wanted = condition_id.lower()
        for market in await self._fetch_markets(condition_id):
            if market.get("conditionId", "").lower() == wanted:
                return parse_market_info(market)
        self._log.debug("gamma_market_missing", condition_id=condition_id)
        return None
