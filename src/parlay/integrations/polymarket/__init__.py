# Polymarket: order placement on the CLOB, tradability from Gamma

from parlay.integrations.polymarket.clob import (
    CLOBClient,
    CLOBClientError,
    CLOBConnectionError,
    InsufficientBalanceError,
    InsufficientLiquidityError,
    OrderRejectedError,
    OrderSigningError,
)
from parlay.integrations.polymarket.gamma import (
    GammaClient,
    GammaClientError,
    GammaUnavailableError,
)
from parlay.integrations.polymarket.types import (
    ApiCredentials,
    MarketInfo,
    OrderFill,
    OrderPlacement,
    OrderStatus,
    PolymarketSettings,
)

__all__ = [
    "ApiCredentials",
    "CLOBClient",
    "CLOBClientError",
    "CLOBConnectionError",
    "GammaClient",
    "GammaClientError",
    "GammaUnavailableError",
    "InsufficientBalanceError",
    "InsufficientLiquidityError",
    "MarketInfo",
    "OrderFill",
    "OrderPlacement",
    "OrderRejectedError",
    "OrderSigningError",
    "OrderStatus",
    "PolymarketSettings",
]
