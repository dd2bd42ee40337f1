"""Adapters for the systems parlay settles against: Polymarket and Polygon."""

from parlay.integrations.chain.client import PolygonClient
from parlay.integrations.chain.keystore import KeystoreSigner
from parlay.integrations.chain.permit import PermitTransfer
from parlay.integrations.polymarket.clob import CLOBClient
from parlay.integrations.polymarket.gamma import GammaClient
from parlay.integrations.polymarket.types import MarketInfo, OrderFill, PolymarketSettings

__all__ = [
    "CLOBClient",
    "GammaClient",
    "KeystoreSigner",
    "MarketInfo",
    "OrderFill",
    "PermitTransfer",
    "PolygonClient",
    "PolymarketSettings",
]
