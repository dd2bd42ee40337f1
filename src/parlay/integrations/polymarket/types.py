"""Polymarket-specific types.

Settings, credentials and the normalized order/market shapes the settlement
handlers consume. Prices and sizes are Decimal here; handlers convert to
micro-units at their boundary.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    """Status of an order on the CLOB."""

    LIVE = "LIVE"           # Resting on the book
    MATCHED = "MATCHED"     # Matched, settling on-chain
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    UNMATCHED = "UNMATCHED" # FAK remainder killed with nothing matched
    DELAYED = "DELAYED"     # Accepted but matching is delayed
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OrderStatus":
        """Normalize the exchange's status string (it uses lower case)."""
        if not value:
            return cls.UNKNOWN
        normalized = value.upper()
        if normalized == "CANCELED":
            normalized = "CANCELLED"
        return cls.__members__.get(normalized, cls.UNKNOWN)

    @property
    def is_final(self) -> bool:
        """No further fills can arrive for an order in this status."""
        return self in (
            OrderStatus.MATCHED,
            OrderStatus.FILLED,
            OrderStatus.CANCELLED,
            OrderStatus.EXPIRED,
            OrderStatus.UNMATCHED,
        )


@dataclass(frozen=True)
class PolymarketSettings:
    """Connection settings for Polymarket.

    Attributes:
        clob_url: CLOB HTTP API base URL.
        gamma_url: Gamma API base URL for market metadata.
        chain_id: Polygon chain id used for order signing.
        signature_type: Signature type (0=EOA, 1=Magic, 2=Browser proxy).
        http_proxy: Optional HTTP proxy for routing requests.
    """

    clob_url: str = "https://clob.polymarket.com"
    gamma_url: str = "https://gamma-api.polymarket.com"
    chain_id: int = 137
    signature_type: int = 0
    http_proxy: Optional[str] = None


@dataclass(frozen=True)
class ApiCredentials:
    """L2 API credentials bound to one wallet."""

    api_key: str
    api_secret: str
    api_passphrase: str


@dataclass(frozen=True)
class OrderPlacement:
    """Response to an order submission."""

    order_id: str
    status: OrderStatus
    submitted_at: datetime
    error: Optional[str] = None


@dataclass(frozen=True)
class OrderFill:
    """Fill state of an order as reported by the exchange."""

    order_id: str
    status: OrderStatus
    filled_size: Decimal
    price: Decimal
    original_size: Decimal = Decimal("0")

    @property
    def is_filled(self) -> bool:
        return self.filled_size > 0

    @property
    def is_unfilled_final(self) -> bool:
        """Final status and nothing ever matched."""
        return self.status.is_final and self.filled_size == 0


@dataclass(frozen=True)
class MarketInfo:
    """Tradability snapshot of a market from the Gamma API."""

    condition_id: str
    question: str
    active: bool
    closed: bool
    accepting_orders: bool = True
    end_date: Optional[datetime] = None

    def is_tradable(self, min_end_date: Optional[datetime] = None) -> bool:
        """True if orders can be placed and the market ends late enough."""
        if not self.active or self.closed or not self.accepting_orders:
            return False
        if min_end_date is not None and self.end_date is not None:
            return self.end_date >= min_end_date
        return True

    def hours_until_end(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.end_date is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (self.end_date - now).total_seconds() / 3600
