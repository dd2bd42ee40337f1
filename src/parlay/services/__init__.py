"""Services - record store, change feed and the settlement handlers."""

from parlay.services.metrics import MetricsEmitter
from parlay.services.record_store import RecordStore
from parlay.services.change_feed import ChangeFeed
from parlay.services.credentials import CredentialService, CredentialsError
from parlay.services.chains import ChainService, LegRequest
from parlay.services.markets import MarketService
from parlay.services.fees import FeeCollector, FeeResult, calculate_platform_fee
from parlay.services.reconciliation import PayoutReconciler
from parlay.services.bet_executor import BetExecutor, classify_bet_error
from parlay.services.market_resolution import MarketResolutionHandler
from parlay.services.position_termination import PositionTerminationHandler
from parlay.services.health import HealthServer, HealthStatusCollector

__all__ = [
    "MetricsEmitter",
    "RecordStore",
    "ChangeFeed",
    "CredentialService",
    "CredentialsError",
    "ChainService",
    "LegRequest",
    "MarketService",
    "FeeCollector",
    "FeeResult",
    "calculate_platform_fee",
    "PayoutReconciler",
    "BetExecutor",
    "classify_bet_error",
    "MarketResolutionHandler",
    "PositionTerminationHandler",
    "HealthServer",
    "HealthStatusCollector",
]
