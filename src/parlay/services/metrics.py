"""
Prometheus metrics emission for parlay.

All metrics use the 'parlay_' prefix and live in the emitter's own registry.
"""
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from parlay import __version__


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_bet_status("FILLED")
        emitter.record_fill(latency_seconds=0.8, fill_ratio=1.0)
        metrics_output = emitter.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "parlay",
            "Parlay settlement engine information",
            registry=self._registry,
        )
        self._info.info({"version": __version__, "component": "parlay"})

        self._uptime = Gauge(
            "parlay_uptime_seconds",
            "Process uptime in seconds",
            registry=self._registry,
        )

        # Settlement pipeline
        self._bets_total = Counter(
            "parlay_bet_transitions_total",
            "Bet status transitions written by handlers",
            ["status"],
            registry=self._registry,
        )

        self._positions_total = Counter(
            "parlay_position_transitions_total",
            "Position status transitions written by handlers",
            ["status"],
            registry=self._registry,
        )

        self._skipped_legs_total = Counter(
            "parlay_skipped_legs_total",
            "Legs skipped because their market closed before being reached",
            registry=self._registry,
        )

        self._fill_latency = Histogram(
            "parlay_order_fill_latency_seconds",
            "Time from order placement to confirmed fill",
            buckets=[0.1, 0.25, 0.5, 1.0, 1.5, 2.0, 3.0, 5.0, 10.0],
            registry=self._registry,
        )

        self._fill_ratio = Histogram(
            "parlay_order_fill_ratio",
            "Filled stake as a fraction of requested stake",
            buckets=[0.1, 0.25, 0.5, 0.75, 0.9, 0.95, 0.99, 1.0],
            registry=self._registry,
        )

        # Change feed
        self._feed_batches_total = Counter(
            "parlay_feed_batches_total",
            "Change-feed batches delivered",
            ["subscription", "result"],
            registry=self._registry,
        )

        self._feed_batch_duration = Histogram(
            "parlay_feed_batch_duration_seconds",
            "Handler time per change-feed batch",
            ["subscription"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self._registry,
        )

        # Money movement
        self._fees_total = Counter(
            "parlay_fee_collections_total",
            "Platform fee collection attempts",
            ["result"],
            registry=self._registry,
        )

        self._reconciliation_mismatches = Counter(
            "parlay_reconciliation_mismatches_total",
            "Settled payouts that disagree with the on-chain transfer log",
            registry=self._registry,
        )

        self._order_cancellations_total = Counter(
            "parlay_order_cancellations_total",
            "Exchange order cancellations during position termination",
            ["result"],
            registry=self._registry,
        )

    def record_bet_status(self, status: str) -> None:
        self._bets_total.labels(status=status).inc()

    def record_position_status(self, status: str) -> None:
        self._positions_total.labels(status=status).inc()

    def record_skipped_leg(self) -> None:
        self._skipped_legs_total.inc()

    def record_fill(self, latency_seconds: float, fill_ratio: float) -> None:
        """Record a confirmed fill.

        Args:
            latency_seconds: Placement to confirmation.
            fill_ratio: actual_stake / requested_stake.
        """
        self._fill_latency.observe(latency_seconds)
        self._fill_ratio.observe(fill_ratio)

    def record_feed_batch(self, subscription: str, result: str, duration_seconds: float) -> None:
        self._feed_batches_total.labels(subscription=subscription, result=result).inc()
        self._feed_batch_duration.labels(subscription=subscription).observe(duration_seconds)

    def record_fee_collection(self, success: bool) -> None:
        self._fees_total.labels(result="collected" if success else "failed").inc()

    def record_reconciliation_mismatch(self) -> None:
        self._reconciliation_mismatches.inc()

    def record_order_cancellation(self, success: bool) -> None:
        self._order_cancellations_total.labels(result="ok" if success else "failed").inc()

    def update_uptime(self, seconds: float) -> None:
        self._uptime.set(seconds)

    def get_metrics(self) -> str:
        """Get Prometheus metrics output in text format."""
        return generate_latest(self._registry).decode("utf-8")

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry
