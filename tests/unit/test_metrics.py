"""
Unit tests for Prometheus metrics emission.
"""
from prometheus_client import CollectorRegistry

from parlay.services.metrics import MetricsEmitter


class TestMetricsEmitter:
    def test_own_registry_per_instance(self):
        first = MetricsEmitter()
        second = MetricsEmitter()
        assert first.registry is not second.registry

    def test_records_appear_in_output(self):
        emitter = MetricsEmitter(registry=CollectorRegistry())
        emitter.record_bet_status("FILLED")
        emitter.record_position_status("WON")
        emitter.record_skipped_leg()
        emitter.record_fill(0.8, 0.99)
        emitter.record_feed_batch("bet_executor", "ok", 0.02)
        emitter.record_fee_collection(False)
        emitter.record_order_cancellation(True)
        emitter.update_uptime(12.0)

        output = emitter.get_metrics()

        assert 'parlay_bet_transitions_total{status="FILLED"} 1.0' in output
        assert 'parlay_position_transitions_total{status="WON"} 1.0' in output
        assert "parlay_skipped_legs_total 1.0" in output
        assert 'parlay_fee_collections_total{result="failed"} 1.0' in output
        assert 'parlay_feed_batches_total{subscription="bet_executor",result="ok"} 1.0' in output
        assert "parlay_uptime_seconds 12.0" in output

    def test_reconciliation_mismatch_counter(self):
        emitter = MetricsEmitter()
        emitter.record_reconciliation_mismatch()
        emitter.record_reconciliation_mismatch()
        assert "parlay_reconciliation_mismatches_total 2.0" in emitter.get_metrics()
