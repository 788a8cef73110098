"""
Unit tests for Prometheus metrics emission.
"""
from decimal import Decimal

from arbiter.services.metrics import MetricsEmitter


class TestMetricsEmitter:
    """Tests for MetricsEmitter."""

    def test_emitters_do_not_share_registries(self):
        first = MetricsEmitter()
        second = MetricsEmitter()
        first.record_accepted("crypto")

        assert first.registry.get_sample_value("arbiter_wagers_accepted_total", {"wager_type": "crypto"}) == 1
        assert second.registry.get_sample_value("arbiter_wagers_accepted_total", {"wager_type": "crypto"}) is None

    def test_record_settlement(self):
        metrics = MetricsEmitter()
        metrics.record_settlement(
            "crypto",
            "win",
            "fine_sweep",
            simulated=True,
            amount=Decimal("1.5"),
            platform_fee=Decimal("0.12"),
        )

        registry = metrics.registry
        labels = {"wager_type": "crypto", "outcome": "win", "trigger": "fine_sweep", "simulated": "true"}
        assert registry.get_sample_value("arbiter_settlements_total", labels) == 1
        assert registry.get_sample_value("arbiter_settlement_volume_sol_total", {"outcome": "win"}) == 1.5
        assert registry.get_sample_value("arbiter_platform_fees_sol_total") == 0.12

    def test_frozen_ignores_zero(self):
        metrics = MetricsEmitter()
        metrics.record_frozen(0)
        metrics.record_frozen(3)
        assert metrics.registry.get_sample_value("arbiter_wagers_frozen_total") == 3

    def test_text_output(self):
        metrics = MetricsEmitter()
        metrics.record_failure("resolve", "QuoteUnavailable")
        metrics.update_in_flight(2)

        output = metrics.get_metrics()
        assert 'arbiter_settlement_failures_total{operation="resolve",reason="QuoteUnavailable"} 1.0' in output
        assert "arbiter_settlements_in_flight 2.0" in output
        assert 'version="1.0.0"' in output
