"""
Tests for payoutwatch/metrics.py
"""

from payoutwatch.metrics import MetricsCollector


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestMetricsCollector:
    """Test MetricsCollector class."""

    def test_record_polls(self):
        """Poll outcomes are counted separately."""
        metrics = MetricsCollector()
        metrics.record_poll("tracking")
        metrics.record_poll("tracking")
        metrics.record_poll("invalid_reading")
        metrics.record_poll("oracle_unavailable")

        stats = metrics.get_stats()
        assert stats["polls"]["tracking"] == 2
        assert stats["invalid_readings"] == 1
        assert stats["oracle_failures"] == 1

    def test_collect_format(self):
        """Output is Prometheus text with labels."""
        clock = FakeClock()
        metrics = MetricsCollector(clock=clock)
        metrics.record_poll("cycle_closed")
        metrics.record_payout(900.0)
        metrics.record_deliveries(4, 1)
        clock.now += 60

        output = metrics.collect()
        assert "# TYPE payoutwatch_polls_total counter" in output
        assert 'payoutwatch_polls_total{outcome="cycle_closed"} 1' in output
        assert "payoutwatch_payouts_total 1" in output
        assert 'payoutwatch_deliveries_total{result="delivered"} 4' in output
        assert 'payoutwatch_deliveries_total{result="failed"} 1' in output
        assert "payoutwatch_last_payout_timestamp_seconds 900.0" in output
        assert "payoutwatch_uptime_seconds 60.0" in output
        assert output.endswith("\n")

    def test_no_payout_gauge_before_payout(self):
        """The last payout gauge appears only after a payout."""
        assert "last_payout_timestamp" not in MetricsCollector().collect()

    def test_reset_counters(self):
        """Counters reset to zero."""
        metrics = MetricsCollector()
        metrics.record_poll("tracking")
        metrics.record_payout()
        metrics.record_deliveries(2, 0)
        metrics.reset_counters()

        stats = metrics.get_stats()
        assert stats["polls"] == {}
        assert stats["payouts"] == 0
        assert stats["deliveries_ok"] == 0
        assert stats["last_payout_at"] is None
