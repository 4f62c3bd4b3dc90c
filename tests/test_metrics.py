"""
Unit tests for the in-process metrics collector.
"""
from memory_relay.infrastructure.observability.logging import MetricsCollector


class TestMetricsCollector:
    """Tests for counter and latency aggregation."""

    def test_counters_accumulate(self):
        collector = MetricsCollector()
        collector.increment_counter("relay.requests")
        collector.increment_counter("relay.requests", value=2)

        assert collector.get_metrics_summary()["relay.requests"] == 3

    def test_latency_summary(self):
        """Should report count, average and bounds per operation."""
        collector = MetricsCollector()
        collector.record_latency("upstream_connect", 10.0)
        collector.record_latency("upstream_connect", 30.0)

        assert collector.get_metrics_summary()["latency.upstream_connect"] == {
            "count": 2,
            "avg": 20.0,
            "min": 10.0,
            "max": 30.0,
        }
