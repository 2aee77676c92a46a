"""
Tests for Prometheus metrics wiring

Each MetricsRecorder owns a registry, so these run without global cleanup.
"""
from unittest.mock import patch

from infra.circuit_breaker import CircuitBreakerRegistry
from infra.metrics import MetricsRecorder
from tests.helpers import FakeClock, make_signal


class TestMetricsRecorder:
    def test_counters(self):
        metrics = MetricsRecorder()
        metrics.record_entry("opened")
        metrics.record_entry("rejected")
        metrics.record_entry("rejected")
        metrics.record_exit("stop_loss")
        metrics.set_open_positions(3)

        assert metrics.sample("trader_entries_total", {"outcome": "rejected"}) == 2.0
        assert metrics.sample("trader_exits_total", {"reason": "stop_loss"}) == 1.0
        assert metrics.sample("trader_open_positions") == 3.0

    def test_independent_registries(self):
        a, b = MetricsRecorder(), MetricsRecorder()
        a.record_partial_exit()
        assert b.sample("trader_partial_exits_total") == 0.0

    def test_circuit_state_gauge(self):
        metrics = MetricsRecorder()
        registry = CircuitBreakerRegistry(failure_threshold=1, clock=FakeClock(),
                                          on_transition=metrics.set_circuit_state)
        registry.get("binance").record_failure()
        assert metrics.sample("upstream_circuit_state", {"source": "binance"}) == 2.0

    def test_server_not_started_when_disabled(self):
        with patch("infra.metrics.start_http_server") as start:
            MetricsRecorder(enabled=False).start_server()
            start.assert_not_called()

    def test_server_started_once(self):
        with patch("infra.metrics.start_http_server") as start:
            metrics = MetricsRecorder(enabled=True, port=9999)
            metrics.start_server()
            metrics.start_server()
            start.assert_called_once_with(9999, registry=metrics.registry)


class TestEngineMetrics:
    def test_entry_and_exit_recorded(self, engine, metrics, clock, market_data):
        engine.evaluate_signal(make_signal("SOL", 0.9, "whale", timestamp=clock.utc()))
        market_data.set_price("SOL", 90.0)
        engine.monitor_positions()

        assert metrics.sample("trader_entries_total", {"outcome": "opened"}) == 1.0
        assert metrics.sample("trader_exits_total", {"reason": "stop_loss"}) == 1.0
        assert metrics.sample("trader_open_positions") == 0.0
        assert metrics.sample("trader_realized_pnl") < 0
