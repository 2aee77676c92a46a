"""Prometheus-backed metrics hooks for the trading loops and the lifecycle engine."""

from __future__ import annotations

import logging
from typing import Dict

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Each recorder owns its registry, so tests can build as many as they like
    without duplicate-registration errors.
    """

    def __init__(self, enabled: bool = False, port: int = 9100) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = CollectorRegistry()

        self._positions_gauge = Gauge(
            "trader_open_positions",
            "Number of open positions",
            registry=self.registry,
        )
        self._entries_counter = Counter(
            "trader_entries_total",
            "Entry attempts by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._exits_counter = Counter(
            "trader_exits_total",
            "Full exits by reason",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._partial_exits_counter = Counter(
            "trader_partial_exits_total",
            "Take-profit partial exits",
            registry=self.registry,
        )
        self._loop_errors_counter = Counter(
            "trader_loop_errors_total",
            "Errors caught by a scheduler loop",
            labelnames=("loop",),
            registry=self.registry,
        )
        self._loop_duration = Summary(
            "trader_loop_iteration_seconds",
            "Duration of one loop iteration",
            labelnames=("loop",),
            registry=self.registry,
        )
        self._circuit_gauge = Gauge(
            "upstream_circuit_state",
            "Circuit state per source (0=closed, 1=half_open, 2=open)",
            labelnames=("source",),
            registry=self.registry,
        )
        self._rate_limit_wait = Summary(
            "upstream_rate_limit_wait_seconds",
            "Time spent waiting for a rate-limit slot",
            labelnames=("source",),
            registry=self.registry,
        )
        self._stale_price_counter = Counter(
            "market_data_stale_price_total",
            "Cached prices served after every source failed",
            registry=self.registry,
        )
        self._pnl_gauge = Gauge(
            "trader_realized_pnl",
            "Realized PnL since tracking began",
            registry=self.registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_server(self) -> None:
        if not self._enabled or self._started:
            return
        start_http_server(self._port, registry=self.registry)
        self._started = True
        logger.info(f"Prometheus metrics exporter listening on :{self._port}")

    def set_open_positions(self, count: int) -> None:
        self._positions_gauge.set(count)

    def record_entry(self, outcome: str) -> None:
        self._entries_counter.labels(outcome=outcome).inc()

    def record_exit(self, reason: str) -> None:
        self._exits_counter.labels(reason=reason).inc()

    def record_partial_exit(self) -> None:
        self._partial_exits_counter.inc()

    def record_loop_error(self, loop: str) -> None:
        self._loop_errors_counter.labels(loop=loop).inc()

    def observe_loop(self, loop: str, seconds: float) -> None:
        self._loop_duration.labels(loop=loop).observe(seconds)

    def set_circuit_state(self, source: str, status) -> None:
        value = getattr(status, "value", status)
        self._circuit_gauge.labels(source=source).set(CIRCUIT_STATE_VALUES.get(value, -1))

    def record_rate_limit_wait(self, source: str, seconds: float) -> None:
        self._rate_limit_wait.labels(source=source).observe(seconds)

    def record_stale_price(self, symbol: str, age_seconds: float) -> None:
        self._stale_price_counter.inc()

    def set_realized_pnl(self, pnl: float) -> None:
        self._pnl_gauge.set(pnl)

    def sample(self, name: str, labels: Dict[str, str] = None) -> float:
        """Current value of a sample, 0.0 when absent."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0
