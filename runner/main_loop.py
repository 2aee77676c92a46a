"""
momentum-trader Runner: Main Loop

Wires configuration, the resilience layer, market data, execution and the
position lifecycle engine together, then runs four concurrent loops:

1. balance      refresh quote-asset balance used for sizing
2. performance  write bot status and performance snapshot
3. signals      collect raw signals, aggregate, evaluate entries
4. positions    monitoring tick over every open position

Outward entry points: start(), stop(), evaluate_signal().
"""

import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from analytics.performance import PerformanceTracker
from core.exceptions import CriticalDataUnavailable
from core.execution import ExecutionGateway, ExecutionVenue, PaperVenue
from core.market_analysis import LiquidityGuard, VolumeAnalyzer, WhaleMonitor
from core.models import TradeSignal, utc_now
from core.position_engine import EntryResult, PositionEngine
from core.regime import VolatilityRegimeDetector
from core.risk import PositionSizer, StopLossCalculator
from infra.circuit_breaker import CircuitBreakerRegistry
from infra.config import BotConfig, LoggingConfig, load_config
from infra.market_data import MarketDataService
from infra.market_sources import build_sources
from infra.metrics import MetricsRecorder
from infra.price_cache import PriceCache
from infra.rate_limiter import RateLimiter
from infra.resilience import ResilientCaller
from infra.retry import BackoffPolicy
from infra.state_store import StateStore
from runner.loops import IntervalLoop
from strategy.signal_aggregator import SignalAggregator
from strategy.signal_sources import JsonFileSignalSource, MomentumScanner, SignalSource

logger = logging.getLogger(__name__)


def configure_logging(log_cfg: LoggingConfig, level_override: Optional[str] = None) -> None:
    log_path = Path(log_cfg.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    level = (level_override or log_cfg.level).upper()
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


class TradingBot:
    """
    Process-level orchestrator.

    Responsibilities:
    - Recover persisted positions on start (failures surface to the caller)
    - Run the four loops until stopped
    - Graceful shutdown: no new entries, force-exit everything, bounded by timeout
    """

    def __init__(
        self,
        config: BotConfig,
        engine: PositionEngine,
        aggregator: SignalAggregator,
        signal_sources: List[SignalSource],
        store: StateStore,
        gateway: ExecutionGateway,
        metrics: Optional[MetricsRecorder] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        callers: Optional[List[ResilientCaller]] = None,
    ):
        self.config = config
        self.engine = engine
        self.aggregator = aggregator
        self.signal_sources = signal_sources
        self.store = store
        self.gateway = gateway
        self.metrics = metrics or engine.metrics
        self.breakers = breakers
        self._callers = callers or []

        self._stop_event = threading.Event()
        self._stop_requested = threading.Event()
        self._loops: List[IntervalLoop] = []
        self._running = False
        self._state_lock = threading.Lock()
        self.last_error: Optional[str] = None

    @classmethod
    def from_config(cls, config: BotConfig, venue: Optional[ExecutionVenue] = None,
                    whale_monitor: Optional[WhaleMonitor] = None) -> "TradingBot":
        app, policy, signals_cfg = config.app, config.policy, config.signals
        ds, ex = app.data_sources, app.execution

        metrics = MetricsRecorder(enabled=app.metrics.enabled, port=app.metrics.port)
        breakers = CircuitBreakerRegistry(
            failure_threshold=ds.circuit_breaker.failure_threshold,
            reset_timeout=ds.circuit_breaker.reset_timeout_seconds,
            half_open_max_attempts=ds.circuit_breaker.half_open_max_attempts,
            on_transition=metrics.set_circuit_state,
        )
        limiter = RateLimiter(
            {name: (rl.max_requests, rl.window_seconds) for name, rl in ds.rate_limits.items()},
            on_wait=metrics.record_rate_limit_wait,
        )
        backoff = BackoffPolicy(
            initial_delay=ds.backoff.initial_delay_seconds,
            factor=ds.backoff.factor,
            max_delay=ds.backoff.max_delay_seconds,
            jitter=ds.backoff.jitter,
            max_attempts=ds.backoff.max_attempts,
        )
        # Separate executors so venue calls that read prices never wait on their own pool
        data_caller = ResilientCaller(breakers, limiter, backoff)
        venue_caller = ResilientCaller(breakers, limiter, backoff)

        market_data = MarketDataService(
            build_sources(ds.order, ds.request_timeout_seconds, ds.symbol_map),
            data_caller,
            PriceCache(ttl_seconds=ds.price_cache_ttl_seconds),
            quote_currency=ds.quote_currency,
            request_timeout=ds.request_timeout_seconds,
            candle_ttl_seconds=ds.candle_cache_ttl_seconds,
            on_stale=metrics.record_stale_price,
        )

        if venue is None:
            if app.app.mode == "LIVE":
                raise ValueError("LIVE mode requires an ExecutionVenue adapter; pass venue=...")
            venue = PaperVenue(
                market_data,
                quote_asset=ex.quote_asset,
                liquidity_usd=ex.paper_liquidity_usd,
                starting_balance=ex.paper_starting_balance,
            )
        gateway = ExecutionGateway(
            venue,
            venue_caller,
            quote_asset=ex.quote_asset,
            slippage_bps=ex.slippage_bps,
            max_price_impact_pct=ex.max_price_impact_pct,
            quote_timeout=ex.quote_timeout_seconds,
            swap_timeout=ex.swap_timeout_seconds,
        )

        store = StateStore(app.state_file)
        performance = PerformanceTracker(snapshot=store.read_performance())
        engine = PositionEngine(
            policy,
            gateway,
            market_data,
            store,
            sizer=PositionSizer(policy.sizing, default_stop_pct=policy.stop_loss.base_pct),
            stop_calculator=StopLossCalculator(policy.stop_loss, policy.trailing_stop),
            volume_analyzer=VolumeAnalyzer(market_data),
            liquidity_guard=LiquidityGuard(gateway, ex.max_price_impact_pct),
            regime_detector=VolatilityRegimeDetector(),
            whale_monitor=whale_monitor,
            performance=performance,
            metrics=metrics,
        )

        sources: List[SignalSource] = []
        if signals_cfg.drop_file.enabled:
            sources.append(JsonFileSignalSource(signals_cfg.drop_file.path))
        scanner = signals_cfg.scanner
        if scanner.enabled and scanner.watchlist:
            sources.append(
                MomentumScanner(
                    VolumeAnalyzer(market_data, scanner.interval, scanner.limit),
                    scanner.watchlist,
                    volume_spike_threshold=scanner.volume_spike_threshold,
                    momentum_threshold_pct=scanner.momentum_threshold_pct,
                    strategy=scanner.strategy,
                )
            )

        return cls(
            config,
            engine,
            SignalAggregator(signals_cfg.aggregator),
            sources,
            store,
            gateway,
            metrics=metrics,
            breakers=breakers,
            callers=[data_caller, venue_caller],
        )

    @property
    def running(self) -> bool:
        return self._running

    # ----- outward entry points -----

    def start(self) -> None:
        """
        Recover state and start the loops.

        Raises:
            CriticalDataUnavailable: persisted positions could not be recovered
        """
        with self._state_lock:
            if self._running:
                logger.warning("start() called while already running")
                return

            try:
                self.engine.recover()
            except CriticalDataUnavailable as e:
                self.last_error = f"state recovery failed: {e}"
                logger.critical(self.last_error)
                self._write_status(is_running=False, error=self.last_error)
                raise

            self.engine.resume_entries()
            self.metrics.start_server()
            self._stop_event.clear()
            self._stop_requested.clear()

            loops_cfg = self.config.app.loops
            specs = [
                ("balance", loops_cfg.balance_seconds, self.refresh_balance),
                ("performance", loops_cfg.performance_seconds, self.track_performance),
                ("signals", loops_cfg.signal_scan_seconds, self.scan_signals),
                ("positions", loops_cfg.position_monitor_seconds, self.engine.monitor_positions),
            ]
            self._loops = [
                IntervalLoop(
                    name,
                    interval,
                    fn,
                    self._stop_event,
                    jitter_pct=loops_cfg.jitter_pct,
                    metrics=self.metrics,
                    on_error=self._record_loop_error,
                )
                for name, interval, fn in specs
            ]
            for loop in self._loops:
                loop.start()

            self._running = True
            self.last_error = None
            self._write_status(
                is_running=True,
                last_started=utc_now().isoformat(),
                error=None,
                active_positions=len(self.engine.open_symbols()),
            )
            logger.info(f"momentum-trader started in {self.config.app.app.mode} mode with {len(self._loops)} loops")

    def stop(self, timeout: Optional[float] = None) -> List[str]:
        """
        Graceful shutdown.

        Returns:
            Symbols whose exits were not confirmed before the timeout
        """
        with self._state_lock:
            if not self._running:
                return []
            timeout = timeout if timeout is not None else self.config.app.shutdown_timeout_seconds

            logger.warning("=" * 80)
            logger.warning("SHUTDOWN - no new entries, force-exiting open positions")
            logger.warning("=" * 80)

            self._stop_event.set()
            unconfirmed = self.engine.shutdown(timeout)

            for loop in self._loops:
                loop.join(timeout=5.0)
                if loop.is_alive():
                    logger.error(f"Loop {loop.loop_name} did not stop within 5s")
            self._loops = []
            self._running = False

            error = f"positions not confirmed closed: {unconfirmed}" if unconfirmed else None
            self._write_status(
                is_running=False,
                last_stopped=utc_now().isoformat(),
                active_positions=len(unconfirmed),
                error=error,
            )
            self._save_performance()
            for caller in self._callers:
                caller.close()
            logger.info("momentum-trader stopped")
            return unconfirmed

    def evaluate_signal(self, trade_signal: TradeSignal) -> EntryResult:
        return self.engine.evaluate_signal(trade_signal)

    # ----- loop bodies -----

    def refresh_balance(self) -> float:
        quote_asset = self.config.app.execution.quote_asset
        balance = self.gateway.get_balance(quote_asset)
        self.engine.update_balance(balance)
        logger.debug(f"Balance refreshed: {balance:.2f} {quote_asset}")
        return balance

    def track_performance(self) -> Dict:
        performance = self.engine.performance
        snapshot = performance.snapshot()
        service_status = self.breakers.statuses() if self.breakers else {}
        status = self._write_status(
            is_running=self._running,
            active_positions=len(self.engine.open_symbols()),
            total_pnl=snapshot["total_pnl"],
            win_rate=snapshot["win_rate"],
            total_trades=snapshot["total_trades"],
            service_status=service_status,
        )
        self._save_performance()
        self.metrics.set_realized_pnl(snapshot["total_pnl"])
        daily = snapshot["daily"]
        logger.info(
            f"Performance: {snapshot['total_trades']} trades, win rate {snapshot['win_rate']:.1f}%, "
            f"PnL {snapshot['total_pnl']:+.4f} | today {daily['trades']} trades, PnL {daily['pnl']:+.4f} | "
            f"open {len(self.engine.open_symbols())}"
        )
        return status

    def scan_signals(self) -> List[EntryResult]:
        raw: List[TradeSignal] = []
        for source in self.signal_sources:
            try:
                raw.extend(source.fetch())
            except Exception as e:
                logger.error(f"Signal source {source.name} failed: {e}", exc_info=True)

        if not raw:
            return []

        ranked = self.aggregator.aggregate(raw, self.engine.open_symbols())
        results = []
        for trade_signal in ranked:
            if self._stop_event.is_set():
                break
            try:
                results.append(self.engine.evaluate_signal(trade_signal))
            except Exception as e:
                logger.error(f"Signal evaluation failed for {trade_signal.symbol}: {e}", exc_info=True)
        return results

    def run_once(self) -> None:
        """Single pass of every loop body (for --once and smoke checks)."""
        self.engine.recover()
        for name, fn in (
            ("balance", self.refresh_balance),
            ("signals", self.scan_signals),
            ("positions", self.engine.monitor_positions),
            ("performance", self.track_performance),
        ):
            try:
                fn()
            except Exception as e:
                logger.error(f"{name} pass failed: {e}", exc_info=True)

    def run_forever(self) -> List[str]:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)
        self.start()
        while not self._stop_requested.wait(1.0):
            pass
        return self.stop()

    def _handle_stop(self, *_):
        logger.warning("SHUTDOWN SIGNAL RECEIVED - initiating graceful shutdown")
        self._stop_requested.set()

    # ----- helpers -----

    def _record_loop_error(self, loop: str, error: Exception) -> None:
        self.last_error = f"{loop}: {error}"
        try:
            self.store.write_bot_status(error=self.last_error)
        except OSError as e:
            logger.error(f"Failed to record loop error in bot status: {e}")

    def _write_status(self, **fields) -> Dict:
        try:
            return self.store.write_bot_status(**fields)
        except OSError as e:
            logger.error(f"Failed to write bot status: {e}")
            return {}

    def _save_performance(self) -> None:
        try:
            self.store.write_performance(self.engine.performance.snapshot())
        except OSError as e:
            logger.error(f"Failed to save performance snapshot: {e}")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="momentum-trader position engine")
    parser.add_argument("--once", action="store_true", help="Run every loop body once and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--log-level", default=None, help="Override logging level from app.yaml")

    args = parser.parse_args()

    config = load_config(args.config_dir)
    configure_logging(config.app.logging, args.log_level)

    bot = TradingBot.from_config(config)
    if args.once:
        bot.run_once()
        return

    unconfirmed = bot.run_forever()
    logging.shutdown()
    sys.exit(1 if unconfirmed else 0)


if __name__ == "__main__":
    main()
