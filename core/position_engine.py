"""
momentum-trader Core: Position Lifecycle Engine

Owns the live position table (one open position per symbol) and drives each
position through Evaluating -> Open -> Closed.

Concurrency:
- Entry evaluation reserves the symbol under the table lock before any I/O,
  so two signals for the same symbol can never both open a position
- Partial and full exits both mark the symbol as exiting under the lock;
  concurrent ticks skip it and shutdown waits for it, so no two sells race on
  one symbol and a full exit always sells the quantity left after the partial
- A failed exit sell leaves the position in the table for the next tick
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from analytics.performance import PerformanceTracker
from core.exceptions import CriticalDataUnavailable, ExecutionFailure, ShutdownInProgress, StaleDataUsed
from core.market_analysis import LiquidityGuard, NullWhaleMonitor, VolumeAnalyzer, WhaleMonitor
from core.models import (
    ActionType,
    ExitReason,
    MarketTick,
    Position,
    PositionAction,
    PositionStatus,
    TakeProfitLevel,
    TradeRecord,
    TradeSignal,
    TrailingStop,
    utc_now,
)
from core.position_manager import QUANTITY_EPSILON, ExitRules, PositionManager
from core.regime import VolatilityRegimeDetector, default_forecast
from core.risk import PositionSizer, StopLossCalculator
from infra.config import PolicyConfig
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


@dataclass
class EntryResult:
    accepted: bool
    reason: str
    position: Optional[Position] = None


class PositionEngine:
    def __init__(
        self,
        policy: PolicyConfig,
        gateway,
        market_data,
        store,
        sizer: PositionSizer,
        stop_calculator: StopLossCalculator,
        volume_analyzer: VolumeAnalyzer,
        liquidity_guard: LiquidityGuard,
        regime_detector: Optional[VolatilityRegimeDetector] = None,
        whale_monitor: Optional[WhaleMonitor] = None,
        performance: Optional[PerformanceTracker] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.policy = policy
        self.gateway = gateway
        self.market_data = market_data
        self.store = store
        self.sizer = sizer
        self.stop_calculator = stop_calculator
        self.volume_analyzer = volume_analyzer
        self.liquidity_guard = liquidity_guard
        self.regime_detector = regime_detector or VolatilityRegimeDetector()
        self.whale_monitor = whale_monitor or NullWhaleMonitor()
        self.performance = performance or PerformanceTracker(clock=clock)
        self.metrics = metrics or MetricsRecorder(enabled=False)
        self.manager = PositionManager(ExitRules.from_policy(policy))
        self._clock = clock

        self._positions: Dict[str, Position] = {}
        self._evaluating: Set[str] = set()
        self._exiting: Set[str] = set()
        self._accepting = True
        self._balance: Optional[float] = None
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)

    # ----- table access -----

    def positions(self) -> Dict[str, Position]:
        """Snapshot of open positions (copies)."""
        with self._lock:
            return {symbol: pos.copy() for symbol, pos in self._positions.items()}

    def open_symbols(self) -> List[str]:
        with self._lock:
            return list(self._positions)

    def get_position(self, symbol: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(symbol.upper())
            return position.copy() if position else None

    @property
    def accepting_entries(self) -> bool:
        return self._accepting

    def resume_entries(self) -> None:
        self._accepting = True

    def update_balance(self, balance: float) -> None:
        self._balance = balance

    def account_value(self) -> float:
        if self._balance is not None and self._balance > 0:
            return self._balance
        return self.policy.sizing.account_size

    # ----- startup -----

    def recover(self) -> List[Position]:
        """
        Load positions left open by the previous run.

        Raises:
            CriticalDataUnavailable: persisted positions could not be loaded
        """
        positions = self.store.load_open_positions()
        with self._lock:
            for position in positions:
                self._positions[position.symbol] = position
            count = len(self._positions)
        self.metrics.set_open_positions(count)
        logger.info(f"Recovered {len(positions)} open position(s): {[p.symbol for p in positions]}")
        return positions

    # ----- entries -----

    def evaluate_signal(self, signal: TradeSignal) -> EntryResult:
        """
        Consider one ranked signal for entry.

        Never raises for expected outcomes: shutdown, rejections and execution
        failures come back as a non-accepted EntryResult.
        """
        try:
            result = self._evaluate(signal)
        except ShutdownInProgress:
            logger.info(f"Ignoring {signal.symbol} signal: shutdown in progress")
            result = EntryResult(False, "shutdown")
        self.metrics.record_entry("opened" if result.accepted else "rejected")
        return result

    def _evaluate(self, signal: TradeSignal) -> EntryResult:
        symbol = signal.symbol.upper()
        entry_cfg = self.policy.entry

        if not self._accepting:
            raise ShutdownInProgress()
        if signal.side.lower() not in ("buy", "long"):
            return self._reject(symbol, f"unsupported side {signal.side}")
        age = signal.age_seconds(self._clock())
        if age > entry_cfg.max_signal_age_seconds:
            return self._reject(symbol, f"signal too old ({age:.0f}s)")
        if signal.confidence < entry_cfg.min_confidence:
            return self._reject(symbol, f"confidence {signal.confidence:.2f} < {entry_cfg.min_confidence:.2f}")

        with self._lock:
            if not self._accepting:
                raise ShutdownInProgress()
            if symbol in self._positions or symbol in self._evaluating:
                return self._reject(symbol, "position already open or pending")
            if len(self._positions) + len(self._evaluating) >= entry_cfg.max_open_positions:
                return self._reject(symbol, f"max open positions ({entry_cfg.max_open_positions}) reached")
            self._evaluating.add(symbol)

        try:
            return self._open_position(symbol, signal)
        except ExecutionFailure as e:
            logger.warning(f"ENTRY ABORTED {symbol}: {e.reason}")
            return EntryResult(False, f"execution failed: {e.reason}")
        except (CriticalDataUnavailable, StaleDataUsed) as e:
            logger.warning(f"ENTRY ABORTED {symbol}: market data unavailable ({e})")
            return EntryResult(False, "market data unavailable")
        finally:
            with self._changed:
                self._evaluating.discard(symbol)
                self._changed.notify_all()

    def _reject(self, symbol: str, reason: str) -> EntryResult:
        logger.info(f"ENTRY REJECTED {symbol}: {reason}")
        return EntryResult(False, reason)

    def _open_position(self, symbol: str, signal: TradeSignal) -> EntryResult:
        asset = signal.asset or symbol
        sizing_cfg = self.policy.sizing

        liquidity = self.liquidity_guard.check(symbol, asset, sizing_cfg.max_size)
        if not liquidity.is_safe:
            return self._reject(symbol, f"liquidity check failed: {liquidity.reason}")

        if self.whale_monitor.distribution_detected(symbol):
            return self._reject(symbol, "whale distribution detected")

        price = self.market_data.get_price(symbol, allow_stale=False).price
        try:
            candles = self.market_data.get_candles(symbol, self.policy.entry.candle_interval, self.policy.entry.candle_limit)
            forecast = self.regime_detector.forecast(candles)
        except CriticalDataUnavailable as e:
            logger.warning(f"No candle history for {symbol} ({e}), using default forecast")
            forecast = default_forecast()

        stop_plan = self.stop_calculator.calculate_stop_loss(price, forecast, "buy", signal.strategy)
        sizing = self.sizer.size_position(
            signal.confidence,
            forecast,
            self.account_value(),
            strategy=signal.strategy,
            stop_distance_pct=stop_plan.distance_pct,
            performance_scale=self.performance.confidence_scale,
        )
        if sizing.size < sizing_cfg.min_size:
            return self._reject(symbol, f"size {sizing.size:.2f} below minimum {sizing_cfg.min_size:.2f}")

        fill = self.gateway.buy(symbol, asset, sizing.size)

        position = Position(
            symbol=symbol,
            asset=asset,
            entry_price=fill.price,
            quantity=fill.quantity,
            remaining_quantity=fill.quantity,
            stop_loss=fill.price * (1 - stop_plan.distance_pct / 100),
            take_profit_levels=self._take_profit_levels(fill.price),
            trailing_stop=TrailingStop(
                callback_pct=stop_plan.trailing.callback_pct,
                min_callback_pct=stop_plan.trailing.min_callback_pct,
            ),
            strategy=signal.strategy,
            confidence=signal.confidence,
            opened_at=self._clock(),
            notional=sizing.size,
        )

        with self._lock:
            self._positions[symbol] = position
            count = len(self._positions)
        self._persist(position)
        self.metrics.set_open_positions(count)

        logger.info(
            f"ENTRY {symbol}: {position.quantity:.6g} @ {position.entry_price:.6g} "
            f"(${sizing.size:.2f}, {forecast.regime.value} regime, stop {position.stop_loss:.6g}, "
            f"strategy={signal.strategy}, conf={signal.confidence:.2f})"
        )
        return EntryResult(True, "opened", position.copy())

    def _take_profit_levels(self, entry_price: float) -> List[TakeProfitLevel]:
        return [
            TakeProfitLevel(price=entry_price * (1 + tier.percent / 100), size_fraction=tier.size_fraction)
            for tier in sorted(self.policy.take_profit, key=lambda t: t.percent)
        ]

    # ----- monitoring -----

    def monitor_positions(self) -> None:
        """One monitoring tick over every open position; failures stay per symbol."""
        with self._lock:
            symbols = [s for s in self._positions if s not in self._exiting]

        for symbol in symbols:
            try:
                self.monitor_symbol(symbol)
            except Exception as e:
                logger.error(f"Monitoring tick failed for {symbol}, retrying next tick: {e}", exc_info=True)

    def monitor_symbol(self, symbol: str) -> List[PositionAction]:
        with self._lock:
            position = self._positions.get(symbol)
            if position is None or symbol in self._exiting:
                return []
            position = position.copy()

        quote = self.market_data.get_price(symbol)

        spike_ratio = range_pct = None
        try:
            profile = self.volume_analyzer.profile(symbol)
            spike_ratio, range_pct = profile.spike_ratio, profile.price_range_pct
        except CriticalDataUnavailable as e:
            logger.debug(f"No volume profile for {symbol}: {e}")

        whale = False
        if position.trailing_stop.active:
            whale = self.whale_monitor.distribution_detected(symbol)

        tick = MarketTick(
            price=quote.price,
            timestamp=self._clock(),
            volume_spike_ratio=spike_ratio,
            price_range_pct=range_pct,
            whale_distribution=whale,
            stale=quote.stale,
        )
        updated, actions = self.manager.evaluate(position, tick)
        self.apply_actions(position, updated, actions, tick.price)
        return actions

    def apply_actions(self, before: Position, updated: Position, actions: List[PositionAction], price: float) -> bool:
        """
        Execute actions from one tick, committing state only for what succeeded.

        Partial sells run with the symbol reserved in the exiting set, so a full
        exit (tick, shutdown) waits for them and then sells what is left.

        Returns:
            False if any sell failed or the symbol was busy (retried next tick)
        """
        if not actions:
            return True

        symbol = before.symbol
        selling = any(action.type == ActionType.PARTIAL_EXIT for action in actions)
        if selling and not self._reserve(before):
            logger.debug(f"{symbol} changed or is exiting; skipping this tick's partial exits")
            return False

        try:
            ok, full_exit = self._run_actions(before, updated, actions, owned=selling)
        finally:
            if selling:
                self._release(symbol)

        if ok and full_exit is not None:
            return self.exit_position(symbol, full_exit.reason, price)
        return ok

    def _run_actions(self, before: Position, updated: Position, actions: List[PositionAction], owned: bool):
        symbol = before.symbol
        state = before.copy()

        for action in actions:
            if action.type == ActionType.PARTIAL_EXIT:
                try:
                    fill = self.gateway.sell(symbol, state.asset, action.quantity)
                except ExecutionFailure as e:
                    logger.error(
                        f"PARTIAL EXIT FAILED {symbol} tier {action.level_index + 1}: {e.reason}; retrying next tick"
                    )
                    self._commit(state, owned)
                    return False, None
                state.take_profit_levels[action.level_index].hit = True
                state.remaining_quantity = max(0.0, state.remaining_quantity - action.quantity)
                state.realized_pnl += (fill.price - state.entry_price) * action.quantity
                self.metrics.record_partial_exit()
                logger.info(
                    f"PARTIAL EXIT {symbol} tier {action.level_index + 1}: sold {action.quantity:.6g} @ {fill.price:.6g}, "
                    f"remaining {state.remaining_quantity:.6g}"
                )
            elif action.type in (ActionType.ACTIVATE_TRAILING, ActionType.RAISE_TRAILING):
                state.trailing_stop = TrailingStop(**vars(updated.trailing_stop))
            elif action.type == ActionType.FULL_EXIT:
                self._commit(state, owned)
                return True, action

        self._commit(state, owned)
        return True, None

    def _reserve(self, expected: Position) -> bool:
        with self._lock:
            current = self._positions.get(expected.symbol)
            if current is None or expected.symbol in self._exiting:
                return False
            if current.to_dict() != expected.to_dict():
                return False
            self._exiting.add(expected.symbol)
            return True

    def _release(self, symbol: str) -> None:
        with self._changed:
            self._exiting.discard(symbol)
            self._changed.notify_all()

    def _commit(self, state: Position, owned: bool = False) -> None:
        with self._lock:
            current = self._positions.get(state.symbol)
            if current is None:
                return
            if state.symbol in self._exiting and not owned:
                return
            if current.to_dict() == state.to_dict():
                return
            self._positions[state.symbol] = state
        self._persist(state)

    # ----- exits -----

    def exit_position(self, symbol: str, reason: ExitReason, reference_price: Optional[float] = None) -> bool:
        """
        Sell the remaining quantity and close the position.

        Returns:
            True once the position is closed and removed; False if it was not
            found, is already exiting, or the sell failed (position kept)
        """
        with self._lock:
            position = self._positions.get(symbol)
            if position is None or symbol in self._exiting:
                return False
            self._exiting.add(symbol)
            position = position.copy()

        try:
            quantity = position.remaining_quantity
            if quantity > QUANTITY_EPSILON:
                try:
                    fill = self.gateway.sell(symbol, position.asset, quantity)
                except ExecutionFailure as e:
                    logger.error(f"EXIT FAILED {symbol} ({reason.value}): {e.reason}; position kept open for retry")
                    self.metrics.record_exit("failed")
                    return False
                exit_price = fill.price
            else:
                quantity = 0.0
                exit_price = reference_price or position.entry_price

            self._finalize(position, reason, exit_price, quantity)
            return True
        finally:
            self._release(symbol)

    def _finalize(self, position: Position, reason: ExitReason, exit_price: float, quantity: float) -> None:
        now = self._clock()
        pnl = (exit_price - position.entry_price) * quantity
        roi_pct = (exit_price - position.entry_price) / position.entry_price * 100 if position.entry_price else 0.0

        closed = position.copy()
        closed.status = PositionStatus.CLOSED
        closed.closed_at = now
        closed.remaining_quantity = 0.0
        closed.realized_pnl += pnl
        closed.exit_reason = reason.value

        record = TradeRecord(
            symbol=position.symbol,
            strategy=position.strategy,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=quantity,
            pnl=pnl,
            roi_pct=roi_pct,
            reason=reason.value,
            opened_at=position.opened_at,
            closed_at=now,
            realized_pnl_total=closed.realized_pnl,
        )

        with self._lock:
            self._positions.pop(position.symbol, None)
            count = len(self._positions)

        self.performance.record_trade(record)
        try:
            self.store.append_trade_record(record)
            self.store.upsert_position(closed)
        except OSError as e:
            logger.error(f"Failed to persist closed position {position.symbol}: {e}")

        self.metrics.record_exit(reason.value)
        self.metrics.set_open_positions(count)
        self.metrics.set_realized_pnl(self.performance.total_pnl)
        logger.info(
            f"EXIT {position.symbol} reason={reason.value}: {quantity:.6g} @ {exit_price:.6g}, "
            f"PnL {pnl:+.4f} ({roi_pct:+.2f}%), trade total {closed.realized_pnl:+.4f}"
        )

    def _persist(self, position: Position) -> None:
        try:
            self.store.upsert_position(position)
        except OSError as e:
            logger.error(f"Failed to persist position {position.symbol}: {e}")

    # ----- shutdown -----

    def shutdown(self, timeout: float = 30.0) -> List[str]:
        """
        Stop accepting entries and force-exit every open position.

        Returns:
            Symbols not confirmed closed when the timeout elapsed
        """
        deadline = time.monotonic() + timeout
        with self._changed:
            self._accepting = False
            while self._evaluating:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._changed.wait(remaining)
            symbols = list(self._positions)

        logger.warning(f"Shutdown: force-exiting {len(symbols)} open position(s)")
        if symbols:
            # Daemon workers: an exit still hung on the venue at the deadline is abandoned
            workers = [
                threading.Thread(
                    target=self._shutdown_exit, args=(symbol, deadline), name=f"shutdown-exit-{symbol}", daemon=True
                )
                for symbol in symbols
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join(max(0.0, deadline - time.monotonic()))

        with self._lock:
            unconfirmed = sorted(self._positions)
        if unconfirmed:
            logger.error(f"Shutdown timeout: positions not confirmed closed: {unconfirmed}")
        else:
            logger.info("Shutdown: all positions closed")
        return unconfirmed

    def _shutdown_exit(self, symbol: str, deadline: float) -> None:
        # Retry until the sell lands or time runs out; an in-flight tick exit counts too
        while time.monotonic() < deadline:
            with self._lock:
                if symbol not in self._positions:
                    return
                busy = symbol in self._exiting
            if busy:
                with self._changed:
                    self._changed.wait(min(0.5, max(0.0, deadline - time.monotonic())))
                continue
            if self.exit_position(symbol, ExitReason.BOT_SHUTDOWN):
                return
            time.sleep(min(1.0, max(0.0, deadline - time.monotonic())))
