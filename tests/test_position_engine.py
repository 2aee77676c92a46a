"""
Tests for the position lifecycle engine

Entries, duplicate protection, monitoring ticks with partial exits,
exit-failure retry, recovery and graceful shutdown.
"""
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from core.exceptions import CriticalDataUnavailable
from core.models import ExitReason
from infra.state_store import StateStore
from tests.helpers import make_candles, make_position, make_signal


def _open(engine, clock, symbol="SOL", confidence=0.9, strategy="whale"):
    result = engine.evaluate_signal(make_signal(symbol, confidence, strategy, timestamp=clock.utc()))
    assert result.accepted, result.reason
    return result.position


class TestEntry:
    def test_opens_position(self, engine, clock, state_store, venue):
        """Accepted signal: sized, bought, persisted, monitored"""
        position = _open(engine, clock)

        # medium default forecast, high confidence, $20 base at $100
        assert position.entry_price == pytest.approx(100.0)
        assert position.quantity == pytest.approx(0.2)
        assert position.notional == pytest.approx(20.0)
        assert position.stop_loss == pytest.approx(95.0)
        assert [round(l.price, 6) for l in position.take_profit_levels] == [115.0, 130.0, 150.0, 200.0]
        assert not position.trailing_stop.active

        assert engine.open_symbols() == ["SOL"]
        assert [p.symbol for p in state_store.load_open_positions()] == ["SOL"]
        assert len(venue.swaps) == 1

    def test_duplicate_symbol_rejected(self, engine, clock, venue):
        """Second signal for an open symbol creates nothing"""
        _open(engine, clock)
        result = engine.evaluate_signal(make_signal("SOL", 0.95, "scalp", timestamp=clock.utc()))
        assert not result.accepted
        assert "already open" in result.reason
        assert len(venue.swaps) == 1

    def test_concurrent_signals_open_once(self, engine, clock, venue):
        """Racing evaluations for one symbol yield a single position"""
        signals = [make_signal("SOL", 0.9, "whale", timestamp=clock.utc()) for _ in range(8)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(engine.evaluate_signal, signals))
        assert sum(r.accepted for r in results) == 1
        assert len(venue.swaps) == 1

    def test_stale_signal_rejected(self, engine, clock, venue):
        """Signals older than ten minutes are ignored"""
        signal = make_signal("SOL", 0.9, "whale", timestamp=clock.utc() - timedelta(minutes=11))
        result = engine.evaluate_signal(signal)
        assert not result.accepted
        assert venue.quotes == []

    def test_low_confidence_rejected(self, engine, clock):
        assert not engine.evaluate_signal(make_signal("SOL", 0.3, "momentum", timestamp=clock.utc())).accepted

    def test_sell_side_rejected(self, engine, clock):
        signal = make_signal("SOL", 0.9, "whale", timestamp=clock.utc())
        signal.side = "sell"
        assert not engine.evaluate_signal(signal).accepted

    def test_liquidity_failure_creates_nothing(self, engine, clock, venue, state_store):
        """Impact over 3% on the probe quote aborts before any swap"""
        venue.impact_pct = 4.0
        result = engine.evaluate_signal(make_signal("SOL", 0.9, "whale", timestamp=clock.utc()))
        assert not result.accepted
        assert "liquidity" in result.reason
        assert venue.swaps == []
        assert state_store.load_open_positions() == []

    def test_swap_failure_aborts_entry(self, engine, clock, venue):
        venue.fail_swaps = True
        result = engine.evaluate_signal(make_signal("SOL", 0.9, "whale", timestamp=clock.utc()))
        assert not result.accepted
        assert engine.open_symbols() == []

    def test_missing_price_aborts_entry(self, engine, clock):
        result = engine.evaluate_signal(make_signal("WIF", 0.9, "whale", timestamp=clock.utc()))
        assert not result.accepted
        assert engine.open_symbols() == []

    def test_max_open_positions(self, engine, clock, policy):
        policy.entry.max_open_positions = 1
        _open(engine, clock, "SOL")
        result = engine.evaluate_signal(make_signal("JUP", 0.9, "whale", timestamp=clock.utc()))
        assert not result.accepted
        assert "max open positions" in result.reason

    def test_volatile_history_shrinks_size(self, engine, clock, market_data):
        """Extreme regime halves the base size and widens the stop to its cap"""
        closes = [100.0 * (1.06 if i % 2 else 0.94) for i in range(99)] + [100.0]
        market_data.candles["SOL"] = make_candles(closes)
        position = _open(engine, clock)
        assert 5.0 <= position.notional <= 10.0 + 1e-9
        assert position.stop_loss == pytest.approx(85.0)

    def test_balance_drives_risk_cap(self, engine, clock):
        """Refreshed balance replaces the configured account size"""
        engine.update_balance(20.0)
        position = _open(engine, clock)
        # 2% of $20 risked over a 5% stop
        assert position.notional == pytest.approx(8.0)


class TestMonitoring:
    def test_partial_exit_commits_state(self, engine, clock, market_data, state_store, venue):
        """First tier sells 30% and the table/store reflect it"""
        _open(engine, clock)
        clock.advance(60)
        market_data.set_price("SOL", 116.0)

        engine.monitor_positions()

        position = engine.get_position("SOL")
        assert position.remaining_quantity == pytest.approx(0.14)
        assert position.take_profit_levels[0].hit
        assert position.realized_pnl == pytest.approx(0.06 * 16.0)
        assert state_store.load_open_positions()[0].remaining_quantity == pytest.approx(0.14)
        assert len(venue.sells()) == 1

        engine.monitor_positions()
        assert len(venue.sells()) == 1

    def test_stop_loss_exit_records_trade(self, engine, clock, market_data, state_store):
        _open(engine, clock)
        clock.advance(60)
        market_data.set_price("SOL", 94.0)

        engine.monitor_positions()

        assert engine.open_symbols() == []
        history = state_store.trade_history()
        assert len(history) == 1
        assert history[0]["reason"] == "stop_loss"
        assert history[0]["pnl"] == pytest.approx(-1.2)
        assert engine.performance.total_trades == 1
        assert state_store.load_open_positions() == []

    def test_failed_exit_keeps_position_for_retry(self, engine, clock, market_data, venue, state_store):
        """Exit sell failure leaves the position open; next tick retries"""
        _open(engine, clock)
        clock.advance(60)
        market_data.set_price("SOL", 94.0)
        venue.fail_swaps = True

        engine.monitor_positions()
        assert engine.open_symbols() == ["SOL"]
        assert state_store.trade_history() == []

        venue.fail_swaps = False
        engine.monitor_positions()
        assert engine.open_symbols() == []
        assert len(state_store.trade_history()) == 1

    def test_failed_partial_retried_next_tick(self, engine, clock, market_data, venue):
        _open(engine, clock)
        clock.advance(60)
        market_data.set_price("SOL", 116.0)
        venue.fail_swaps = True
        engine.monitor_positions()
        assert engine.get_position("SOL").remaining_quantity == pytest.approx(0.2)

        venue.fail_swaps = False
        engine.monitor_positions()
        assert engine.get_position("SOL").remaining_quantity == pytest.approx(0.14)

    def test_sideways_timeout_exit(self, engine, clock, market_data, state_store):
        _open(engine, clock)
        clock.advance(31 * 60)
        market_data.set_price("SOL", 101.0)
        engine.monitor_positions()
        assert state_store.trade_history()[0]["reason"] == ExitReason.SIDEWAYS_TIMEOUT.value

    def test_one_symbol_failure_does_not_stop_others(self, engine, clock, market_data):
        """Per-symbol errors are isolated within a tick"""
        _open(engine, clock, "SOL")
        _open(engine, clock, "JUP")
        del market_data.prices["SOL"]
        market_data.set_price("JUP", 0.5)
        engine.monitor_positions()
        assert engine.open_symbols() == ["SOL"]

    def test_exit_is_not_repeated(self, engine, clock, market_data, venue):
        _open(engine, clock)
        market_data.set_price("SOL", 90.0)
        assert engine.exit_position("SOL", ExitReason.STOP_LOSS)
        assert not engine.exit_position("SOL", ExitReason.STOP_LOSS)
        assert len(venue.sells()) == 1


class TestRecovery:
    def test_recovers_open_positions(self, engine, state_store):
        state_store.upsert_position(make_position("BONK"))
        recovered = engine.recover()
        assert [p.symbol for p in recovered] == ["BONK"]
        assert engine.open_symbols() == ["BONK"]

    def test_corrupt_state_is_critical(self, engine, state_store):
        state_store.state_file.write_text("{not json")
        with pytest.raises(CriticalDataUnavailable):
            engine.recover()

    def test_corrupt_position_record_is_critical(self, engine, state_store):
        state_store.state_file.write_text(json.dumps({"positions": {"SOL": {"symbol": "SOL"}}}))
        with pytest.raises(CriticalDataUnavailable):
            engine.recover()


class TestShutdown:
    def test_exits_everything_and_blocks_entries(self, engine, clock, state_store):
        _open(engine, clock, "SOL")
        _open(engine, clock, "JUP")

        unconfirmed = engine.shutdown(timeout=5.0)

        assert unconfirmed == []
        assert engine.open_symbols() == []
        reasons = {t["symbol"]: t["reason"] for t in state_store.trade_history()}
        assert reasons == {"SOL": "bot_shutdown", "JUP": "bot_shutdown"}

        result = engine.evaluate_signal(make_signal("BONK", 0.9, "whale", timestamp=clock.utc()))
        assert not result.accepted
        assert result.reason == "shutdown"

    def test_unconfirmed_reported_on_timeout(self, engine, clock, venue):
        _open(engine, clock)
        venue.fail_swaps = True
        assert engine.shutdown(timeout=0.3) == ["SOL"]
        assert engine.open_symbols() == ["SOL"]

    def test_hung_exit_abandoned_at_deadline(self, engine, clock, venue):
        """A sell that never returns does not hold shutdown past its timeout"""
        _open(engine, clock)
        venue.hold_swaps()
        try:
            started = time.monotonic()
            unconfirmed = engine.shutdown(timeout=0.3)
            assert time.monotonic() - started < 2.0
            assert unconfirmed == ["SOL"]
        finally:
            venue.release_swaps()

    def test_waits_for_inflight_partial_exit(self, engine, clock, market_data, venue):
        """Shutdown sells only what is left after a tier sell already in flight"""
        position = _open(engine, clock)
        clock.advance(60)
        market_data.set_price("SOL", 116.0)
        venue.hold_swaps()

        tick = threading.Thread(target=engine.monitor_positions)
        tick.start()
        assert venue.swap_started.wait(2.0)

        results = []
        stopper = threading.Thread(target=lambda: results.append(engine.shutdown(timeout=5.0)))
        stopper.start()
        time.sleep(0.2)
        assert len(venue.sells()) == 1

        venue.release_swaps()
        tick.join(timeout=5.0)
        stopper.join(timeout=5.0)

        sold = [q.amount_in for q in venue.sells()]
        assert sold == [pytest.approx(0.06), pytest.approx(0.14)]
        assert sum(sold) == pytest.approx(position.quantity)
        assert results == [[]]
        assert engine.open_symbols() == []

    def test_resume_entries(self, engine, clock):
        engine.shutdown(timeout=0.1)
        engine.resume_entries()
        assert engine.accepting_entries
        _open(engine, clock)


def test_state_survives_restart(engine, clock, state_store):
    """A new store on the same file sees the open position"""
    _open(engine, clock)
    reopened = StateStore(str(state_store.state_file))
    assert reopened.load_open_positions()[0].quantity == pytest.approx(0.2)
