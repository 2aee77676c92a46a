"""Tests for running performance tracking and the adaptive confidence scale"""
from datetime import timedelta

import pytest

from analytics.performance import PerformanceTracker
from core.models import TradeRecord
from tests.helpers.fakes import EPOCH


def _trade(pnl, roi_pct=None, symbol="SOL"):
    roi = roi_pct if roi_pct is not None else pnl * 10
    return TradeRecord(
        symbol=symbol, strategy="momentum", entry_price=100.0, exit_price=100.0 + roi, quantity=0.1,
        pnl=pnl, roi_pct=roi, reason="stop_loss", opened_at=EPOCH, closed_at=EPOCH, realized_pnl_total=pnl,
    )


@pytest.fixture
def tracker(clock):
    return PerformanceTracker(clock=clock.utc)


class TestTotals:
    def test_win_rate_and_pnl(self, tracker):
        for pnl in (1.0, -0.5, 2.0, -0.25):
            tracker.record_trade(_trade(pnl))
        assert tracker.total_trades == 4
        assert tracker.win_rate == 50.0
        assert tracker.total_pnl == pytest.approx(2.25)
        assert tracker.best_trade == 2.0
        assert tracker.worst_trade == -0.5

    def test_win_uses_total_realized_pnl(self, tracker):
        """Profitable partials can make a losing final leg a winning trade"""
        record = _trade(1.5)
        record.pnl = -0.2
        tracker.record_trade(record)
        assert tracker.winning_trades == 1

    def test_empty_win_rate(self, tracker):
        assert tracker.win_rate == 0.0


class TestDailyStats:
    def test_daily_accumulates(self, tracker):
        tracker.record_trade(_trade(1.0))
        tracker.record_trade(_trade(-3.0))
        daily = tracker.daily_stats()
        assert daily.trades == 2
        assert daily.wins == 1
        assert daily.best_trade == 1.0
        assert daily.worst_trade == -3.0

    def test_resets_at_date_change(self, tracker, clock):
        tracker.record_trade(_trade(1.0))
        clock.advance(timedelta(hours=13).total_seconds())
        daily = tracker.daily_stats()
        assert daily.date == "2024-05-02"
        assert daily.trades == 0
        assert tracker.total_trades == 1


class TestConfidenceScale:
    def test_unchanged_before_min_history(self, tracker):
        for _ in range(4):
            tracker.record_trade(_trade(-1.0))
        assert tracker.confidence_scale == 1.0

    def test_losing_stretch_scales_down(self, tracker):
        for _ in range(5):
            tracker.record_trade(_trade(-1.0))
        assert tracker.confidence_scale == pytest.approx(0.95)

    def test_winning_stretch_scales_up(self, tracker):
        for _ in range(6):
            tracker.record_trade(_trade(1.0))
        assert tracker.confidence_scale == pytest.approx(1.01 ** 2)

    def test_bounded(self, tracker):
        for _ in range(50):
            tracker.record_trade(_trade(-1.0))
        assert tracker.confidence_scale >= 0.5


class TestSnapshot:
    def test_restore_round_trip(self, tracker, clock):
        for pnl in (1.0, -0.5, 2.0, 3.0, 1.0):
            tracker.record_trade(_trade(pnl))
        restored = PerformanceTracker(clock=clock.utc, snapshot=tracker.snapshot())
        assert restored.snapshot() == tracker.snapshot()
