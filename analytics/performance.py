"""
momentum-trader Analytics: Running Performance

Aggregate statistics updated after every closed trade:

1. Totals: PnL, trades, wins, win rate, best/worst trade
2. Daily: trades, wins, PnL, best/worst, reset at UTC midnight
3. Adaptive confidence scale: nudged down after losing stretches and up
   after profitable ones; consumed by the position sizer
"""

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.models import TradeRecord, utc_now

logger = logging.getLogger(__name__)


@dataclass
class DailyStats:
    date: str
    trades: int = 0
    wins: int = 0
    pnl: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0


class PerformanceTracker:
    MIN_HISTORY = 5
    MAX_HISTORY = 50
    SCALE_DOWN = 0.95
    SCALE_UP = 1.01
    SCALE_BOUNDS = (0.5, 1.5)

    def __init__(self, clock: Callable[[], datetime] = utc_now, snapshot: Optional[Dict[str, Any]] = None):
        self._clock = clock
        self._lock = threading.Lock()
        self.total_pnl = 0.0
        self.total_trades = 0
        self.winning_trades = 0
        self.best_trade: Optional[float] = None
        self.worst_trade: Optional[float] = None
        self.confidence_scale = 1.0
        self._roi_history: List[float] = []
        self.daily = DailyStats(date=self._today())
        if snapshot:
            self.restore(snapshot)

    def _today(self) -> str:
        return self._clock().date().isoformat()

    def _roll_day(self) -> None:
        today = self._today()
        if self.daily.date != today:
            logger.info(
                f"Daily stats reset ({self.daily.date}: {self.daily.trades} trades, "
                f"{self.daily.wins} wins, PnL {self.daily.pnl:+.2f})"
            )
            self.daily = DailyStats(date=today)

    @property
    def win_rate(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return self.winning_trades / self.total_trades * 100

    def record_trade(self, record: TradeRecord) -> None:
        pnl = record.realized_pnl_total
        with self._lock:
            self._roll_day()
            self.total_pnl += pnl
            self.total_trades += 1
            if record.is_win:
                self.winning_trades += 1
            self.best_trade = pnl if self.best_trade is None else max(self.best_trade, pnl)
            self.worst_trade = pnl if self.worst_trade is None else min(self.worst_trade, pnl)

            daily = self.daily
            daily.trades += 1
            daily.pnl += pnl
            if record.is_win:
                daily.wins += 1
            daily.best_trade = max(daily.best_trade, pnl) if daily.trades > 1 else pnl
            daily.worst_trade = min(daily.worst_trade, pnl) if daily.trades > 1 else pnl

            self._adjust_confidence_scale(record.roi_pct)

        logger.info(
            f"Trade closed {record.symbol}: PnL {pnl:+.4f} ({record.roi_pct:+.2f}%) | "
            f"total {self.total_pnl:+.4f}, win rate {self.win_rate:.1f}% over {self.total_trades}"
        )

    def _adjust_confidence_scale(self, roi_pct: float) -> None:
        self._roi_history.append(roi_pct)
        if len(self._roi_history) >= self.MIN_HISTORY:
            average = sum(self._roi_history) / len(self._roi_history)
            factor = self.SCALE_DOWN if average < 0 else self.SCALE_UP
            low, high = self.SCALE_BOUNDS
            self.confidence_scale = min(max(self.confidence_scale * factor, low), high)
            logger.debug(f"Confidence scale -> {self.confidence_scale:.3f} (avg ROI {average:+.2f}%)")
        if len(self._roi_history) > self.MAX_HISTORY:
            self._roi_history = []

    def daily_stats(self) -> DailyStats:
        with self._lock:
            self._roll_day()
            return DailyStats(**asdict(self.daily))

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_pnl": self.total_pnl,
                "total_trades": self.total_trades,
                "winning_trades": self.winning_trades,
                "win_rate": self.win_rate,
                "best_trade": self.best_trade,
                "worst_trade": self.worst_trade,
                "confidence_scale": self.confidence_scale,
                "roi_history": list(self._roi_history),
                "daily": asdict(self.daily),
            }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        with self._lock:
            self.total_pnl = float(snapshot.get("total_pnl", 0.0))
            self.total_trades = int(snapshot.get("total_trades", 0))
            self.winning_trades = int(snapshot.get("winning_trades", 0))
            self.best_trade = snapshot.get("best_trade")
            self.worst_trade = snapshot.get("worst_trade")
            self.confidence_scale = float(snapshot.get("confidence_scale", 1.0))
            self._roi_history = list(snapshot.get("roi_history", []))
            daily = snapshot.get("daily")
            if daily:
                self.daily = DailyStats(**daily)
            self._roll_day()
