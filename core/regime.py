"""
momentum-trader Core: Volatility Regime Detection

Classifies a symbol's recent candles into a volatility regime
(low / medium / high / extreme) and produces a short-horizon volatility forecast
consumed by the position sizer and stop-loss calculator.

No AI - just math on candle closes and true ranges.
"""

import logging
import math
import statistics
from typing import List, Optional, Sequence

from core.models import Candle, VolatilityForecast, VolatilityRegime

logger = logging.getLogger(__name__)

REGIME_ORDER = [VolatilityRegime.LOW, VolatilityRegime.MEDIUM, VolatilityRegime.HIGH, VolatilityRegime.EXTREME]


def default_forecast() -> VolatilityForecast:
    """Neutral forecast used when history is missing or unusable."""
    return VolatilityForecast(
        regime=VolatilityRegime.MEDIUM,
        current_volatility=0.0,
        predicted_volatility=0.0,
        atr_ratio=0.01,
        metrics={"default": 1.0},
    )


class VolatilityRegimeDetector:
    """
    Rules:
    - volatility = stdev of per-candle % returns over `lookback` candles
    - prediction = EWMA (RiskMetrics-style, decay `ewma_lambda`) of squared returns
    - regime from volatility thresholds, bumped one level on a breakout
      (short-window volatility above `breakout_ratio` x long-window)
    """

    def __init__(
        self,
        lookback: int = 20,
        atr_period: int = 14,
        ewma_lambda: float = 0.94,
        low_threshold: float = 0.5,
        medium_threshold: float = 1.5,
        high_threshold: float = 3.0,
        breakout_ratio: float = 1.5,
    ):
        self.lookback = lookback
        self.atr_period = atr_period
        self.ewma_lambda = ewma_lambda
        self.low_threshold = low_threshold
        self.medium_threshold = medium_threshold
        self.high_threshold = high_threshold
        self.breakout_ratio = breakout_ratio

    def forecast(self, candles: Optional[Sequence[Candle]]) -> VolatilityForecast:
        if not candles or len(candles) < self.lookback + 1:
            logger.debug("Insufficient candle history, using default medium forecast")
            return default_forecast()

        closes = [c.close for c in candles]
        if any(price <= 0 for price in closes):
            logger.warning("Non-positive close in candle history, using default forecast")
            return default_forecast()

        returns = [(closes[i] - closes[i - 1]) / closes[i - 1] * 100 for i in range(1, len(closes))]
        window = returns[-self.lookback:]
        current = statistics.stdev(window) if len(window) > 1 else 0.0
        predicted = self._ewma_volatility(returns)
        atr_ratio = self._atr(candles) / closes[-1]

        long_vol = statistics.stdev(returns) if len(returns) > 1 else current
        short_window = returns[-max(2, self.lookback // 4):]
        short_vol = statistics.stdev(short_window) if len(short_window) > 1 else current
        breakout = long_vol > 0 and short_vol > long_vol * self.breakout_ratio

        regime = self._classify(max(current, predicted))
        if breakout and regime != VolatilityRegime.EXTREME:
            regime = REGIME_ORDER[REGIME_ORDER.index(regime) + 1]

        logger.debug(
            f"Volatility regime {regime.value}: current={current:.2f}% predicted={predicted:.2f}% "
            f"atr_ratio={atr_ratio:.4f} breakout={breakout}"
        )

        return VolatilityForecast(
            regime=regime,
            current_volatility=current,
            predicted_volatility=predicted,
            atr_ratio=atr_ratio,
            metrics={
                "long_volatility": long_vol,
                "short_volatility": short_vol,
                "breakout": 1.0 if breakout else 0.0,
            },
        )

    def _classify(self, volatility: float) -> VolatilityRegime:
        if volatility < self.low_threshold:
            return VolatilityRegime.LOW
        if volatility < self.medium_threshold:
            return VolatilityRegime.MEDIUM
        if volatility < self.high_threshold:
            return VolatilityRegime.HIGH
        return VolatilityRegime.EXTREME

    def _ewma_volatility(self, returns: List[float]) -> float:
        variance = returns[0] ** 2
        for r in returns[1:]:
            variance = self.ewma_lambda * variance + (1 - self.ewma_lambda) * r ** 2
        return math.sqrt(variance)

    def _atr(self, candles: Sequence[Candle]) -> float:
        ranges = []
        for prev, cur in zip(candles[:-1], candles[1:]):
            ranges.append(max(cur.high - cur.low, abs(cur.high - prev.close), abs(cur.low - prev.close)))
        recent = ranges[-self.atr_period:]
        return sum(recent) / len(recent) if recent else 0.0
