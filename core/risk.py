"""
momentum-trader Core: Volatility & Risk Sizing

Regime-aware position sizing and stop-loss / trailing-stop distances.
Deterministic: identical inputs always give identical outputs.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Union

from core.models import Strategy, VolatilityForecast, VolatilityRegime
from infra.config import SizingConfig, StopLossConfig, TrailingStopConfig

logger = logging.getLogger(__name__)

RegimeLike = Union[VolatilityForecast, VolatilityRegime, str]


def _regime_of(forecast: RegimeLike) -> VolatilityRegime:
    if isinstance(forecast, VolatilityForecast):
        return forecast.regime
    return VolatilityRegime(forecast)


def _strategy_key(strategy: Optional[str]) -> str:
    return Strategy.parse(strategy).value if strategy else Strategy.UNKNOWN.value


def _strategy_multiplier(table: Dict[str, float], strategy: Optional[str], default: float) -> float:
    if strategy and strategy.lower() in table:
        return table[strategy.lower()]
    return table.get(_strategy_key(strategy), default)


@dataclass
class SizingResult:
    size: float
    adjusted_risk_pct: float
    capped_by: str = "computed"  # computed, risk, max_size
    multipliers: Dict[str, float] = field(default_factory=dict)


class PositionSizer:
    """
    size = base x confidence tier x regime x strategy [x predicted-vol damping x performance scale]
    capped at min(size, risk_amount / stop_distance, max_size)
    """

    def __init__(self, config: SizingConfig, default_stop_pct: float = 5.0):
        self.config = config
        self.default_stop_pct = default_stop_pct

    def confidence_multiplier(self, confidence: float) -> float:
        tiers = self.config.confidence
        if confidence >= tiers.high_threshold:
            return tiers.high
        if confidence >= tiers.medium_threshold:
            return tiers.medium
        return tiers.low

    def size_position(
        self,
        confidence: float,
        forecast: RegimeLike,
        account_value: float,
        strategy: Optional[str] = None,
        stop_distance_pct: Optional[float] = None,
        performance_scale: float = 1.0,
    ) -> SizingResult:
        cfg = self.config
        regime = _regime_of(forecast)

        multipliers = {
            "confidence": self.confidence_multiplier(confidence),
            "regime": cfg.regime_multipliers[regime.value],
            "strategy": _strategy_multiplier(cfg.strategy_multipliers, strategy, cfg.default_strategy_multiplier),
            "volatility": 1.0,
            "performance": performance_scale,
        }
        if isinstance(forecast, VolatilityForecast):
            current, predicted = forecast.current_volatility, forecast.predicted_volatility
            if current > 0 and predicted > current:
                multipliers["volatility"] = max(0.5, current / predicted)

        computed = cfg.base_size
        for value in multipliers.values():
            computed *= value

        stop_pct = stop_distance_pct if stop_distance_pct and stop_distance_pct > 0 else self.default_stop_pct
        risk_amount = max(account_value, 0.0) * cfg.risk_per_trade_pct / 100
        max_from_risk = risk_amount / (stop_pct / 100)

        size = computed
        capped_by = "computed"
        if max_from_risk < size:
            size, capped_by = max_from_risk, "risk"
        if cfg.max_size < size:
            size, capped_by = cfg.max_size, "max_size"

        adjusted_risk_pct = size / account_value * 100 if account_value > 0 else 0.0

        logger.debug(
            f"Sized {strategy or 'unknown'} conf={confidence:.2f} regime={regime.value}: "
            f"computed={computed:.2f} risk_cap={max_from_risk:.2f} -> {size:.2f} ({capped_by})"
        )
        return SizingResult(size=size, adjusted_risk_pct=adjusted_risk_pct, capped_by=capped_by, multipliers=multipliers)


@dataclass
class TrailingPlan:
    callback_pct: float
    min_callback_pct: float
    activation_pct: Optional[float] = None


@dataclass
class StopLossPlan:
    initial_stop: float
    distance_pct: float
    trailing: TrailingPlan


def accelerated_callback(
    base_callback: float,
    profit_pct: float,
    steps: Iterable,
    min_callback: float,
) -> float:
    """
    Tighten the trailing callback as profit crosses each acceleration step.

    Steps expose `profit_pct` and `callback_pct`; the result never drops
    below `min_callback` and never widens past `base_callback`.
    """
    callback = base_callback
    for step in steps:
        if profit_pct >= step.profit_pct:
            callback = min(callback, step.callback_pct)
    return max(callback, min_callback)


class StopLossCalculator:
    def __init__(self, config: StopLossConfig, trailing: TrailingStopConfig):
        self.config = config
        self.trailing = trailing

    def distance_pct(self, forecast: RegimeLike, strategy: Optional[str] = None) -> float:
        cfg = self.config
        regime = _regime_of(forecast)
        distance = cfg.base_pct * cfg.regime_multipliers[regime.value]
        distance *= _strategy_multiplier(cfg.strategy_multipliers, strategy, cfg.default_strategy_multiplier)

        if isinstance(forecast, VolatilityForecast):
            atr_adjust = forecast.atr_ratio / cfg.atr_reference_ratio
            distance *= min(max(atr_adjust, cfg.atr_adjustment_min), cfg.atr_adjustment_max)
            current, predicted = forecast.current_volatility, forecast.predicted_volatility
            if current > 0 and predicted > current:
                distance *= min(predicted / current, cfg.atr_adjustment_max)

        return min(max(distance, cfg.min_pct), cfg.max_pct)

    def calculate_stop_loss(
        self,
        entry_price: float,
        forecast: RegimeLike,
        side: str = "buy",
        strategy: Optional[str] = None,
    ) -> StopLossPlan:
        distance = self.distance_pct(forecast, strategy)
        if side.lower() in ("sell", "short"):
            initial_stop = entry_price * (1 + distance / 100)
        else:
            initial_stop = entry_price * (1 - distance / 100)

        return StopLossPlan(initial_stop=initial_stop, distance_pct=distance, trailing=self.trailing_plan(forecast, strategy))

    def trailing_plan(self, forecast: RegimeLike, strategy: Optional[str] = None) -> TrailingPlan:
        regime = _regime_of(forecast)
        cfg = self.config
        callback = self.trailing.callback_pct * cfg.regime_multipliers[regime.value]
        callback *= _strategy_multiplier(cfg.strategy_multipliers, strategy, cfg.default_strategy_multiplier)

        tight_share = 0.4 if regime in (VolatilityRegime.HIGH, VolatilityRegime.EXTREME) else 0.3
        min_callback = max(self.trailing.min_callback_pct, callback * tight_share)
        return TrailingPlan(
            callback_pct=max(callback, min_callback),
            min_callback_pct=min_callback,
            activation_pct=self.trailing.activation_pct,
        )
