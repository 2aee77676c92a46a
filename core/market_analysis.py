"""
momentum-trader Core: Market Analysis

Inputs to entry checks and monitoring ticks that are derived from market
data rather than price alone:

- VolumeAnalyzer: last-hour volume spike ratio and price range from candles
- LiquidityGuard: pre-entry depth check via a venue quote
- WhaleMonitor: large-holder distribution probe (contract + implementations)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from core.exceptions import ExecutionFailure
from core.models import Candle

logger = logging.getLogger(__name__)

INTERVAL_SECONDS = {"1m": 60, "5m": 300, "15m": 900, "1h": 3600}


def volume_spike_ratio(candles: Sequence[Candle], candles_per_hour: int) -> Optional[float]:
    """
    Last hour's volume relative to the average hourly volume before it.

    Returns None when there is less than two hours of history or no baseline volume.
    """
    if candles_per_hour <= 0 or len(candles) < candles_per_hour * 2:
        return None
    recent = candles[-candles_per_hour:]
    history = candles[:-candles_per_hour]
    hours = len(history) / candles_per_hour
    baseline = sum(c.volume for c in history) / hours
    if baseline <= 0:
        return None
    return sum(c.volume for c in recent) / baseline


def price_range_pct(candles: Sequence[Candle]) -> Optional[float]:
    """High-low range over the candles as % of the low."""
    if not candles:
        return None
    low = min(c.low for c in candles)
    high = max(c.high for c in candles)
    if low <= 0:
        return None
    return (high - low) / low * 100


@dataclass
class VolumeProfile:
    spike_ratio: Optional[float]
    price_range_pct: Optional[float]
    momentum_pct: Optional[float] = None


class VolumeAnalyzer:
    def __init__(self, market_data, interval: str = "5m", limit: int = 48):
        if interval not in INTERVAL_SECONDS:
            raise ValueError(f"Unsupported interval {interval}")
        self.market_data = market_data
        self.interval = interval
        self.limit = limit
        self.candles_per_hour = 3600 // INTERVAL_SECONDS[interval]

    def profile(self, symbol: str) -> VolumeProfile:
        candles: List[Candle] = self.market_data.get_candles(symbol, self.interval, self.limit)
        last_hour = candles[-self.candles_per_hour:]
        momentum = None
        if len(last_hour) >= 2 and last_hour[0].open > 0:
            momentum = (last_hour[-1].close - last_hour[0].open) / last_hour[0].open * 100
        return VolumeProfile(
            spike_ratio=volume_spike_ratio(candles, self.candles_per_hour),
            price_range_pct=price_range_pct(last_hour),
            momentum_pct=momentum,
        )


@dataclass
class LiquidityCheck:
    is_safe: bool
    price_impact_pct: float = 0.0
    reason: Optional[str] = None


class LiquidityGuard:
    """Quote a probe notional and require impact under the ceiling."""

    def __init__(self, gateway, max_price_impact_pct: float = 3.0):
        self.gateway = gateway
        self.max_price_impact_pct = max_price_impact_pct

    def check(self, symbol: str, asset: str, notional: float) -> LiquidityCheck:
        try:
            quote = self.gateway.quote(symbol, self.gateway.quote_asset, asset, notional)
        except ExecutionFailure as e:
            return LiquidityCheck(is_safe=False, reason=e.reason)

        if quote.out_amount <= 0:
            return LiquidityCheck(is_safe=False, price_impact_pct=quote.price_impact_pct, reason="no route")
        if quote.price_impact_pct > self.max_price_impact_pct:
            return LiquidityCheck(
                is_safe=False,
                price_impact_pct=quote.price_impact_pct,
                reason=f"impact {quote.price_impact_pct:.2f}% > {self.max_price_impact_pct:.2f}%",
            )
        return LiquidityCheck(is_safe=True, price_impact_pct=quote.price_impact_pct)


class WhaleMonitor(ABC):
    @abstractmethod
    def distribution_detected(self, symbol: str) -> bool:
        ...


class NullWhaleMonitor(WhaleMonitor):
    """Used when no on-chain holder feed is configured."""

    def distribution_detected(self, symbol: str) -> bool:
        return False


class NetFlowWhaleMonitor(WhaleMonitor):
    """Distribution when large-holder 24h net flow is below -threshold."""

    def __init__(self, net_flow_24h: Callable[[str], float], threshold: float):
        self.net_flow_24h = net_flow_24h
        self.threshold = threshold

    def distribution_detected(self, symbol: str) -> bool:
        flow = self.net_flow_24h(symbol)
        if flow < -self.threshold:
            logger.info(f"Whale distribution on {symbol}: net flow {flow:,.0f} < -{self.threshold:,.0f}")
            return True
        return False
