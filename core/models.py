"""
momentum-trader Core: Data Model

Positions, signals, forecasts and venue payloads shared by the engine,
the sizer and the resilience layer.
"""

import copy
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Strategy(str, Enum):
    """Known signal strategies. Anything else maps to UNKNOWN."""
    SCALP = "scalp"
    WHALE = "whale"
    SOCIAL = "social"
    PUMP = "pump"
    MOMENTUM = "momentum"
    TREND = "trend"
    PATTERN = "pattern"
    ARBITRAGE = "arbitrage"
    MEAN_REVERSION = "mean_reversion"
    TEST = "test"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "Strategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class ExitReason(str, Enum):
    SIDEWAYS_TIMEOUT = "sideways_timeout"
    SIDEWAYS_DETECTED = "sideways_detected"
    WHALE_DISTRIBUTION = "whale_distribution"
    TRAILING_STOP = "trailing_stop"
    STOP_LOSS = "stop_loss"
    VOLUME_DECLINE = "volume_decline"
    TAKE_PROFIT = "take_profit"  # every tier sold, nothing left to hold
    BOT_SHUTDOWN = "bot_shutdown"


class ActionType(str, Enum):
    PARTIAL_EXIT = "partial_exit"
    FULL_EXIT = "full_exit"
    ACTIVATE_TRAILING = "activate_trailing"
    RAISE_TRAILING = "raise_trailing"


class VolatilityRegime(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


@dataclass
class TradeSignal:
    """Candidate trade produced by a signal source and ranked by the aggregator."""
    symbol: str
    confidence: float
    strategy: str
    side: str = "buy"
    reason: str = ""
    timestamp: datetime = field(default_factory=utc_now)
    momentum: Optional[float] = None
    asset: Optional[str] = None  # venue asset handle (token mint); defaults to symbol
    score: Optional[float] = None  # weighted rank assigned by the aggregator

    @property
    def strategy_kind(self) -> Strategy:
        return Strategy.parse(self.strategy)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeSignal":
        return cls(
            symbol=data["symbol"],
            confidence=float(data.get("confidence", 0.0)),
            strategy=str(data.get("strategy", Strategy.UNKNOWN.value)),
            side=data.get("side", "buy"),
            reason=data.get("reason", ""),
            timestamp=_parse_dt(data.get("timestamp")) or utc_now(),
            momentum=data.get("momentum"),
            asset=data.get("asset"),
            score=data.get("score"),
        )


@dataclass
class TakeProfitLevel:
    price: float
    size_fraction: float
    hit: bool = False


@dataclass
class TrailingStop:
    callback_pct: float
    active: bool = False
    highest_price: float = 0.0
    current_stop: float = 0.0
    min_callback_pct: Optional[float] = None


@dataclass
class Position:
    """One open trade per symbol, mutated tick by tick until fully exited."""
    symbol: str
    asset: str
    entry_price: float
    quantity: float
    remaining_quantity: float
    stop_loss: float
    take_profit_levels: List[TakeProfitLevel]
    trailing_stop: TrailingStop
    strategy: str
    confidence: float
    opened_at: datetime
    status: PositionStatus = PositionStatus.OPEN
    closed_at: Optional[datetime] = None
    notional: float = 0.0
    realized_pnl: float = 0.0
    exit_reason: Optional[str] = None

    def copy(self) -> "Position":
        return copy.deepcopy(self)

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def pnl_pct(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100.0

    def age_seconds(self, now: datetime) -> float:
        return (now - self.opened_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["opened_at"] = self.opened_at.isoformat()
        data["closed_at"] = self.closed_at.isoformat() if self.closed_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        levels = [TakeProfitLevel(**lvl) for lvl in data.get("take_profit_levels", [])]
        trailing = TrailingStop(**data["trailing_stop"])
        return cls(
            symbol=data["symbol"],
            asset=data.get("asset") or data["symbol"],
            entry_price=float(data["entry_price"]),
            quantity=float(data["quantity"]),
            remaining_quantity=float(data["remaining_quantity"]),
            stop_loss=float(data["stop_loss"]),
            take_profit_levels=levels,
            trailing_stop=trailing,
            strategy=data.get("strategy", Strategy.UNKNOWN.value),
            confidence=float(data.get("confidence", 0.0)),
            opened_at=_parse_dt(data["opened_at"]),
            status=PositionStatus(data.get("status", PositionStatus.OPEN.value)),
            closed_at=_parse_dt(data.get("closed_at")),
            notional=float(data.get("notional", 0.0)),
            realized_pnl=float(data.get("realized_pnl", 0.0)),
            exit_reason=data.get("exit_reason"),
        )


@dataclass
class MarketTick:
    """Observation of one symbol fed into a monitoring tick."""
    price: float
    timestamp: datetime
    volume_spike_ratio: Optional[float] = None
    price_range_pct: Optional[float] = None
    whale_distribution: bool = False
    stale: bool = False


@dataclass
class PositionAction:
    type: ActionType
    quantity: float = 0.0
    price: float = 0.0
    reason: Optional[ExitReason] = None
    level_index: Optional[int] = None


@dataclass
class TradeRecord:
    symbol: str
    strategy: str
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float
    roi_pct: float
    reason: str
    opened_at: datetime
    closed_at: datetime
    realized_pnl_total: float = 0.0

    @property
    def is_win(self) -> bool:
        return self.realized_pnl_total > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["opened_at"] = self.opened_at.isoformat()
        data["closed_at"] = self.closed_at.isoformat()
        return data


@dataclass
class Candle:
    timestamp: float
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class VolatilityForecast:
    regime: VolatilityRegime
    current_volatility: float
    predicted_volatility: float
    atr_ratio: float
    metrics: Dict[str, float] = field(default_factory=dict)


@dataclass
class SwapQuote:
    input_asset: str
    output_asset: str
    amount_in: float
    out_amount: float
    price: float
    price_impact_pct: float
    slippage_bps: int = 100
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SwapResult:
    status: str  # "success" or "failed"
    amount_out: float = 0.0
    signature: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"
