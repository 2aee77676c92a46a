"""
momentum-trader Infrastructure: Configuration

Pydantic schemas for app.yaml, policy.yaml and signals.yaml plus the loader
used by the runner. Every field has a default so a missing file degrades to
the documented production values.

Usage:
    from infra.config import load_config, validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
    config = load_config("config")
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = "momentum-trader"
    mode: str = Field(default="PAPER", description="PAPER or LIVE")

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        mode = v.upper()
        if mode not in {"PAPER", "LIVE"}:
            raise ValueError(f"mode must be PAPER or LIVE, got {v}")
        return mode


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = "logs/momentum-trader.log"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level {v}")
        return level


class LoopsConfig(BaseModel):
    """Intervals for the four concurrent loops"""
    balance_seconds: float = Field(default=60.0, gt=0)
    performance_seconds: float = Field(default=60.0, gt=0)
    signal_scan_seconds: float = Field(default=15.0, gt=0)
    position_monitor_seconds: float = Field(default=1.0, gt=0)
    jitter_pct: float = Field(default=0.0, ge=0, le=20, description="Random extra sleep as % of interval")


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(default=3, gt=0)
    reset_timeout_seconds: float = Field(default=300.0, gt=0)
    half_open_max_attempts: int = Field(default=2, gt=0)


class BackoffConfig(BaseModel):
    initial_delay_seconds: float = Field(default=1.0, gt=0)
    factor: float = Field(default=2.0, ge=1)
    max_delay_seconds: float = Field(default=10.0, gt=0)
    jitter: float = Field(default=0.1, ge=0, le=1, description="Jitter band as fraction of delay")
    max_attempts: int = Field(default=3, gt=0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "BackoffConfig":
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        return self


class RateLimitConfig(BaseModel):
    max_requests: int = Field(gt=0)
    window_seconds: float = Field(default=60.0, gt=0)


def _default_rate_limits() -> Dict[str, RateLimitConfig]:
    return {
        "coingecko": RateLimitConfig(max_requests=30),
        "binance": RateLimitConfig(max_requests=20),
        "coinbase": RateLimitConfig(max_requests=10),
        "venue": RateLimitConfig(max_requests=60),
    }


class DataSourcesConfig(BaseModel):
    """Market data providers in fallback order"""
    order: List[str] = Field(default_factory=lambda: ["coingecko", "binance", "coinbase"])
    rate_limits: Dict[str, RateLimitConfig] = Field(default_factory=_default_rate_limits)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    price_cache_ttl_seconds: float = Field(default=5.0, gt=0)
    candle_cache_ttl_seconds: float = Field(default=600.0, ge=0)
    request_timeout_seconds: float = Field(default=5.0, gt=0)
    quote_currency: str = "USD"
    symbol_map: Dict[str, Dict[str, str]] = Field(
        default_factory=dict,
        description="source -> symbol -> provider-specific id (e.g. coingecko ids)",
    )

    @field_validator("order")
    @classmethod
    def validate_order(cls, v: List[str]) -> List[str]:
        known = {"coingecko", "binance", "coinbase"}
        unknown = [name for name in v if name not in known]
        if unknown:
            raise ValueError(f"Unknown data sources: {unknown}")
        if len(set(v)) != len(v):
            raise ValueError("Duplicate data sources in order")
        return v


class ExecutionConfig(BaseModel):
    quote_asset: str = "USDC"
    slippage_bps: int = Field(default=100, ge=0, le=5000)
    max_price_impact_pct: float = Field(default=3.0, gt=0, le=100)
    quote_timeout_seconds: float = Field(default=8.0, gt=0)
    swap_timeout_seconds: float = Field(default=45.0, gt=0)
    paper_liquidity_usd: float = Field(default=250_000.0, gt=0, description="Depth used to simulate price impact")
    paper_starting_balance: float = Field(default=1_000.0, ge=0)


class AppConfig(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    loops: LoopsConfig = Field(default_factory=LoopsConfig)
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0)
    state_file: str = "data/.state.json"
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    data_sources: DataSourcesConfig = Field(default_factory=DataSourcesConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)


# ===== Policy Schema =====
class ConfidenceTiersConfig(BaseModel):
    """Size multipliers per confidence tier"""
    high_threshold: float = Field(default=0.8, gt=0, le=1)
    medium_threshold: float = Field(default=0.6, gt=0, le=1)
    low: float = Field(default=0.4, gt=0)
    medium: float = Field(default=0.6, gt=0)
    high: float = Field(default=1.0, gt=0)

    @model_validator(mode="after")
    def validate_thresholds(self) -> "ConfidenceTiersConfig":
        if self.medium_threshold > self.high_threshold:
            raise ValueError("medium_threshold must be <= high_threshold")
        return self


def _regime_size_multipliers() -> Dict[str, float]:
    return {"low": 1.2, "medium": 1.0, "high": 0.7, "extreme": 0.5}


def _regime_stop_multipliers() -> Dict[str, float]:
    return {"low": 0.8, "medium": 1.0, "high": 1.25, "extreme": 1.5}


def _check_regime_keys(v: Dict[str, float]) -> Dict[str, float]:
    missing = {"low", "medium", "high", "extreme"} - set(v)
    if missing:
        raise ValueError(f"Missing regime multipliers: {sorted(missing)}")
    for key, value in v.items():
        if value <= 0:
            raise ValueError(f"Regime multiplier {key} must be > 0, got {value}")
    return v


class SizingConfig(BaseModel):
    base_size: float = Field(default=20.0, gt=0, description="Base notional in quote asset")
    max_size: float = Field(default=50.0, gt=0, description="Absolute notional cap")
    min_size: float = Field(default=1.0, ge=0, description="Skip entries sized below this")
    account_size: float = Field(default=1_000.0, gt=0, description="Fallback account value when balance unknown")
    risk_per_trade_pct: float = Field(default=2.0, gt=0, le=100)
    confidence: ConfidenceTiersConfig = Field(default_factory=ConfidenceTiersConfig)
    regime_multipliers: Dict[str, float] = Field(default_factory=_regime_size_multipliers)
    strategy_multipliers: Dict[str, float] = Field(
        default_factory=lambda: {"trend": 1.2, "arbitrage": 1.5, "momentum": 1.1, "mean_reversion": 0.9}
    )
    default_strategy_multiplier: float = Field(default=1.0, gt=0)

    @field_validator("regime_multipliers")
    @classmethod
    def validate_regimes(cls, v: Dict[str, float]) -> Dict[str, float]:
        return _check_regime_keys(v)

    @model_validator(mode="after")
    def validate_sizes(self) -> "SizingConfig":
        if self.base_size > self.max_size:
            raise ValueError(f"base_size ({self.base_size}) exceeds max_size ({self.max_size})")
        return self


class StopLossConfig(BaseModel):
    base_pct: float = Field(default=5.0, gt=0, le=100)
    min_pct: float = Field(default=2.0, gt=0, le=100)
    max_pct: float = Field(default=15.0, gt=0, le=100)
    regime_multipliers: Dict[str, float] = Field(default_factory=_regime_stop_multipliers)
    strategy_multipliers: Dict[str, float] = Field(
        default_factory=lambda: {"trend": 1.2, "momentum": 1.1, "mean_reversion": 0.8, "arbitrage": 0.5}
    )
    default_strategy_multiplier: float = Field(default=1.0, gt=0)
    atr_reference_ratio: float = Field(default=0.01, gt=0, description="ATR/price ratio treated as neutral")
    atr_adjustment_min: float = Field(default=0.5, gt=0)
    atr_adjustment_max: float = Field(default=2.0, gt=0)

    @field_validator("regime_multipliers")
    @classmethod
    def validate_regimes(cls, v: Dict[str, float]) -> Dict[str, float]:
        return _check_regime_keys(v)

    @model_validator(mode="after")
    def validate_bounds(self) -> "StopLossConfig":
        if self.min_pct > self.max_pct:
            raise ValueError(f"min_pct ({self.min_pct}) exceeds max_pct ({self.max_pct})")
        if self.atr_adjustment_min > self.atr_adjustment_max:
            raise ValueError("atr_adjustment_min exceeds atr_adjustment_max")
        return self


class AccelerationStep(BaseModel):
    profit_pct: float = Field(gt=0)
    callback_pct: float = Field(gt=0)


class TrailingStopConfig(BaseModel):
    activation_pct: Optional[float] = Field(
        default=None, gt=0, description="Activate on this profit %; None means only after the final tier"
    )
    callback_pct: float = Field(default=5.0, gt=0, le=100)
    min_callback_pct: float = Field(default=2.0, gt=0, le=100)
    acceleration: List[AccelerationStep] = Field(
        default_factory=lambda: [
            AccelerationStep(profit_pct=20.0, callback_pct=4.0),
            AccelerationStep(profit_pct=40.0, callback_pct=3.0),
            AccelerationStep(profit_pct=80.0, callback_pct=2.0),
        ]
    )

    @field_validator("acceleration")
    @classmethod
    def sort_steps(cls, v: List[AccelerationStep]) -> List[AccelerationStep]:
        return sorted(v, key=lambda step: step.profit_pct)


class TakeProfitTier(BaseModel):
    percent: float = Field(gt=0, description="Gain over entry that fires this tier")
    size_fraction: float = Field(gt=0, le=1, description="Fraction of original quantity to sell")


def _default_tiers() -> List[TakeProfitTier]:
    return [
        TakeProfitTier(percent=15, size_fraction=0.3),
        TakeProfitTier(percent=30, size_fraction=0.3),
        TakeProfitTier(percent=50, size_fraction=0.2),
        TakeProfitTier(percent=100, size_fraction=0.2),
    ]


class SidewaysConfig(BaseModel):
    max_holding_seconds: float = Field(default=1800.0, gt=0)
    minimum_progress_pct: float = Field(default=5.0, ge=0)
    reallocate_after_seconds: float = Field(default=900.0, gt=0)
    volume_decline_threshold_pct: float = Field(default=30.0, ge=0, le=100)
    price_range_threshold_pct: float = Field(default=2.0, ge=0)


class ExitTriggersConfig(BaseModel):
    volume_decline_pct: float = Field(default=40.0, ge=0, le=100)


class EntryConfig(BaseModel):
    max_signal_age_seconds: float = Field(default=600.0, gt=0)
    min_confidence: float = Field(default=0.5, ge=0, le=1)
    max_open_positions: int = Field(default=10, gt=0)
    candle_interval: str = "5m"
    candle_limit: int = Field(default=100, gt=1)


class PolicyConfig(BaseModel):
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    stop_loss: StopLossConfig = Field(default_factory=StopLossConfig)
    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    take_profit: List[TakeProfitTier] = Field(default_factory=_default_tiers)
    sideways: SidewaysConfig = Field(default_factory=SidewaysConfig)
    exit_triggers: ExitTriggersConfig = Field(default_factory=ExitTriggersConfig)
    entry: EntryConfig = Field(default_factory=EntryConfig)

    @field_validator("take_profit")
    @classmethod
    def validate_tiers(cls, v: List[TakeProfitTier]) -> List[TakeProfitTier]:
        total = sum(tier.size_fraction for tier in v)
        if total > 1.0 + 1e-9:
            raise ValueError(f"Take-profit size fractions sum to {total:.2f} (> 1.0)")
        return sorted(v, key=lambda tier: tier.percent)


# ===== Signals Schema =====
class AggregatorConfig(BaseModel):
    confidence_floor: float = Field(default=0.10, ge=0, le=1)
    max_signals_per_strategy: int = Field(default=3, gt=0)
    high_frequency_strategies: List[str] = Field(default_factory=lambda: ["social", "pump"])
    high_frequency_multiplier: int = Field(default=2, ge=1)
    weights: Dict[str, float] = Field(
        default_factory=lambda: {
            "whale": 1.2,
            "scalp": 1.3,
            "pump": 1.2,
            "social": 1.1,
            "momentum": 1.0,
            "test": 0.8,
            "trend": 0.9,
            "pattern": 0.8,
        }
    )
    default_weight: float = Field(default=0.1, ge=0)
    min_confidence_by_strategy: Dict[str, float] = Field(default_factory=lambda: {"whale": 0.7})


class DropFileConfig(BaseModel):
    enabled: bool = True
    path: str = "data/incoming_signals.json"


class ScannerConfig(BaseModel):
    enabled: bool = False
    watchlist: List[str] = Field(default_factory=list)
    interval: str = "5m"
    limit: int = Field(default=48, gt=12)
    volume_spike_threshold: float = Field(default=2.0, gt=0)
    momentum_threshold_pct: float = Field(default=3.0, gt=0)
    strategy: str = "momentum"


class SignalsConfig(BaseModel):
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    drop_file: DropFileConfig = Field(default_factory=DropFileConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)


class BotConfig(BaseModel):
    app: AppConfig = Field(default_factory=AppConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    signals: SignalsConfig = Field(default_factory=SignalsConfig)


CONFIG_FILES = {
    "app": ("app.yaml", AppConfig),
    "policy": ("policy.yaml", PolicyConfig),
    "signals": ("signals.yaml", SignalsConfig),
}


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning(f"Config file {path} not found, using defaults")
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must contain a mapping at the top level")
    return data


def load_config(config_dir: str = "config") -> BotConfig:
    """
    Load and validate all config files.

    Raises:
        ValueError: if any file fails schema validation
    """
    errors = validate_all_configs(config_dir)
    if errors:
        raise ValueError(f"Invalid configuration: {len(errors)} error(s) found: {errors}")

    config_path = Path(config_dir)
    sections = {key: _load_yaml(config_path / filename) for key, (filename, _) in CONFIG_FILES.items()}
    return BotConfig.model_validate(sections)


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate app.yaml, policy.yaml and signals.yaml.

    Returns:
        List of error messages (empty if all valid)
    """
    config_path = Path(config_dir)
    all_errors: List[str] = []

    for key, (filename, model) in CONFIG_FILES.items():
        try:
            data = _load_yaml(config_path / filename)
        except (yaml.YAMLError, ValueError) as e:
            all_errors.append(f"{filename}: {e}")
            continue
        try:
            model.model_validate(data)
        except ValidationError as e:
            for err in e.errors():
                loc = ".".join(str(part) for part in err["loc"])
                all_errors.append(f"{filename}: {loc}: {err['msg']}")

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} config validation error(s) found")

    return all_errors
