"""
Pytest configuration and fixtures for momentum-trader tests.

Fixtures build the lifecycle engine from real components (config models,
sizer, stop calculator, state store) around deterministic fakes for time,
market data and the venue.
"""
import pytest

from analytics.performance import PerformanceTracker
from core.execution import ExecutionGateway
from core.market_analysis import LiquidityGuard, VolumeAnalyzer
from core.position_engine import PositionEngine
from core.risk import PositionSizer, StopLossCalculator
from infra.config import PolicyConfig
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from tests.helpers import FakeClock, FakeMarketData, InlineCaller, ScriptedVenue


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    """Production defaults from the schema"""
    return PolicyConfig()


@pytest.fixture
def state_store(tmp_path):
    return StateStore(str(tmp_path / "state.json"))


@pytest.fixture
def market_data():
    return FakeMarketData({"SOL": 100.0, "JUP": 1.0, "BONK": 0.00002})


@pytest.fixture
def venue(market_data):
    return ScriptedVenue(market_data)


@pytest.fixture
def gateway(venue):
    return ExecutionGateway(venue, InlineCaller(), quote_asset="USDC", max_price_impact_pct=3.0)


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False)


@pytest.fixture
def engine(policy, gateway, market_data, state_store, clock, metrics):
    return PositionEngine(
        policy,
        gateway,
        market_data,
        state_store,
        sizer=PositionSizer(policy.sizing, default_stop_pct=policy.stop_loss.base_pct),
        stop_calculator=StopLossCalculator(policy.stop_loss, policy.trailing_stop),
        volume_analyzer=VolumeAnalyzer(market_data),
        liquidity_guard=LiquidityGuard(gateway, 3.0),
        performance=PerformanceTracker(clock=clock.utc),
        metrics=metrics,
        clock=clock.utc,
    )
