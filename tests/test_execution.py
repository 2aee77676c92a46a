"""
Tests for the execution gateway and paper venue

Impact ceiling, swap-never-retried, fill math and error wrapping.
"""
import pytest

from core.exceptions import ExecutionFailure, TransientNetworkError
from core.execution import ExecutionGateway, PaperVenue
from core.market_analysis import LiquidityGuard
from infra.circuit_breaker import CircuitBreakerRegistry
from infra.rate_limiter import RateLimiter
from infra.resilience import ResilientCaller
from infra.retry import BackoffPolicy
from tests.helpers import FakeMarketData, InlineCaller, ScriptedVenue


@pytest.fixture
def resilient_caller(clock):
    caller = ResilientCaller(
        CircuitBreakerRegistry(clock=clock),
        RateLimiter(clock=clock, sleep=clock.sleep),
        BackoffPolicy(max_attempts=3, jitter=0.0),
        sleep=clock.sleep,
    )
    yield caller
    caller.close()


class TestExecutionGateway:
    def test_buy_fill(self, gateway, venue):
        """$20 at 100 buys 0.2"""
        fill = gateway.buy("SOL", "SOL", 20.0)
        assert fill.quantity == pytest.approx(0.2)
        assert fill.price == pytest.approx(100.0)
        assert len(venue.swaps) == 1

    def test_sell_fill(self, gateway, market_data):
        market_data.set_price("SOL", 110.0)
        fill = gateway.sell("SOL", "SOL", 0.5)
        assert fill.amount_out == pytest.approx(55.0)
        assert fill.price == pytest.approx(110.0)

    def test_impact_ceiling_blocks_swap(self, gateway, venue):
        """Quotes above the impact ceiling never reach swap()"""
        venue.impact_pct = 3.5
        with pytest.raises(ExecutionFailure) as exc_info:
            gateway.buy("SOL", "SOL", 20.0)
        assert "price impact" in exc_info.value.reason
        assert venue.swaps == []

    def test_failed_swap_raises(self, gateway, venue):
        venue.fail_swaps = True
        with pytest.raises(ExecutionFailure) as exc_info:
            gateway.sell("SOL", "SOL", 1.0)
        assert exc_info.value.reason == "route expired"

    def test_non_positive_amount(self, gateway):
        with pytest.raises(ExecutionFailure):
            gateway.sell("SOL", "SOL", 0.0)

    def test_quote_errors_wrapped(self, gateway, market_data):
        """Missing price during quote surfaces as ExecutionFailure"""
        with pytest.raises(ExecutionFailure):
            gateway.buy("WIF", "WIF", 10.0)

    def test_swap_not_retried(self, resilient_caller, venue):
        """A transient swap error is not retried (the swap may have landed)"""
        venue.swap_error = TransientNetworkError("confirmation timeout")
        gateway = ExecutionGateway(venue, resilient_caller)
        with pytest.raises(ExecutionFailure):
            gateway.buy("SOL", "SOL", 20.0)
        assert len(venue.swaps) == 1

    def test_swap_goes_through_venue_source(self, venue):
        caller = InlineCaller()
        ExecutionGateway(venue, caller).buy("SOL", "SOL", 20.0)
        assert [c[0] for c in caller.calls] == ["venue", "venue"]
        assert caller.calls[1] == ("venue", "swap", False)


class TestPaperVenue:
    @pytest.fixture
    def paper(self):
        return PaperVenue(FakeMarketData({"SOL": 100.0}), liquidity_usd=10_000.0, starting_balance=1_000.0)

    def test_impact_grows_with_size(self, paper):
        small = paper.quote("USDC", "SOL", 100.0, 100)
        large = paper.quote("USDC", "SOL", 500.0, 100)
        assert small.price_impact_pct == pytest.approx(1.0)
        assert large.price_impact_pct == pytest.approx(5.0)

    def test_swap_moves_balances(self, paper):
        quote = paper.quote("USDC", "SOL", 100.0, 100)
        result = paper.swap(quote)
        assert result.ok
        assert paper.get_balance("USDC") == pytest.approx(900.0)
        assert paper.get_balance("SOL") == pytest.approx(0.99)

    def test_insufficient_balance(self, paper):
        result = paper.swap(paper.quote("SOL", "USDC", 5.0, 100))
        assert not result.ok
        assert "insufficient" in result.reason


class TestLiquidityGuard:
    def test_safe(self, gateway):
        assert LiquidityGuard(gateway, 3.0).check("SOL", "SOL", 50.0).is_safe

    def test_too_much_impact(self, gateway, venue):
        venue.impact_pct = 4.0
        check = LiquidityGuard(gateway, 3.0).check("SOL", "SOL", 50.0)
        assert not check.is_safe
        assert check.price_impact_pct == 4.0

    def test_no_route(self, gateway):
        check = LiquidityGuard(gateway, 3.0).check("WIF", "WIF", 50.0)
        assert not check.is_safe
