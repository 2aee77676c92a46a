"""
momentum-trader Core: Execution

Venue contract (quote / swap / balance), a paper venue that fills against live
market prices, and the gateway the lifecycle engine trades through.

Safety:
- Every swap is quoted first; quotes whose price impact exceeds the
  configured ceiling are rejected before anything is submitted
- Quotes and swap confirmations carry explicit timeouts
- Swaps are never retried automatically (a timed-out swap may have landed)
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from core.exceptions import CircuitOpen, ExecutionFailure
from core.models import SwapQuote, SwapResult

logger = logging.getLogger(__name__)

VENUE_SOURCE = "venue"


class ExecutionVenue(ABC):
    """Contract for the swap/quote provider (DEX aggregator or simulator)."""

    @abstractmethod
    def quote(self, input_asset: str, output_asset: str, amount: float, slippage_bps: int) -> SwapQuote:
        ...

    @abstractmethod
    def swap(self, quote: SwapQuote) -> SwapResult:
        ...

    @abstractmethod
    def get_balance(self, asset: str) -> float:
        ...


class PaperVenue(ExecutionVenue):
    """
    Simulated venue.

    Prices come from the market data service; price impact grows linearly
    with notional against a configured liquidity depth.
    """

    def __init__(self, market_data, quote_asset: str = "USDC", liquidity_usd: float = 250_000.0,
                 starting_balance: float = 1_000.0):
        self.market_data = market_data
        self.quote_asset = quote_asset
        self.liquidity_usd = liquidity_usd
        self._balances: Dict[str, float] = {quote_asset: starting_balance}
        self._lock = threading.Lock()
        logger.info(f"PaperVenue ready: {starting_balance:.2f} {quote_asset}, depth ${liquidity_usd:,.0f}")

    def quote(self, input_asset: str, output_asset: str, amount: float, slippage_bps: int) -> SwapQuote:
        if input_asset == self.quote_asset:
            price = self.market_data.get_price(output_asset).price
            notional = amount
            impact_pct = notional / self.liquidity_usd * 100
            out_amount = amount / price * (1 - impact_pct / 100)
        else:
            price = self.market_data.get_price(input_asset).price
            notional = amount * price
            impact_pct = notional / self.liquidity_usd * 100
            out_amount = notional * (1 - impact_pct / 100)

        return SwapQuote(
            input_asset=input_asset,
            output_asset=output_asset,
            amount_in=amount,
            out_amount=out_amount,
            price=price,
            price_impact_pct=impact_pct,
            slippage_bps=slippage_bps,
        )

    def swap(self, quote: SwapQuote) -> SwapResult:
        with self._lock:
            available = self._balances.get(quote.input_asset, 0.0)
            if available + 1e-9 < quote.amount_in:
                return SwapResult(
                    status="failed",
                    reason=f"insufficient {quote.input_asset}: have {available:.6g}, need {quote.amount_in:.6g}",
                )
            self._balances[quote.input_asset] = available - quote.amount_in
            self._balances[quote.output_asset] = self._balances.get(quote.output_asset, 0.0) + quote.out_amount
        return SwapResult(status="success", amount_out=quote.out_amount, signature=f"paper-{uuid.uuid4().hex[:16]}")

    def get_balance(self, asset: str) -> float:
        with self._lock:
            return self._balances.get(asset, 0.0)


@dataclass
class Fill:
    quantity: float  # base asset bought or sold
    price: float  # effective quote-per-base price
    amount_in: float
    amount_out: float
    signature: Optional[str] = None


class ExecutionGateway:
    """Quote -> impact check -> swap, through the resilience layer."""

    def __init__(
        self,
        venue: ExecutionVenue,
        caller,
        quote_asset: str = "USDC",
        slippage_bps: int = 100,
        max_price_impact_pct: float = 3.0,
        quote_timeout: float = 8.0,
        swap_timeout: float = 45.0,
    ):
        self.venue = venue
        self.caller = caller
        self.quote_asset = quote_asset
        self.slippage_bps = slippage_bps
        self.max_price_impact_pct = max_price_impact_pct
        self.quote_timeout = quote_timeout
        self.swap_timeout = swap_timeout

    def quote(self, symbol: str, input_asset: str, output_asset: str, amount: float) -> SwapQuote:
        try:
            return self.caller.call(
                VENUE_SOURCE,
                self.venue.quote,
                input_asset,
                output_asset,
                amount,
                self.slippage_bps,
                timeout=self.quote_timeout,
            )
        except CircuitOpen as e:
            raise ExecutionFailure(symbol, f"venue unavailable: {e}") from e
        except Exception as e:
            raise ExecutionFailure(symbol, f"quote failed: {e}") from e

    def buy(self, symbol: str, asset: str, notional: float) -> Fill:
        quote, result = self._execute(symbol, self.quote_asset, asset, notional)
        quantity = result.amount_out
        return Fill(
            quantity=quantity,
            price=notional / quantity,
            amount_in=notional,
            amount_out=quantity,
            signature=result.signature,
        )

    def sell(self, symbol: str, asset: str, quantity: float) -> Fill:
        quote, result = self._execute(symbol, asset, self.quote_asset, quantity)
        return Fill(
            quantity=quantity,
            price=result.amount_out / quantity,
            amount_in=quantity,
            amount_out=result.amount_out,
            signature=result.signature,
        )

    def get_balance(self, asset: str) -> float:
        return self.caller.call(VENUE_SOURCE, self.venue.get_balance, asset, timeout=self.quote_timeout)

    def _execute(self, symbol: str, input_asset: str, output_asset: str, amount: float):
        if amount <= 0:
            raise ExecutionFailure(symbol, f"non-positive amount {amount}")

        quote = self.quote(symbol, input_asset, output_asset, amount)
        if quote.price_impact_pct > self.max_price_impact_pct:
            raise ExecutionFailure(
                symbol,
                f"price impact {quote.price_impact_pct:.2f}% exceeds ceiling {self.max_price_impact_pct:.2f}%",
            )
        if quote.out_amount <= 0:
            raise ExecutionFailure(symbol, "quote returned no output")

        try:
            result = self.caller.call(VENUE_SOURCE, self.venue.swap, quote, timeout=self.swap_timeout, retry=False)
        except Exception as e:
            raise ExecutionFailure(symbol, f"swap failed: {e}") from e

        if not result.ok or result.amount_out <= 0:
            raise ExecutionFailure(symbol, result.reason or "swap returned failure")

        logger.info(
            f"SWAP {symbol}: {amount:.6g} {input_asset} -> {result.amount_out:.6g} {output_asset} "
            f"(impact {quote.price_impact_pct:.2f}%, sig={result.signature})"
        )
        return quote, result
