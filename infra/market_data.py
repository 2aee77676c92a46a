"""
momentum-trader Infrastructure: Market Data Service

Ordered multi-source price and candle access. Sources are tried in
configured order; a source whose circuit is open is skipped for this call and
the next one is tried. When every source fails the last cached value is
served as stale data (or StaleDataUsed is raised to callers that require
fresh data).
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from core.exceptions import CircuitOpen, CriticalDataUnavailable, StaleDataUsed
from core.models import Candle
from infra.price_cache import PriceCache
from infra.resilience import ResilientCaller

logger = logging.getLogger(__name__)


class MarketDataSource(ABC):
    """Contract for a single price/candle provider."""
    name: str = "source"
    supports_candles: bool = True

    @abstractmethod
    def get_price(self, symbol: str) -> float:
        ...

    @abstractmethod
    def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        ...


@dataclass
class PriceQuote:
    price: float
    source: str
    stale: bool = False
    age_seconds: float = 0.0


class MarketDataService:
    def __init__(
        self,
        sources: List[MarketDataSource],
        caller: ResilientCaller,
        price_cache: PriceCache,
        quote_currency: str = "USD",
        request_timeout: float = 5.0,
        candle_ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        on_stale: Optional[Callable[[str, float], None]] = None,
    ):
        if not sources:
            raise ValueError("MarketDataService needs at least one source")
        self.sources = sources
        self.caller = caller
        self.price_cache = price_cache
        self.quote_currency = quote_currency
        self.request_timeout = request_timeout
        self.candle_ttl_seconds = candle_ttl_seconds
        self._clock = clock
        self._on_stale = on_stale
        self._candles: Dict[Tuple[str, str, int], Tuple[float, List[Candle]]] = {}
        self._candle_lock = threading.Lock()

    def _pair(self, symbol: str) -> Tuple[str, str]:
        return (symbol.upper(), self.quote_currency)

    def get_price(self, symbol: str, allow_stale: bool = True) -> PriceQuote:
        """
        Current price for `symbol`.

        Args:
            symbol: Base asset symbol
            allow_stale: Serve the last cached price when every source fails

        Raises:
            StaleDataUsed: every source failed, only stale data exists, allow_stale=False
            CriticalDataUnavailable: every source failed and nothing is cached
        """
        pair = self._pair(symbol)
        cached = self.price_cache.get_fresh(pair)
        if cached is not None:
            return PriceQuote(price=cached.price, source=cached.source, age_seconds=cached.age(self._clock()))

        last_error: Optional[Exception] = None
        for source in self.sources:
            try:
                price = self.caller.call(source.name, source.get_price, symbol, timeout=self.request_timeout)
            except CircuitOpen as e:
                logger.debug(f"Skipping {source.name} for {symbol}: {e}")
                last_error = e
                continue
            except Exception as e:
                logger.warning(f"Price fetch from {source.name} failed for {symbol}: {e}")
                last_error = e
                continue

            if price is None or price <= 0:
                logger.warning(f"{source.name} returned invalid price {price!r} for {symbol}")
                last_error = ValueError(f"{source.name} returned invalid price {price!r} for {symbol}")
                continue

            self.price_cache.put(pair, float(price), source.name)
            return PriceQuote(price=float(price), source=source.name)

        stale = self.price_cache.get_any(pair)
        if stale is None:
            raise CriticalDataUnavailable(f"price:{symbol}", last_error)

        age = stale.age(self._clock())
        if not allow_stale:
            raise StaleDataUsed(f"{pair[0]}/{pair[1]}", age, stale.price)

        logger.warning(
            f"All price sources failed for {symbol}; using cached {stale.source} price "
            f"{stale.price:.6g} ({age:.1f}s old)"
        )
        if self._on_stale:
            self._on_stale(symbol, age)
        return PriceQuote(price=stale.price, source=stale.source, stale=True, age_seconds=age)

    def get_candles(self, symbol: str, interval: str = "5m", limit: int = 100) -> List[Candle]:
        """
        Recent candles, oldest first.

        Raises:
            CriticalDataUnavailable: no source produced candles and none are cached
        """
        key = (symbol.upper(), interval, limit)
        now = self._clock()
        with self._candle_lock:
            cached = self._candles.get(key)
        if cached and now - cached[0] <= self.candle_ttl_seconds:
            return cached[1]

        last_error: Optional[Exception] = None
        for source in self.sources:
            if not source.supports_candles:
                continue
            try:
                candles = self.caller.call(
                    source.name, source.get_candles, symbol, interval, limit, timeout=self.request_timeout
                )
            except CircuitOpen as e:
                logger.debug(f"Skipping {source.name} candles for {symbol}: {e}")
                last_error = e
                continue
            except Exception as e:
                logger.warning(f"Candle fetch from {source.name} failed for {symbol}: {e}")
                last_error = e
                continue

            if not candles:
                last_error = ValueError(f"{source.name} returned no candles for {symbol}")
                continue
            with self._candle_lock:
                self._candles[key] = (self._clock(), candles)
            return candles

        if cached:
            logger.warning(f"All candle sources failed for {symbol}; using cached history")
            return cached[1]
        raise CriticalDataUnavailable(f"candles:{symbol}", last_error)
