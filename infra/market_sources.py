"""
momentum-trader Infrastructure: HTTP Market Data Sources

Public REST price and candle providers. Each source translates transport
failures into the engine's error taxonomy:

- 429                      -> RateLimited (retried after the rate limiter)
- 5xx, timeouts, resets    -> TransientNetworkError (retried with backoff)
- other 4xx                -> requests.HTTPError (fatal, not retried)

Retrying, rate limiting and circuit breaking happen one level up in
MarketDataService; these classes make exactly one request per call.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from core.exceptions import RateLimited, TransientNetworkError
from core.models import Candle
from infra.market_data import MarketDataSource

logger = logging.getLogger(__name__)

INTERVAL_SECONDS = {"1m": 60, "5m": 300, "15m": 900, "1h": 3600, "6h": 21600, "1d": 86400}


class HttpMarketSource(MarketDataSource):
    base_url = ""

    def __init__(
        self,
        timeout: float = 5.0,
        symbol_map: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.symbol_map = {k.upper(): v for k, v in (symbol_map or {}).items()}
        self.session = session or requests.Session()

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else 0
            if status_code == 429:
                retry_after = e.response.headers.get("Retry-After") if e.response is not None else None
                logger.warning(f"{self.name} rate limited (429) on {path}")
                raise RateLimited(f"{self.name} rate limited", retry_after=_float_or_none(retry_after)) from e
            if status_code >= 500:
                logger.warning(f"{self.name} server error ({status_code}) on {path}")
                raise TransientNetworkError(f"{self.name} server error {status_code}") from e
            logger.error(f"{self.name} client error: {status_code} on {path}")
            raise
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"{self.name} network error on {path}: {e}")
            raise TransientNetworkError(f"{self.name} network error: {e}") from e

    def _pair(self, symbol: str, default: str) -> str:
        return self.symbol_map.get(symbol.upper(), default)


def _float_or_none(value: Optional[str]) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class CoinGeckoSource(HttpMarketSource):
    """Spot prices only; CoinGecko's free OHLC endpoint carries no volume."""
    name = "coingecko"
    base_url = "https://api.coingecko.com/api/v3"
    supports_candles = False

    def get_price(self, symbol: str) -> float:
        coin_id = self._pair(symbol, symbol.lower())
        data = self._get("/simple/price", {"ids": coin_id, "vs_currencies": "usd"})
        try:
            return float(data[coin_id]["usd"])
        except (KeyError, TypeError, ValueError) as e:
            raise TransientNetworkError(f"coingecko returned no price for {coin_id}") from e

    def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        raise NotImplementedError("coingecko does not provide volume candles")


class BinanceSource(HttpMarketSource):
    name = "binance"
    base_url = "https://api.binance.com/api/v3"

    def get_price(self, symbol: str) -> float:
        pair = self._pair(symbol, f"{symbol.upper()}USDT")
        data = self._get("/ticker/price", {"symbol": pair})
        return float(data["price"])

    def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        pair = self._pair(symbol, f"{symbol.upper()}USDT")
        rows = self._get("/klines", {"symbol": pair, "interval": interval, "limit": limit})
        # [open_time_ms, open, high, low, close, volume, ...]
        return [
            Candle(
                timestamp=row[0] / 1000.0,
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
            for row in rows
        ]


class CoinbaseSource(HttpMarketSource):
    name = "coinbase"
    base_url = "https://api.exchange.coinbase.com"

    def get_price(self, symbol: str) -> float:
        product = self._pair(symbol, f"{symbol.upper()}-USD")
        data = self._get(f"/products/{product}/ticker")
        return float(data["price"])

    def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        product = self._pair(symbol, f"{symbol.upper()}-USD")
        granularity = INTERVAL_SECONDS.get(interval)
        if granularity is None:
            raise ValueError(f"Unsupported candle interval for coinbase: {interval}")
        rows = self._get(f"/products/{product}/candles", {"granularity": granularity})
        # [time, low, high, open, close, volume], newest first
        candles = [
            Candle(
                timestamp=float(row[0]),
                open=float(row[3]),
                high=float(row[2]),
                low=float(row[1]),
                close=float(row[4]),
                volume=float(row[5]),
            )
            for row in rows
        ]
        candles.sort(key=lambda c: c.timestamp)
        return candles[-limit:]


SOURCE_TYPES = {
    CoinGeckoSource.name: CoinGeckoSource,
    BinanceSource.name: BinanceSource,
    CoinbaseSource.name: CoinbaseSource,
}


def build_sources(order: List[str], timeout: float, symbol_map: Dict[str, Dict[str, str]]) -> List[MarketDataSource]:
    session = requests.Session()
    return [
        SOURCE_TYPES[name](timeout=timeout, symbol_map=symbol_map.get(name), session=session)
        for name in order
    ]
