"""
momentum-trader Infrastructure: Price Cache

Short-TTL cache keyed by asset pair. Fresh hits short-circuit upstream calls;
when every source fails the last value is still available as stale data.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

PairKey = Tuple[str, str]


@dataclass
class CachedPrice:
    price: float
    source: str
    stored_at: float

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)


class PriceCache:
    """Bounded LRU price cache with freshness checks."""

    def __init__(self, ttl_seconds: float = 5.0, max_entries: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[PairKey, CachedPrice]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def put(self, pair: PairKey, price: float, source: str) -> None:
        with self._lock:
            self._entries[pair] = CachedPrice(price=price, source=source, stored_at=self._clock())
            self._entries.move_to_end(pair)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get_fresh(self, pair: PairKey) -> Optional[CachedPrice]:
        with self._lock:
            entry = self._entries.get(pair)
            if entry is not None and entry.age(self._clock()) <= self.ttl_seconds:
                self._entries.move_to_end(pair)
                self.hits += 1
                return entry
            self.misses += 1
            return None

    def get_any(self, pair: PairKey) -> Optional[CachedPrice]:
        """Return the last value regardless of age."""
        with self._lock:
            return self._entries.get(pair)

    def age(self, pair: PairKey) -> Optional[float]:
        with self._lock:
            entry = self._entries.get(pair)
            return entry.age(self._clock()) if entry else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, float]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / total if total else 0.0,
            }
