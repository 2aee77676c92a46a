"""
momentum-trader Strategy: Signal Aggregator

Turns raw per-strategy signals into one globally ranked queue.

Pipeline:
1. Group by strategy
2. Per group: clamp confidence to the floor, drop symbols already held,
   apply per-strategy minimum confidence, rank by 0.5*confidence + 0.5*momentum
3. Keep the top K (2K for high-frequency strategies)
4. Weight by strategy, merge, sort by weighted score
"""

import logging
from collections import defaultdict
from dataclasses import replace
from typing import Dict, Iterable, List

from core.models import TradeSignal
from infra.config import AggregatorConfig

logger = logging.getLogger(__name__)


def rank_score(signal: TradeSignal) -> float:
    return 0.5 * signal.confidence + 0.5 * (signal.momentum or 0.0)


class SignalAggregator:
    def __init__(self, config: AggregatorConfig):
        self.config = config
        self._high_frequency = {name.lower() for name in config.high_frequency_strategies}
        self._weights = {name.lower(): weight for name, weight in config.weights.items()}
        self._min_confidence = {name.lower(): value for name, value in config.min_confidence_by_strategy.items()}

    def cap_for(self, strategy: str) -> int:
        cap = self.config.max_signals_per_strategy
        if strategy in self._high_frequency:
            cap *= self.config.high_frequency_multiplier
        return cap

    def weight_for(self, strategy: str) -> float:
        return self._weights.get(strategy, self.config.default_weight)

    def aggregate(self, raw_signals: Iterable[TradeSignal], open_symbols: Iterable[str] = ()) -> List[TradeSignal]:
        """
        Rank raw signals into a single queue.

        Args:
            raw_signals: Signals from every source, any order
            open_symbols: Symbols that already have an open position

        Returns:
            New TradeSignal objects ordered by descending weighted score
        """
        held = {symbol.upper() for symbol in open_symbols}
        groups: Dict[str, List[TradeSignal]] = defaultdict(list)
        for signal in raw_signals:
            groups[signal.strategy.lower()].append(signal)

        if not groups:
            return []

        floor = self.config.confidence_floor
        merged: List[TradeSignal] = []

        for strategy, signals in groups.items():
            min_confidence = self._min_confidence.get(strategy)
            candidates = []
            for signal in signals:
                if signal.symbol.upper() in held:
                    logger.debug(f"Dropping {strategy} signal for {signal.symbol}: position already open")
                    continue
                if min_confidence is not None and signal.confidence <= min_confidence:
                    logger.debug(
                        f"Dropping {strategy} signal for {signal.symbol}: "
                        f"confidence {signal.confidence:.2f} <= {min_confidence:.2f}"
                    )
                    continue
                candidates.append(replace(signal, confidence=min(max(signal.confidence, floor), 1.0)))

            candidates.sort(key=rank_score, reverse=True)
            kept = candidates[: self.cap_for(strategy)]

            weight = self.weight_for(strategy)
            for signal in kept:
                weighted = signal.confidence * weight
                merged.append(replace(signal, confidence=min(weighted, 1.0), score=weighted))

            if len(candidates) > len(kept):
                logger.debug(f"Capped {strategy} signals {len(candidates)} -> {len(kept)}")

        merged.sort(key=lambda s: s.score, reverse=True)
        logger.info(f"Aggregated {sum(len(g) for g in groups.values())} raw signal(s) into {len(merged)} ranked")
        return merged
