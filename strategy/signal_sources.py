"""
momentum-trader Strategy: Signal Sources

Producers of raw TradeSignals consumed by the signal-scan loop:

- StaticSignalSource: in-process queue (evaluate_signal callers, tests)
- JsonFileSignalSource: drop file written by external producers
- MomentumScanner: volume-spike + momentum scan over a watchlist
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List

from core.exceptions import CriticalDataUnavailable
from core.models import TradeSignal

logger = logging.getLogger(__name__)


class SignalSource(ABC):
    name: str = "source"

    @abstractmethod
    def fetch(self) -> List[TradeSignal]:
        """Return signals produced since the last fetch."""


class StaticSignalSource(SignalSource):
    name = "static"

    def __init__(self, signals: Iterable[TradeSignal] = ()):
        self._pending: List[TradeSignal] = list(signals)
        self._lock = threading.Lock()

    def push(self, signal: TradeSignal) -> None:
        with self._lock:
            self._pending.append(signal)

    def fetch(self) -> List[TradeSignal]:
        with self._lock:
            signals, self._pending = self._pending, []
        return signals


class JsonFileSignalSource(SignalSource):
    """
    Reads a JSON list of signal dicts and empties the file after consumption.

    Example entry:
        {"symbol": "SOL", "confidence": 0.8, "strategy": "whale",
         "reason": "accumulation", "timestamp": "2024-05-01T12:00:00+00:00"}
    """
    name = "drop_file"

    def __init__(self, path: str):
        self.path = Path(path)

    def fetch(self) -> List[TradeSignal]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read signal drop file {self.path}: {e}")
            return []

        if not isinstance(payload, list):
            logger.warning(f"Signal drop file {self.path} must hold a list, got {type(payload).__name__}")
            payload = []

        signals = []
        for entry in payload:
            try:
                signals.append(TradeSignal.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed signal {entry!r}: {e}")

        self._clear()
        if signals:
            logger.info(f"Loaded {len(signals)} signal(s) from {self.path}")
        return signals

    def _clear(self) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".signals_", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump([], f)
        os.replace(tmp_path, self.path)


class MomentumScanner(SignalSource):
    """Emit a signal when last-hour volume spikes and price moves up together."""
    name = "momentum_scanner"

    def __init__(self, analyzer, watchlist: Iterable[str], volume_spike_threshold: float = 2.0,
                 momentum_threshold_pct: float = 3.0, strategy: str = "momentum"):
        self.analyzer = analyzer
        self.watchlist = list(watchlist)
        self.volume_spike_threshold = volume_spike_threshold
        self.momentum_threshold_pct = momentum_threshold_pct
        self.strategy = strategy

    def fetch(self) -> List[TradeSignal]:
        signals = []
        for symbol in self.watchlist:
            try:
                profile = self.analyzer.profile(symbol)
            except CriticalDataUnavailable as e:
                logger.warning(f"Scanner skipping {symbol}: {e}")
                continue

            spike, momentum = profile.spike_ratio, profile.momentum_pct
            if spike is None or momentum is None:
                continue
            if spike < self.volume_spike_threshold or momentum < self.momentum_threshold_pct:
                continue

            volume_score = min(spike / (2 * self.volume_spike_threshold), 1.0)
            momentum_score = min(momentum / (2 * self.momentum_threshold_pct), 1.0)
            signals.append(
                TradeSignal(
                    symbol=symbol,
                    confidence=0.5 * volume_score + 0.5 * momentum_score,
                    strategy=self.strategy,
                    reason=f"volume {spike:.1f}x, momentum {momentum:+.1f}%",
                    momentum=momentum_score,
                )
            )
        return signals
