"""
momentum-trader Runner: Interval Loops

Each loop is a daemon thread that owns its timer, checks one shared stop
event at the top of every iteration, and catches its own errors so a failing
iteration never takes down the process or another loop.
"""

import logging
import random
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class IntervalLoop(threading.Thread):
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        fn: Callable[[], object],
        stop_event: threading.Event,
        jitter_pct: float = 0.0,
        metrics=None,
        on_error: Optional[Callable[[str, Exception], None]] = None,
    ):
        super().__init__(name=f"loop-{name}", daemon=True)
        self.loop_name = name
        self.interval_seconds = interval_seconds
        self._fn = fn
        self._stop_event = stop_event
        self._jitter_pct = max(0.0, min(float(jitter_pct), 20.0))
        self._metrics = metrics
        self._on_error = on_error
        self.iterations = 0
        self.errors = 0

    def run(self) -> None:
        logger.info(f"Loop {self.loop_name} started (interval={self.interval_seconds}s, jitter={self._jitter_pct:.1f}%)")
        while not self._stop_event.is_set():
            start = time.monotonic()
            try:
                self._fn()
            except Exception as e:
                self.errors += 1
                logger.error(f"Loop {self.loop_name} iteration failed: {e}", exc_info=True)
                if self._metrics:
                    self._metrics.record_loop_error(self.loop_name)
                if self._on_error:
                    self._on_error(self.loop_name, e)
            self.iterations += 1

            elapsed = time.monotonic() - start
            if self._metrics:
                self._metrics.observe_loop(self.loop_name, elapsed)
            jitter = random.uniform(0, self._jitter_pct / 100.0) * self.interval_seconds
            sleep_for = max(0.0, self.interval_seconds - elapsed) + jitter
            if elapsed > self.interval_seconds:
                logger.warning(f"Loop {self.loop_name} overran its interval ({elapsed:.2f}s > {self.interval_seconds}s)")
            self._stop_event.wait(sleep_for)
        logger.info(f"Loop {self.loop_name} stopped")
