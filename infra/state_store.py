"""
momentum-trader Infrastructure: State Store

Persistent state with atomic writes (temp file + rename). Implements the
persistence contract used by the lifecycle engine and the runner:

- load_open_positions()   startup recovery
- upsert_position()       every entry, partial exit and close
- append_trade_record()   every full exit
- read_bot_status() / write_bot_status()
- read_performance() / write_performance()
"""

import json
import logging
import os
import tempfile
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.exceptions import CriticalDataUnavailable
from core.models import Position, PositionStatus, TradeRecord, utc_now

logger = logging.getLogger(__name__)


DEFAULT_BOT_STATUS = {
    "is_running": False,
    "last_started": None,
    "last_stopped": None,
    "active_positions": 0,
    "pending_orders": 0,
    "total_pnl": 0.0,
    "win_rate": 0.0,
    "total_trades": 0,
    "error": None,
    "service_status": {},
    "updated_at": None,
}

DEFAULT_STATE = {
    "positions": {},  # symbol -> open position dict
    "closed_positions": [],  # bounded archive of closed positions
    "trade_history": [],  # bounded list of trade records
    "bot_status": DEFAULT_BOT_STATUS,
    "performance": {},  # PerformanceTracker snapshot
}


class StateStore:
    """
    Persistent state storage using a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Bounded trade history and closed-position archive
    - Thread-safe operations
    """

    MAX_TRADE_HISTORY = 500
    MAX_CLOSED_POSITIONS = 200

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/.state.json)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("STATE_FILE", "data/.state.json"))

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        logger.info(f"Initialized StateStore at {self.state_file}")

    def load(self, strict: bool = False) -> Dict[str, Any]:
        """
        Load state from file.

        Args:
            strict: raise instead of falling back to defaults on a corrupt file

        Returns:
            State dict with defaults merged
        """
        with self._lock:
            if not self.state_file.exists():
                logger.debug("No state file found, using defaults")
                return deepcopy(DEFAULT_STATE)

            try:
                with open(self.state_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                if strict:
                    raise CriticalDataUnavailable(f"state file {self.state_file}", e) from e
                logger.warning(f"Unreadable state file {self.state_file} ({e}), using defaults")
                return deepcopy(DEFAULT_STATE)

            if not isinstance(data, dict):
                if strict:
                    raise CriticalDataUnavailable(f"state file {self.state_file} is not a mapping")
                logger.warning("Invalid state file format, using defaults")
                return deepcopy(DEFAULT_STATE)

            state = {**deepcopy(DEFAULT_STATE), **data}
            state["bot_status"] = {**DEFAULT_BOT_STATUS, **(data.get("bot_status") or {})}
            return state

    def save(self, state: Dict[str, Any]) -> None:
        """Save state to file atomically."""
        with self._lock:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".state_",
                suffix=".json.tmp",
            )
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2)
                os.replace(temp_path, self.state_file)
            except OSError as e:
                logger.error(f"Failed to save state: {e}")
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
            logger.debug("Saved state to file")

    def load_open_positions(self) -> List[Position]:
        """
        Positions still open at last shutdown.

        Raises:
            CriticalDataUnavailable: state file unreadable or a position record is corrupt
        """
        state = self.load(strict=True)
        positions = []
        for symbol, data in (state.get("positions") or {}).items():
            try:
                position = Position.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                raise CriticalDataUnavailable(f"position record {symbol}", e) from e
            if position.is_open:
                positions.append(position)
        return positions

    def upsert_position(self, position: Position) -> None:
        with self._lock:
            state = self.load()
            if position.status == PositionStatus.OPEN:
                state["positions"][position.symbol] = position.to_dict()
            else:
                state["positions"].pop(position.symbol, None)
                closed = state.setdefault("closed_positions", [])
                closed.append(position.to_dict())
                state["closed_positions"] = closed[-self.MAX_CLOSED_POSITIONS:]
            self.save(state)

    def append_trade_record(self, record: TradeRecord) -> None:
        with self._lock:
            state = self.load()
            history = state.setdefault("trade_history", [])
            history.append(record.to_dict())
            state["trade_history"] = history[-self.MAX_TRADE_HISTORY:]
            self.save(state)

    def trade_history(self) -> List[Dict[str, Any]]:
        return list(self.load().get("trade_history", []))

    def read_bot_status(self) -> Dict[str, Any]:
        return dict(self.load()["bot_status"])

    def write_bot_status(self, **fields) -> Dict[str, Any]:
        """Merge `fields` into the stored bot status and stamp updated_at."""
        with self._lock:
            state = self.load()
            status = {**state["bot_status"], **fields, "updated_at": utc_now().isoformat()}
            state["bot_status"] = status
            self.save(state)
            return status

    def read_performance(self) -> Dict[str, Any]:
        return dict(self.load().get("performance") or {})

    def write_performance(self, snapshot: Dict[str, Any]) -> None:
        with self._lock:
            state = self.load()
            state["performance"] = snapshot
            self.save(state)
