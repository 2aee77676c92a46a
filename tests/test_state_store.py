"""
Tests for the persistence store

Atomic writes, bounded history, bot status merging and strict loading.
"""
import json

import pytest

from core.exceptions import CriticalDataUnavailable
from core.models import PositionStatus, TradeRecord
from infra.state_store import StateStore
from tests.helpers import make_position
from tests.helpers.fakes import EPOCH


def _record(symbol="SOL", pnl=1.0):
    return TradeRecord(
        symbol=symbol, strategy="momentum", entry_price=100.0, exit_price=110.0, quantity=0.1, pnl=pnl,
        roi_pct=10.0, reason="take_profit", opened_at=EPOCH, closed_at=EPOCH, realized_pnl_total=pnl,
    )


class TestStateStore:
    def test_defaults_without_file(self, state_store):
        state = state_store.load()
        assert state["positions"] == {}
        assert state["bot_status"]["is_running"] is False

    def test_position_round_trip(self, state_store):
        """Open positions survive a save/load cycle intact"""
        position = make_position("SOL")
        position.take_profit_levels[0].hit = True
        position.remaining_quantity = 6.0
        state_store.upsert_position(position)

        loaded = state_store.load_open_positions()
        assert loaded == [position]

    def test_closed_position_moves_to_archive(self, state_store):
        position = make_position("SOL")
        state_store.upsert_position(position)
        position.status = PositionStatus.CLOSED
        position.closed_at = EPOCH
        state_store.upsert_position(position)

        state = state_store.load()
        assert state["positions"] == {}
        assert state["closed_positions"][0]["status"] == "closed"
        assert state_store.load_open_positions() == []

    def test_trade_history_bounded(self, state_store):
        state_store.MAX_TRADE_HISTORY = 3
        for i in range(5):
            state_store.append_trade_record(_record(f"T{i}"))
        assert [t["symbol"] for t in state_store.trade_history()] == ["T2", "T3", "T4"]

    def test_bot_status_merges_fields(self, state_store):
        state_store.write_bot_status(is_running=True, active_positions=2)
        state_store.write_bot_status(error="binance: timeout")
        status = state_store.read_bot_status()
        assert status["is_running"] is True
        assert status["active_positions"] == 2
        assert status["error"] == "binance: timeout"
        assert status["updated_at"] is not None

    def test_performance_snapshot(self, state_store):
        state_store.write_performance({"total_trades": 4})
        assert state_store.read_performance() == {"total_trades": 4}

    def test_atomic_write_leaves_no_temp_files(self, state_store):
        state_store.write_bot_status(is_running=True)
        leftovers = [p.name for p in state_store.state_file.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_corrupt_file_lenient_load(self, state_store):
        """Non-strict load falls back to defaults"""
        state_store.state_file.write_text("[1, 2")
        assert state_store.load()["positions"] == {}

    def test_corrupt_file_strict_load(self, state_store):
        state_store.state_file.write_text("[1, 2")
        with pytest.raises(CriticalDataUnavailable):
            state_store.load(strict=True)

    def test_non_mapping_strict_load(self, state_store):
        state_store.state_file.write_text(json.dumps([1, 2]))
        with pytest.raises(CriticalDataUnavailable):
            state_store.load_open_positions()

    def test_env_default_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STATE_FILE", str(tmp_path / "env_state.json"))
        assert StateStore().state_file == tmp_path / "env_state.json"
