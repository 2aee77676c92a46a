"""Test helpers for the momentum-trader test suite"""

from tests.helpers.fakes import (
    FakeClock,
    FakeMarketData,
    FakeSource,
    InlineCaller,
    ScriptedVenue,
    make_candles,
    make_position,
    make_signal,
)

__all__ = [
    "FakeClock",
    "FakeMarketData",
    "FakeSource",
    "InlineCaller",
    "ScriptedVenue",
    "make_candles",
    "make_position",
    "make_signal",
]
