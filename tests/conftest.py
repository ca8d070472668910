"""Shared pytest fixtures for swarna-prices."""

from __future__ import annotations

import pytest

from swarna_prices.core.config import AggregatorConfig, StorageConfig
from swarna_prices.core.models import Instrument, Quote
from swarna_prices.storage.store import SqliteQuoteStore

from fakes import DEFAULT_PRICES, NOW_TS, FakeProvider, FrozenClock, SleepRecorder


# --- Fixtures ---


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def storage_config(tmp_path) -> StorageConfig:
    return StorageConfig(sqlite_path=str(tmp_path / "prices.db"))


@pytest.fixture
async def store(storage_config, clock):
    """An initialized SqliteQuoteStore on a temp file, frozen clock."""
    s = SqliteQuoteStore(storage_config, clock=clock)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def make_provider():
    """Factory for FakeProvider."""

    def _make(name: str, prices=None, **kwargs) -> FakeProvider:
        return FakeProvider(name, prices, **kwargs)

    return _make


@pytest.fixture
def make_quote():
    """Factory for Quote with overridable defaults."""

    def _make(**overrides) -> Quote:
        defaults = dict(
            instrument=Instrument.GOLD,
            currency="INR",
            price=DEFAULT_PRICES[Instrument.GOLD],
            observed_at=NOW_TS,
            provider="metalpriceapi",
        )
        defaults.update(overrides)
        return Quote(**defaults)

    return _make


@pytest.fixture
def aggregator_config() -> AggregatorConfig:
    return AggregatorConfig(primary="metalpriceapi", fallback="goldapi")
