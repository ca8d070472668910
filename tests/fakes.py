"""In-memory stand-ins shared by the test suites.

Importable as ``fakes`` because pytest puts ``tests/`` on sys.path when it
loads the top-level conftest.
"""

from __future__ import annotations

import time
from datetime import UTC, date, datetime, timedelta

from swarna_prices.core.exceptions import ProviderError
from swarna_prices.core.models import TROY_OUNCE_GRAMS, Instrument, Quote, per_gram_prices
from swarna_prices.providers.base import start_of_day

# 2025-07-17 06:45:00 UTC
NOW = datetime(2025, 7, 17, 6, 45, tzinfo=UTC)
NOW_TS = int(NOW.timestamp())

DEFAULT_PRICES: dict[Instrument, float] = {
    Instrument.GOLD: 287703.55,
    Instrument.SILVER: 3301.25,
    Instrument.PLATINUM: 115420.10,
    Instrument.PALLADIUM: 104980.75,
}

# same prices keyed by upstream symbol
UPSTREAM_PRICES: dict[str, float] = {i.symbol: p for i, p in DEFAULT_PRICES.items()}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class SleepRecorder:
    """Async sleep replacement that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []
        self.on_sleep = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(delay)


class FakeProvider:
    """In-memory ProviderClient with scriptable failures."""

    def __init__(
        self,
        name: str,
        prices: dict[Instrument, float] | None = None,
        *,
        observed_at: int = NOW_TS,
        supports_batch: bool = False,
        supports_timeframe: bool = False,
    ):
        self.name = name
        self.supports_batch = supports_batch
        self.supports_timeframe = supports_timeframe
        self.prices = dict(DEFAULT_PRICES if prices is None else prices)
        self.observed_at = observed_at
        self.calls: list[tuple[str, ...]] = []
        self.closed = False
        self._failing = False
        self._fail_remaining: int | None = None
        self._error_cls: type[ProviderError] = ProviderError

    def fail(self, times: int | None = None, error_cls: type[ProviderError] = ProviderError) -> None:
        """Fail the next ``times`` calls, or every call when ``times`` is None."""
        self._failing = True
        self._fail_remaining = times
        self._error_cls = error_cls

    def recover(self) -> None:
        self._failing = False

    def _maybe_fail(self) -> None:
        if not self._failing:
            return
        if self._fail_remaining is not None:
            if self._fail_remaining <= 0:
                self._failing = False
                return
            self._fail_remaining -= 1
        raise self._error_cls(f"{self.name} unavailable", provider=self.name)

    def _quote(self, instrument: Instrument, currency: str, day: date | None = None) -> Quote:
        if instrument not in self.prices:
            raise ProviderError(
                f"{self.name} has no price for {instrument}", provider=self.name
            )
        price = self.prices[instrument]
        return Quote(
            instrument=instrument,
            currency=currency,
            price=price,
            change_pct=0.25,
            per_gram_by_purity=(
                per_gram_prices(price) if instrument == Instrument.GOLD else {}
            ),
            observed_at=start_of_day(day) if day is not None else self.observed_at,
            provider=self.name,
            is_historical=day is not None,
        )

    async def fetch_live(self, instrument: Instrument, currency: str) -> Quote:
        self.calls.append(("live", str(instrument), currency))
        self._maybe_fail()
        return self._quote(instrument, currency)

    async def fetch_historical(self, instrument: Instrument, currency: str, day: date) -> Quote:
        self.calls.append(("historical", str(instrument), currency, day.isoformat()))
        self._maybe_fail()
        return self._quote(instrument, currency, day)

    async def fetch_all_live(self, currency: str) -> dict[Instrument, Quote]:
        self.calls.append(("live_all", currency))
        if not self.supports_batch:
            raise ProviderError(f"{self.name} does not support batch quotes", provider=self.name)
        self._maybe_fail()
        return {i: self._quote(i, currency) for i in Instrument if i in self.prices}

    async def fetch_timeframe(self, currency: str, start: date, end: date) -> list[Quote]:
        self.calls.append(("timeframe", currency, start.isoformat(), end.isoformat()))
        if not self.supports_timeframe:
            raise ProviderError(f"{self.name} does not support timeframe queries", provider=self.name)
        self._maybe_fail()
        days = [start + timedelta(days=n) for n in range((end - start).days + 1)]
        return [self._quote(i, currency, day) for day in days for i in Instrument if i in self.prices]

    async def close(self) -> None:
        self.closed = True


# --- Upstream payloads ---


def metalprice_payload(base: str = "INR", timestamp: int | None = None, **extra) -> dict:
    """metalpriceapi.com body quoting every metal in ``base``."""
    return {
        "success": True,
        "base": base,
        "timestamp": timestamp if timestamp is not None else int(time.time()),
        "rates": {symbol: 1 / price for symbol, price in UPSTREAM_PRICES.items()},
        **extra,
    }


def goldapi_payload(symbol: str = "XAU", currency: str = "INR") -> dict:
    """goldapi.io body for one metal, stamped now."""
    price = UPSTREAM_PRICES[symbol]
    return {
        "timestamp": int(time.time()),
        "metal": symbol,
        "currency": currency,
        "price": price,
        "prev_close_price": round(price * 0.99, 2),
        "ch": round(price * 0.01, 2),
        "chp": 1.0,
        "price_gram_24k": round(price / TROY_OUNCE_GRAMS, 4),
    }


def metalprice_timeframe_payload(start: str, end: str, base: str = "INR") -> dict:
    """metalpriceapi.com ``/timeframe`` body with the same rates on every day."""
    first, last = date.fromisoformat(start), date.fromisoformat(end)
    days = [first + timedelta(days=n) for n in range((last - first).days + 1)]
    return {
        "success": True,
        "base": base,
        "start_date": start,
        "end_date": end,
        "rates": {
            day.isoformat(): {symbol: 1 / price for symbol, price in UPSTREAM_PRICES.items()}
            for day in days
        },
    }
