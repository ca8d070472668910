"""Pydantic data models: the type contracts shared by every component."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

# --- Type Aliases ---

CurrencyCode = str
ProviderName = str

STORE_ONLY = "store-only"
TROY_OUNCE_GRAMS = 31.1035

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

# --- Enumerations ---


class Instrument(StrEnum):
    """Tracked precious metals."""

    GOLD = "gold"
    SILVER = "silver"
    PLATINUM = "platinum"
    PALLADIUM = "palladium"

    @property
    def symbol(self) -> str:
        """ISO-4217 style metal code (XAU, XAG, XPT, XPD)."""
        return _INSTRUMENT_SYMBOLS[self]

    @classmethod
    def from_symbol(cls, symbol: str) -> Instrument:
        for instrument, sym in _INSTRUMENT_SYMBOLS.items():
            if sym == symbol.upper():
                return instrument
        raise ValueError(f"Unknown metal symbol: {symbol!r}")

    @classmethod
    def parse(cls, value: str | Instrument) -> Instrument:
        """Accept a canonical name ("gold") or a metal symbol ("XAU")."""
        if isinstance(value, Instrument):
            return value
        raw = str(value).strip()
        try:
            return cls(raw.lower())
        except ValueError:
            return cls.from_symbol(raw)


_INSTRUMENT_SYMBOLS: dict[Instrument, str] = {
    Instrument.GOLD: "XAU",
    Instrument.SILVER: "XAG",
    Instrument.PLATINUM: "XPT",
    Instrument.PALLADIUM: "XPD",
}


class Purity(StrEnum):
    """Gold purity grades quoted per gram."""

    K24 = "24k"
    K22 = "22k"
    K18 = "18k"

    @property
    def fineness(self) -> float:
        return _PURITY_FINENESS[self]


_PURITY_FINENESS: dict[Purity, float] = {
    Purity.K24: 1.0,
    Purity.K22: 0.917,
    Purity.K18: 0.750,
}


class OperatingMode(StrEnum):
    """How the aggregator is allowed to serve quotes."""

    LIVE = "live"
    STORE_ONLY = STORE_ONLY


class StorageBackend(StrEnum):
    """Supported storage backends."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class SyncTrigger(StrEnum):
    """What started a sync run."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    STARTUP = "startup"


def normalize_currency(value: str) -> CurrencyCode:
    """Upper-case and validate an ISO currency code. Raises ValueError."""
    code = str(value).strip().upper()
    if not _CURRENCY_RE.match(code):
        raise ValueError(f"currency must be a 3-letter ISO code, got: {value!r}")
    return code


def per_gram_prices(price_per_ounce: float) -> dict[Purity, float]:
    """Derive per-gram prices for each purity grade from an ounce price."""
    per_gram = price_per_ounce / TROY_OUNCE_GRAMS
    return {purity: per_gram * purity.fineness for purity in Purity}


# --- Quote ---


class Quote(BaseModel):
    """A normalized price observation for one instrument/currency pair.

    Every provider adapter produces this; nothing downstream of the adapters
    sees provider-specific field names. JSON uses camelCase keys.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    instrument: Instrument
    currency: CurrencyCode
    price: float
    open: float | None = None
    high: float | None = None
    low: float | None = None
    close: float | None = None
    change_abs: float | None = None
    change_pct: float | None = None
    ask: float | None = None
    bid: float | None = None
    per_gram_by_purity: dict[Purity, float] = {}
    observed_at: int
    provider: ProviderName
    is_historical: bool = False

    @field_validator("instrument", mode="before")
    @classmethod
    def instrument_name_or_symbol(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Instrument.parse(v)
        return v

    @field_validator("currency")
    @classmethod
    def currency_is_iso(cls, v: str) -> str:
        return normalize_currency(v)

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"price must be > 0, got {v}")
        return v

    @field_validator("observed_at")
    @classmethod
    def observed_at_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"observed_at must be >= 0, got {v}")
        return v

    @model_validator(mode="after")
    def purity_only_for_gold(self) -> Quote:
        if self.per_gram_by_purity and self.instrument != Instrument.GOLD:
            raise ValueError(
                f"per_gram_by_purity is only populated for gold, not {self.instrument}"
            )
        return self

    @property
    def symbol(self) -> str:
        """Pair symbol, e.g. XAUINR."""
        return f"{self.instrument.symbol}{self.currency}"

    @property
    def observed_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.observed_at, tz=UTC)

    @property
    def observed_date(self) -> date:
        """UTC calendar date of the observation."""
        return self.observed_datetime.date()

    def to_wire(self) -> dict[str, Any]:
        """JSON-safe dict with camelCase keys, as sent over HTTP and WebSocket."""
        return self.model_dump(mode="json", by_alias=True)


# --- Retry Policy ---


class RetryPolicy(BaseModel):
    """Bounded exponential backoff: `attempts` total tries, capped delay."""

    model_config = ConfigDict(frozen=True)

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    @field_validator("attempts")
    @classmethod
    def attempts_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("attempts must be >= 1")
        return v

    @field_validator("base_delay", "max_delay")
    @classmethod
    def delay_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays must be >= 0")
        return v

    def delay_for(self, retry_number: int) -> float:
        """Sleep before retry `retry_number` (0-based)."""
        return min(self.base_delay * self.multiplier**retry_number, self.max_delay)


# --- Sync Run Models ---


class InstrumentSyncResult(BaseModel):
    """Outcome of refreshing one instrument/currency pair during a sync run."""

    model_config = ConfigDict(frozen=True)

    instrument: Instrument
    currency: CurrencyCode
    success: bool
    attempts: int
    price: float | None = None
    error: str | None = None


class SyncRun(BaseModel):
    """Immutable record of one scheduled or manual refresh attempt."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    trigger: SyncTrigger
    provider: ProviderName
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    results: list[InstrumentSyncResult]

    @field_validator("duration_seconds")
    @classmethod
    def duration_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"duration_seconds must be >= 0, got {v}")
        return round(v, 6)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def summary(self) -> dict[str, Any]:
        """Compact JSON-safe summary used by the status endpoint and CLI."""
        return {
            "runId": self.run_id,
            "trigger": str(self.trigger),
            "provider": self.provider,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "durationSeconds": self.duration_seconds,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "failures": [
                {"instrument": str(r.instrument), "currency": r.currency, "error": r.error}
                for r in self.results
                if not r.success
            ],
        }


# --- API Call Log ---


class ApiCallRecord(BaseModel):
    """One provider call (including its retries) as written to the call log."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderName
    operation: str
    params: dict[str, Any] = {}
    success: bool
    duration_ms: int
    attempts: int = 1
    error: str | None = None
    called_at: datetime

    @field_validator("duration_ms")
    @classmethod
    def duration_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"duration_ms must be >= 0, got {v}")
        return v


# --- Backfill Models ---


class BackfillWindow(BaseModel):
    """One timeframe request within a backfill."""

    model_config = ConfigDict(frozen=True)

    start_date: date
    end_date: date
    success: bool
    attempts: int
    quotes_stored: int = 0
    error: str | None = None


class BackfillResult(BaseModel):
    """Outcome of loading a date range of historical quotes into the store."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderName
    currency: CurrencyCode
    start_date: date
    end_date: date
    duration_seconds: float
    windows: list[BackfillWindow]

    @property
    def quotes_stored(self) -> int:
        return sum(w.quotes_stored for w in self.windows)

    @property
    def failure_count(self) -> int:
        return sum(1 for w in self.windows if not w.success)

    def summary(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "currency": self.currency,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "durationSeconds": round(self.duration_seconds, 6),
            "quotesStored": self.quotes_stored,
            "windows": [
                {
                    "startDate": w.start_date.isoformat(),
                    "endDate": w.end_date.isoformat(),
                    "success": w.success,
                    "attempts": w.attempts,
                    "quotesStored": w.quotes_stored,
                    "error": w.error,
                }
                for w in self.windows
            ],
        }
