"""API-specific request/response schemas (Pydantic v2).

Every response is wrapped in a ``{success, timestamp, ...}`` envelope and
serialized with camelCase keys.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from swarna_prices.core.models import Instrument, Quote


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- Envelopes --


class Envelope(_CamelModel):
    success: bool = True
    timestamp: str


class ErrorDetail(_CamelModel):
    type: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(Envelope):
    """Standard error envelope."""

    success: bool = False
    error: ErrorDetail


def error_body(exc_type: str, message: str, details: dict[str, Any] | None = None) -> dict:
    """JSON-ready error envelope stamped with the current time."""
    return ErrorResponse(
        timestamp=datetime.now(UTC).isoformat(),
        error=ErrorDetail(type=exc_type, message=message, details=details),
    ).model_dump(by_alias=True, exclude_none=True)


# -- Quotes --


class QuoteResponse(Envelope):
    """Response for GET /metals/live and /metals/historical."""

    data: Quote


class QuoteMapResponse(Envelope):
    """Response for GET /metals/live-all."""

    currency: str
    data: dict[Instrument, Quote]


# -- Provider Admin --


class ProviderSwitchRequest(BaseModel):
    """Request body for POST /admin/provider/switch."""

    provider: str = Field(..., min_length=1, description="Provider name or 'store-only'")
    fallback: str | None = None


class ProviderSwitchResponse(Envelope):
    previous_provider: str
    new_provider: str
    fallback_provider: str | None
    mode: str


class ProviderStateResponse(Envelope):
    """Response for GET /admin/provider."""

    mode: str
    provider: str
    primary: str | None
    fallback: str | None
    generation: int
    available: list[str]


class ProviderHealthResponse(Envelope):
    data: dict[str, Any]


# -- Sync Admin --


class SyncTriggerResponse(Envelope):
    """Response for POST /admin/sync/trigger."""

    run_id: str
    message: str


class SyncStatusResponse(Envelope):
    data: dict[str, Any]
    health: dict[str, Any]


class BackfillRequest(_CamelModel):
    """Request body for POST /admin/backfill. Dates are YYYY-MM-DD (UTC)."""

    start_date: str = Field(..., min_length=1)
    end_date: str | None = Field(None, description="Defaults to today")
    currency: str | None = None
    provider: str | None = Field(None, description="Defaults to a timeframe-capable provider")


class BackfillResponse(Envelope):
    data: dict[str, Any]


# -- Maintenance --


class ApiStatsResponse(Envelope):
    hours: int
    data: list[dict[str, Any]]


class CleanupResponse(Envelope):
    retention_days: int
    deleted_quotes: int


# -- Health --


class HealthResponse(Envelope):
    """Response for GET /health."""

    status: str = "ok"
    version: str
    storage_backend: str
    storage_ok: bool
    provider: dict[str, Any]
    sync: dict[str, Any]
    broadcast: dict[str, Any]
    statistics: dict[str, Any]
