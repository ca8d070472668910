"""FastAPI route definitions for the swarna-prices API."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, Query

import swarna_prices
from swarna_prices.aggregator.service import PriceAggregator
from swarna_prices.api.deps import (
    AppState,
    get_aggregator,
    get_app_state,
    get_scheduler,
    get_store,
)
from swarna_prices.api.schemas import (
    ApiStatsResponse,
    BackfillRequest,
    BackfillResponse,
    CleanupResponse,
    HealthResponse,
    ProviderHealthResponse,
    ProviderStateResponse,
    ProviderSwitchRequest,
    ProviderSwitchResponse,
    QuoteMapResponse,
    QuoteResponse,
    SyncStatusResponse,
    SyncTriggerResponse,
)
from swarna_prices.storage.store import SqliteQuoteStore
from swarna_prices.sync.scheduler import SyncScheduler

router = APIRouter()


def _now() -> str:
    return datetime.now(UTC).isoformat()


# -- Health --


@router.get("/health", response_model=HealthResponse)
async def health_check(state: AppState = Depends(get_app_state)):
    """System health and basic statistics."""
    storage_ok = await state.store.health_check()
    stats = await state.store.get_statistics() if storage_ok else {}
    return HealthResponse(
        timestamp=_now(),
        status="ok" if storage_ok else "degraded",
        version=swarna_prices.__version__,
        storage_backend=str(state.config.storage.backend),
        storage_ok=storage_ok,
        provider=state.aggregator.state.summary(),
        sync=await state.scheduler.health(),
        broadcast=state.broadcaster.stats(),
        statistics=stats,
    )


# -- Prices --


@router.get("/metals/live", response_model=QuoteResponse)
async def live_quote(
    instrument: str = Query(..., description="gold, silver, platinum, palladium or XAU/XAG/XPT/XPD"),
    currency: str | None = Query(None, description="ISO currency code"),
    aggregator: PriceAggregator = Depends(get_aggregator),
):
    """Latest quote for one instrument."""
    quote = await aggregator.get_quote(instrument, currency)
    return QuoteResponse(timestamp=_now(), data=quote)


@router.get("/metals/live-all", response_model=QuoteMapResponse)
async def live_all_quotes(
    currency: str | None = Query(None),
    aggregator: PriceAggregator = Depends(get_aggregator),
):
    """Latest quotes for every instrument with data."""
    quotes = await aggregator.get_all_quotes(currency)
    resolved = next(iter(quotes.values())).currency
    return QuoteMapResponse(timestamp=_now(), currency=resolved, data=quotes)


@router.get("/metals/historical", response_model=QuoteResponse)
async def historical_quote(
    instrument: str = Query(...),
    day: str = Query(..., alias="date", description="YYYY-MM-DD"),
    currency: str | None = Query(None),
    aggregator: PriceAggregator = Depends(get_aggregator),
):
    """Quote for a past calendar date (UTC)."""
    quote = await aggregator.get_historical(instrument, currency, day)
    return QuoteResponse(timestamp=_now(), data=quote)


# -- Provider Admin --


@router.get("/admin/provider", response_model=ProviderStateResponse)
async def current_provider(aggregator: PriceAggregator = Depends(get_aggregator)):
    state = aggregator.state
    return ProviderStateResponse(
        timestamp=_now(),
        mode=str(state.mode),
        provider=state.active_provider,
        primary=state.primary,
        fallback=state.fallback,
        generation=state.generation,
        available=aggregator.provider_names,
    )


@router.post("/admin/provider/switch", response_model=ProviderSwitchResponse)
async def switch_provider(
    request: ProviderSwitchRequest,
    aggregator: PriceAggregator = Depends(get_aggregator),
):
    """Change the serving provider, or 'store-only' to stop network calls."""
    previous, current = aggregator.switch_provider(request.provider, request.fallback)
    return ProviderSwitchResponse(
        timestamp=_now(),
        previous_provider=previous.active_provider,
        new_provider=current.active_provider,
        fallback_provider=current.fallback if current.network_enabled else None,
        mode=str(current.mode),
    )


@router.get("/admin/provider/health", response_model=ProviderHealthResponse)
async def provider_health(
    provider: str | None = Query(None, description="Defaults to the current primary"),
    aggregator: PriceAggregator = Depends(get_aggregator),
):
    result = await aggregator.check_provider(provider)
    return ProviderHealthResponse(timestamp=_now(), data=result)


# -- Sync Admin --


@router.get("/admin/sync/status", response_model=SyncStatusResponse)
async def sync_status(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Last run summary, next scheduled time and cumulative stats."""
    return SyncStatusResponse(
        timestamp=_now(),
        data=await scheduler.status(),
        health=await scheduler.health(),
    )


@router.post("/admin/sync/trigger", response_model=SyncTriggerResponse, status_code=202)
async def trigger_sync(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Start a manual sync in the background."""
    run_id = scheduler.trigger_now()
    return SyncTriggerResponse(
        timestamp=_now(),
        run_id=run_id,
        message="Sync run queued",
    )


@router.post("/admin/backfill", response_model=BackfillResponse)
async def backfill_history(
    request: BackfillRequest,
    aggregator: PriceAggregator = Depends(get_aggregator),
):
    """Load daily historical quotes for a date range into the store."""
    result = await aggregator.backfill(
        request.start_date, request.end_date, request.currency, request.provider
    )
    return BackfillResponse(
        timestamp=_now(),
        success=result.failure_count == 0,
        data=result.summary(),
    )


# -- Maintenance --


@router.get("/admin/api-stats", response_model=ApiStatsResponse)
async def api_stats(
    provider: str | None = Query(None),
    hours: int = Query(24, ge=1, le=24 * 30),
    store: SqliteQuoteStore = Depends(get_store),
):
    """Per-provider call counts, success rate and latency."""
    stats = await store.get_api_stats(provider=provider, hours=hours)
    return ApiStatsResponse(timestamp=_now(), hours=hours, data=stats)


@router.post("/admin/retention/cleanup", response_model=CleanupResponse)
async def retention_cleanup(
    days: int | None = Query(None, ge=1, description="Defaults to storage.retention_days"),
    state: AppState = Depends(get_app_state),
):
    retention = days or state.config.storage.retention_days
    deleted = await state.store.purge_older_than(timedelta(days=retention))
    return CleanupResponse(
        timestamp=_now(),
        retention_days=retention,
        deleted_quotes=deleted,
    )
