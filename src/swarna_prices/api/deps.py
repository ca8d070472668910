"""Request-scoped access to the running services, plus the admin API-key check."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse

from swarna_prices.aggregator.service import PriceAggregator
from swarna_prices.api.schemas import error_body
from swarna_prices.broadcast.broadcaster import Broadcaster
from swarna_prices.core.config import SwarnaPricesConfig
from swarna_prices.storage.store import SqliteQuoteStore
from swarna_prices.sync.scheduler import SyncScheduler


@dataclass
class AppState:
    """Services built by the lifespan and shared by every request."""

    config: SwarnaPricesConfig
    store: SqliteQuoteStore
    aggregator: PriceAggregator
    scheduler: SyncScheduler
    broadcaster: Broadcaster


def get_app_state(request: Request) -> AppState:
    return request.app.state.app_state


def get_store(request: Request) -> SqliteQuoteStore:
    return request.app.state.app_state.store


def get_aggregator(request: Request) -> PriceAggregator:
    return request.app.state.app_state.aggregator


def get_scheduler(request: Request) -> SyncScheduler:
    return request.app.state.app_state.scheduler


PROTECTED_PREFIX = "/admin"


async def api_key_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware: require X-API-Key on admin routes when a key is configured."""
    if not request.url.path.startswith(PROTECTED_PREFIX):
        return await call_next(request)

    config = request.app.state.app_state.config
    if config.api.api_key:
        api_key = request.headers.get("X-API-Key")
        if api_key != config.api.api_key:
            return JSONResponse(
                status_code=401,
                content=error_body("Unauthorized", "Invalid or missing API key"),
            )
    return await call_next(request)
