"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from swarna_prices.aggregator.service import PriceAggregator
from swarna_prices.api.deps import AppState, api_key_middleware
from swarna_prices.api.routes import router
from swarna_prices.api.schemas import error_body
from swarna_prices.api.ws import ws_router
from swarna_prices.broadcast.broadcaster import Broadcaster
from swarna_prices.core.config import SwarnaPricesConfig, load_config
from swarna_prices.core.exceptions import (
    AllProvidersFailedError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    StorageError,
    SwarnaPricesError,
    ValidationError,
)
from swarna_prices.providers.base import ProviderClient
from swarna_prices.providers.registry import create_providers
from swarna_prices.storage.store import create_store
from swarna_prices.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)

# checked in order; subclasses before their bases
_STATUS_MAP: list[tuple[type[SwarnaPricesError], int]] = [
    (ValidationError, 400),
    (ConfigurationError, 400),
    (NotFoundError, 404),
    (ProviderError, 502),
    (StorageError, 500),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown lifecycle."""
    config = app.state._pending_config or load_config()
    store = await create_store(config.storage)
    providers = app.state._pending_providers or create_providers(config)
    aggregator = PriceAggregator(providers, store, config.aggregator)
    scheduler = SyncScheduler(aggregator, store, config.sync)
    broadcaster = Broadcaster(config.broadcast, aggregator)
    scheduler.add_listener(broadcaster.on_sync)

    app.state.app_state = AppState(
        config=config,
        store=store,
        aggregator=aggregator,
        scheduler=scheduler,
        broadcaster=broadcaster,
    )
    await scheduler.start()
    await broadcaster.start()

    yield

    await broadcaster.stop()
    await scheduler.stop()
    await aggregator.close()
    await store.close()


def create_app(
    config: SwarnaPricesConfig | None = None,
    providers: dict[str, ProviderClient] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``providers`` replaces the clients built from configuration.
    """
    import swarna_prices

    app = FastAPI(
        title="Swarna Prices API",
        description="Precious-metals quotes with provider fallback and live updates",
        version=swarna_prices.__version__,
        lifespan=lifespan,
    )

    # read back by lifespan; None means load from env/YAML
    app.state._pending_config = config
    app.state._pending_providers = providers

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.middleware("http")(api_key_middleware)

    app.include_router(router)
    app.include_router(ws_router)

    # Exception handlers
    @app.exception_handler(SwarnaPricesError)
    async def swarna_exception_handler(request: Request, exc: SwarnaPricesError):
        status = next(
            (code for cls, code in _STATUS_MAP if isinstance(exc, cls)), 500
        )
        details = None
        if isinstance(exc, AllProvidersFailedError):
            details = {"upstreamErrors": exc.context.get("upstream_errors", [])}
        if status >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(
            status_code=status,
            content=error_body(type(exc).__name__, str(exc), details),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=error_body(
                "ValidationError",
                "Invalid request parameters",
                {"errors": [
                    {"loc": list(e.get("loc", ())), "msg": e.get("msg")}
                    for e in exc.errors()
                ]},
            ),
        )

    return app
