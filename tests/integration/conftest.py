"""Integration test fixtures: real clients, SQLite and app wiring; upstream HTTP mocked."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
import respx

from swarna_prices.core.config import (
    AggregatorConfig,
    APIConfig,
    BroadcastConfig,
    GoldApiConfig,
    MetalPriceApiConfig,
    ProvidersConfig,
    StorageConfig,
    SwarnaPricesConfig,
    SyncConfig,
)

from fakes import goldapi_payload, metalprice_payload, metalprice_timeframe_payload

METALPRICE_URL = "https://api.metalpriceapi.com/v1"


@pytest.fixture
def integration_config(tmp_path: Path) -> SwarnaPricesConfig:
    """Both providers keyed, no retries, no scheduled sync, no broadcast polling."""
    return SwarnaPricesConfig(
        providers=ProvidersConfig(
            goldapi=GoldApiConfig(api_key="goldapi-it", rate_limit=50),
            metalpriceapi=MetalPriceApiConfig(api_key="mp-it", rate_limit=50),
        ),
        aggregator=AggregatorConfig(
            primary="metalpriceapi", fallback="goldapi", retry_attempts=1
        ),
        sync=SyncConfig(enabled=False, retry_attempts=1),
        broadcast=BroadcastConfig(interval_seconds=0),
        storage=StorageConfig(sqlite_path=str(tmp_path / "integration.db")),
        api=APIConfig(),
    )


@pytest.fixture
def upstream():
    """respx router with healthy routes for both providers.

    Routes are reachable by name: ``metalprice_latest``,
    ``metalprice_historical``, ``metalprice_timeframe`` and ``goldapi_live``.
    """
    with respx.mock(assert_all_called=False) as router:
        router.get(f"{METALPRICE_URL}/latest", name="metalprice_latest").mock(
            side_effect=lambda request: httpx.Response(
                200, json=metalprice_payload(request.url.params.get("base", "INR"))
            )
        )
        router.get(f"{METALPRICE_URL}/2025-07-16", name="metalprice_historical").mock(
            return_value=httpx.Response(
                200,
                json=metalprice_payload(
                    timestamp=1752710399, historical=True, date="2025-07-16"
                ),
            )
        )
        router.get(f"{METALPRICE_URL}/timeframe", name="metalprice_timeframe").mock(
            side_effect=lambda request: httpx.Response(
                200,
                json=metalprice_timeframe_payload(
                    request.url.params["start_date"],
                    request.url.params["end_date"],
                    request.url.params.get("base", "INR"),
                ),
            )
        )
        router.get(
            url__regex=r"https://www\.goldapi\.io/api/(?P<symbol>X[A-Z]{2})/(?P<currency>[A-Z]{3})$",
            name="goldapi_live",
        ).mock(
            side_effect=lambda request, symbol, currency: httpx.Response(
                200, json=goldapi_payload(symbol, currency)
            )
        )
        yield router
