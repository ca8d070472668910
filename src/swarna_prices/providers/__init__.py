"""Upstream price providers.

Key abstractions:

- ``ProviderClient``: protocol every upstream adapter satisfies.
- ``ProviderResponse``: tagged union of raw payload shapes.

Built-in implementations:

- ``GoldApiClient``: goldapi.io, one instrument per call.
- ``MetalPriceApiClient``: metalpriceapi.com, supports batch calls.

Adding a provider means writing one ``HttpProviderClient`` subclass, one
response variant, and registering it in ``PROVIDER_CLASSES``.
"""

from swarna_prices.providers.base import HttpProviderClient, ProviderClient
from swarna_prices.providers.goldapi import GoldApiClient
from swarna_prices.providers.metalpriceapi import MetalPriceApiClient
from swarna_prices.providers.registry import (
    PROVIDER_CLASSES,
    create_provider,
    create_providers,
)
from swarna_prices.providers.responses import (
    GoldApiResponse,
    MetalPriceApiResponse,
    ProviderResponse,
)

__all__ = [
    "ProviderClient",
    "HttpProviderClient",
    "GoldApiClient",
    "MetalPriceApiClient",
    "ProviderResponse",
    "GoldApiResponse",
    "MetalPriceApiResponse",
    "PROVIDER_CLASSES",
    "create_provider",
    "create_providers",
]
