"""Build provider clients from configuration."""

from __future__ import annotations

from swarna_prices.core.config import SwarnaPricesConfig
from swarna_prices.core.exceptions import ConfigurationError
from swarna_prices.providers.base import HttpProviderClient, ProviderClient
from swarna_prices.providers.goldapi import GoldApiClient
from swarna_prices.providers.metalpriceapi import MetalPriceApiClient

PROVIDER_CLASSES: dict[str, type[HttpProviderClient]] = {
    GoldApiClient.name: GoldApiClient,
    MetalPriceApiClient.name: MetalPriceApiClient,
}


def create_provider(name: str, config: SwarnaPricesConfig) -> ProviderClient:
    """Instantiate the client registered under ``name``.

    Raises:
        ConfigurationError: Unknown name, or the provider is disabled.
    """
    cls = PROVIDER_CLASSES.get(name)
    provider_config = config.providers.get(name)
    if cls is None or provider_config is None:
        raise ConfigurationError(
            f"Unsupported provider: {name!r}. Known: {sorted(PROVIDER_CLASSES)}",
            context={"provider": name},
        )
    if not provider_config.enabled:
        raise ConfigurationError(
            f"Provider {name!r} is disabled in configuration",
            context={"provider": name},
        )
    return cls(provider_config)


def create_providers(config: SwarnaPricesConfig) -> dict[str, ProviderClient]:
    """One client per enabled provider, keyed by name."""
    return {
        name: create_provider(name, config)
        for name in config.providers.enabled_names()
    }
