"""swarna_prices.core: foundation types, config, and exceptions."""

from swarna_prices.core.config import (
    AggregatorConfig,
    APIConfig,
    BroadcastConfig,
    GoldApiConfig,
    MetalPriceApiConfig,
    ProviderConfig,
    ProvidersConfig,
    StorageConfig,
    SwarnaPricesConfig,
    SyncConfig,
    load_config,
)
from swarna_prices.core.exceptions import (
    AllProvidersFailedError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    StorageError,
    SwarnaPricesError,
    ValidationError,
)
from swarna_prices.core.models import (
    STORE_ONLY,
    ApiCallRecord,
    BackfillResult,
    BackfillWindow,
    CurrencyCode,
    Instrument,
    InstrumentSyncResult,
    OperatingMode,
    ProviderName,
    Purity,
    Quote,
    RetryPolicy,
    StorageBackend,
    SyncRun,
    SyncTrigger,
)

__all__ = [
    # Type aliases / constants
    "CurrencyCode",
    "ProviderName",
    "STORE_ONLY",
    # Enums
    "Instrument",
    "Purity",
    "OperatingMode",
    "StorageBackend",
    "SyncTrigger",
    # Models
    "Quote",
    "RetryPolicy",
    "InstrumentSyncResult",
    "SyncRun",
    "ApiCallRecord",
    "BackfillWindow",
    "BackfillResult",
    # Config
    "SwarnaPricesConfig",
    "ProvidersConfig",
    "ProviderConfig",
    "GoldApiConfig",
    "MetalPriceApiConfig",
    "AggregatorConfig",
    "SyncConfig",
    "BroadcastConfig",
    "StorageConfig",
    "APIConfig",
    "load_config",
    # Exceptions
    "SwarnaPricesError",
    "ConfigurationError",
    "ValidationError",
    "ProviderError",
    "ProviderTimeoutError",
    "ProviderRateLimitError",
    "NotFoundError",
    "AllProvidersFailedError",
    "StorageError",
]
