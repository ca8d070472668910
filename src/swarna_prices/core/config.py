"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from swarna_prices.core.exceptions import ConfigurationError
from swarna_prices.core.models import (
    STORE_ONLY,
    RetryPolicy,
    StorageBackend,
    normalize_currency,
)


class ProviderConfig(BaseModel):
    """Connection settings for one upstream price provider.

    Endpoint paths are templates formatted with `symbol`, `symbols`,
    `currency` and `date`.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    base_url: str
    api_key: str | None = None
    timeout_seconds: float = 10.0
    rate_limit: int = 5
    live_path: str
    historical_path: str
    batch_path: str | None = None

    @field_validator("api_key", mode="before")
    @classmethod
    def api_key_as_text(cls, v: object) -> object:
        # numeric-looking keys are auto-cast by the env loader
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be > 0")
        return v

    @field_validator("rate_limit")
    @classmethod
    def rate_limit_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rate_limit must be >= 1 request per second")
        return v


class GoldApiConfig(ProviderConfig):
    """goldapi.io: one instrument per request, token in a header."""

    base_url: str = "https://www.goldapi.io/api"
    live_path: str = "/{symbol}/{currency}"
    historical_path: str = "/{symbol}/{currency}/{date:%Y%m%d}"


class MetalPriceApiConfig(ProviderConfig):
    """metalpriceapi.com: batch-capable, key in the query string."""

    base_url: str = "https://api.metalpriceapi.com/v1"
    live_path: str = "/latest"
    historical_path: str = "/{date:%Y-%m-%d}"
    batch_path: str | None = "/latest"
    timeframe_path: str = "/timeframe"


class ProvidersConfig(BaseModel):
    """All known upstream providers."""

    model_config = ConfigDict(frozen=True)

    goldapi: GoldApiConfig = GoldApiConfig()
    metalpriceapi: MetalPriceApiConfig = MetalPriceApiConfig()

    def enabled_names(self) -> list[str]:
        """Names of enabled providers, in declaration order."""
        return [
            name
            for name in type(self).model_fields
            if getattr(self, name).enabled
        ]

    def get(self, name: str) -> ProviderConfig | None:
        if name not in type(self).model_fields:
            return None
        return getattr(self, name)


class AggregatorConfig(BaseModel):
    """Provider selection, retry and cache settings for serving reads."""

    model_config = ConfigDict(frozen=True)

    primary: str = "metalpriceapi"
    fallback: str | None = "goldapi"
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    cache_ttl_seconds: int = 300
    default_currency: str = "INR"
    backfill_window_days: int = 365

    @field_validator("default_currency")
    @classmethod
    def currency_is_iso(cls, v: str) -> str:
        return normalize_currency(v)

    @field_validator("cache_ttl_seconds")
    @classmethod
    def ttl_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("cache_ttl_seconds must be >= 0")
        return v

    @field_validator("backfill_window_days")
    @classmethod
    def window_in_range(cls, v: int) -> int:
        # metalpriceapi caps /timeframe at 365 days
        if not 1 <= v <= 365:
            raise ValueError("backfill_window_days must be between 1 and 365")
        return v

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


class SyncConfig(BaseModel):
    """Scheduled cache refresh settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    schedule: str = "0 0 * * *"
    timezone: str = "UTC"
    provider: str = "metalpriceapi"
    currencies: list[str] = ["INR"]
    retry_attempts: int = 3
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0
    freshness_horizon_hours: int = 24
    run_on_startup: bool = True

    @field_validator("schedule")
    @classmethod
    def schedule_is_cron(cls, v: str) -> str:
        if not croniter.is_valid(v):
            raise ValueError(f"schedule is not a valid cron expression: {v!r}")
        return v

    @field_validator("timezone")
    @classmethod
    def timezone_known(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {v!r}") from e
        return v

    @field_validator("currencies", mode="before")
    @classmethod
    def split_currency_string(cls, v: object) -> object:
        # env vars arrive as "INR,USD"
        if isinstance(v, str):
            return [part for part in v.split(",") if part.strip()]
        return v

    @field_validator("currencies")
    @classmethod
    def currencies_are_iso(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("currencies must not be empty")
        return [normalize_currency(c) for c in v]

    @field_validator("freshness_horizon_hours")
    @classmethod
    def horizon_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("freshness_horizon_hours must be >= 1")
        return v

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


class BroadcastConfig(BaseModel):
    """Live WebSocket fan-out settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    currency: str = "INR"
    interval_seconds: float = 60.0
    change_threshold_percent: float = 1.0
    heartbeat_timeout_seconds: float = 60.0
    heartbeat_check_seconds: float = 15.0
    max_connections: int = 100

    @field_validator("currency")
    @classmethod
    def currency_is_iso(cls, v: str) -> str:
        return normalize_currency(v)

    @field_validator("interval_seconds", "change_threshold_percent")
    @classmethod
    def non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("heartbeat_timeout_seconds", "heartbeat_check_seconds")
    @classmethod
    def positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("max_connections")
    @classmethod
    def max_connections_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_connections must be >= 1")
        return v


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    model_config = ConfigDict(frozen=True)

    backend: StorageBackend = StorageBackend.SQLITE
    sqlite_path: str = "./data/swarna_prices.db"
    postgresql_url: str | None = None
    retention_days: int = 30

    @model_validator(mode="after")
    def pg_url_required_for_pg(self) -> StorageConfig:
        if self.backend == StorageBackend.POSTGRESQL and not self.postgresql_url:
            raise ValueError("postgresql_url is required when backend is 'postgresql'")
        return self

    @field_validator("retention_days")
    @classmethod
    def retention_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retention_days must be >= 1")
        return v


class APIConfig(BaseModel):
    """FastAPI server configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str | None = None


class SwarnaPricesConfig(BaseModel):
    """Root configuration for the entire swarna-prices system."""

    model_config = ConfigDict(frozen=True)

    providers: ProvidersConfig = ProvidersConfig()
    aggregator: AggregatorConfig = AggregatorConfig()
    sync: SyncConfig = SyncConfig()
    broadcast: BroadcastConfig = BroadcastConfig()
    storage: StorageConfig = StorageConfig()
    api: APIConfig = APIConfig()

    @model_validator(mode="after")
    def provider_names_known(self) -> SwarnaPricesConfig:
        known = self.providers.enabled_names()
        if self.aggregator.primary != STORE_ONLY and self.aggregator.primary not in known:
            raise ValueError(
                f"aggregator.primary {self.aggregator.primary!r} is not an enabled "
                f"provider (known: {known})"
            )
        fallback = self.aggregator.fallback
        if fallback is not None and fallback not in known:
            raise ValueError(
                f"aggregator.fallback {fallback!r} is not an enabled provider (known: {known})"
            )
        if self.sync.enabled and self.sync.provider not in known:
            raise ValueError(
                f"sync.provider {self.sync.provider!r} is not an enabled provider "
                f"(known: {known})"
            )
        return self


def load_config(
    config_path: str | None = None,
    env_prefix: str = "SWARNA_PRICES_",
) -> SwarnaPricesConfig:
    """Load configuration from environment + YAML file + defaults.

    Resolution order (highest priority first):
    1. Environment variables (SWARNA_PRICES_AGGREGATOR__PRIMARY, etc.)
    2. YAML file at config_path
    3. Built-in defaults

    Nested keys use double-underscore in env vars:
        SWARNA_PRICES_PROVIDERS__GOLDAPI__API_KEY=goldapi-xyz
            ->  providers.goldapi.api_key = "goldapi-xyz"
    """
    try:
        yaml_path = _resolve_config_path(config_path)
        base: dict = {}
        if yaml_path is not None:
            base = _load_yaml(yaml_path)

        merged = _merge_env_vars(base, env_prefix)
        return SwarnaPricesConfig.model_validate(merged)
    except Exception as e:
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError(str(e), context={"source": "load_config"}) from e


def _resolve_config_path(explicit: str | None) -> Path | None:
    """Determine config file path."""
    if explicit is not None:
        p = Path(explicit)
        if not p.exists():
            raise ConfigurationError(
                f"Config file not found: {explicit}",
                context={"field": "config_path", "value": explicit},
            )
        return p

    env_path = os.environ.get("SWARNA_PRICES_CONFIG")
    if env_path:
        p = Path(env_path)
        if not p.exists():
            raise ConfigurationError(
                f"Config file from SWARNA_PRICES_CONFIG not found: {env_path}",
                context={"field": "SWARNA_PRICES_CONFIG", "value": env_path},
            )
        return p

    default = Path("swarna-prices.yml")
    if default.exists():
        return default

    return None


def _load_yaml(path: Path) -> dict:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML config: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"YAML config must be a mapping, got {type(data).__name__}",
            context={"field": "config_file", "value": str(path)},
        )
    return data


def _merge_env_vars(base: dict, prefix: str) -> dict:
    """Overlay environment variables onto a copy of the base config dict.

    Double-underscore separates nesting levels. Values are auto-cast.
    """
    result = _deep_copy_dicts(base)

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = [p.lower() for p in key[len(prefix) :].split("__")]
        if parts == ["config"]:
            continue

        target = result
        for part in parts[:-1]:
            existing = target.get(part)
            if not isinstance(existing, dict):
                existing = {}
                target[part] = existing
            target = existing
        target[parts[-1]] = _auto_cast(value)

    return result


def _deep_copy_dicts(data: dict) -> dict:
    return {
        k: _deep_copy_dicts(v) if isinstance(v, dict) else v for k, v in data.items()
    }


def _auto_cast(value: str) -> str | int | float | bool:
    """Auto-cast string values from environment variables."""
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value
