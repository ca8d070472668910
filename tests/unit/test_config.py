"""Tests for swarna_prices.core.config."""

import os

import pydantic
import pytest

from swarna_prices.core.config import (
    AggregatorConfig,
    BroadcastConfig,
    GoldApiConfig,
    ProvidersConfig,
    StorageConfig,
    SwarnaPricesConfig,
    SyncConfig,
    _auto_cast,
    load_config,
)
from swarna_prices.core.exceptions import ConfigurationError
from swarna_prices.core.models import StorageBackend


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """No stray SWARNA_PRICES_* variables and no swarna-prices.yml in cwd."""
    for key in list(os.environ):
        if key.startswith("SWARNA_PRICES_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


# --- Defaults ---


class TestDefaults:
    def test_root_defaults(self):
        config = SwarnaPricesConfig()
        assert config.aggregator.primary == "metalpriceapi"
        assert config.aggregator.fallback == "goldapi"
        assert config.aggregator.default_currency == "INR"
        assert config.sync.schedule == "0 0 * * *"
        assert config.sync.currencies == ["INR"]
        assert config.storage.backend == StorageBackend.SQLITE
        assert config.providers.enabled_names() == ["goldapi", "metalpriceapi"]

    def test_provider_endpoints(self):
        providers = ProvidersConfig()
        assert providers.goldapi.base_url == "https://www.goldapi.io/api"
        assert providers.metalpriceapi.batch_path == "/latest"
        assert providers.goldapi.batch_path is None
        assert providers.get("nope") is None

    def test_retry_policies(self):
        assert AggregatorConfig().retry_policy().attempts == 3
        sync_policy = SyncConfig().retry_policy()
        assert (sync_policy.base_delay, sync_policy.max_delay) == (5.0, 300.0)


# --- Validation ---


class TestValidation:
    def test_invalid_cron(self):
        with pytest.raises(pydantic.ValidationError, match="cron"):
            SyncConfig(schedule="every day at noon")

    def test_unknown_timezone(self):
        with pytest.raises(pydantic.ValidationError, match="timezone"):
            SyncConfig(timezone="Mars/Olympus")

    def test_currencies_from_comma_string(self):
        assert SyncConfig(currencies="inr,usd").currencies == ["INR", "USD"]

    def test_empty_currencies_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            SyncConfig(currencies=[])

    def test_negative_threshold_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            BroadcastConfig(change_threshold_percent=-1)

    def test_postgres_requires_url(self):
        with pytest.raises(pydantic.ValidationError, match="postgresql_url"):
            StorageConfig(backend=StorageBackend.POSTGRESQL)

    def test_numeric_api_key_kept_as_text(self):
        assert GoldApiConfig(api_key=12345).api_key == "12345"

    def test_unknown_primary_rejected(self):
        with pytest.raises(pydantic.ValidationError, match="aggregator.primary"):
            SwarnaPricesConfig(aggregator=AggregatorConfig(primary="kitco"))

    def test_store_only_primary_allowed(self):
        config = SwarnaPricesConfig(aggregator=AggregatorConfig(primary="store-only"))
        assert config.aggregator.primary == "store-only"

    def test_disabled_fallback_rejected(self):
        with pytest.raises(pydantic.ValidationError, match="aggregator.fallback"):
            SwarnaPricesConfig(
                providers=ProvidersConfig(goldapi=GoldApiConfig(enabled=False)),
            )

    def test_sync_provider_ignored_when_disabled(self):
        config = SwarnaPricesConfig(
            aggregator=AggregatorConfig(fallback=None),
            sync=SyncConfig(enabled=False, provider="kitco"),
        )
        assert config.sync.enabled is False


# --- load_config ---


class TestLoadConfig:
    def test_defaults_without_file(self):
        assert load_config() == SwarnaPricesConfig()

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "custom.yml"
        path.write_text(
            "aggregator:\n"
            "  primary: goldapi\n"
            "  fallback: metalpriceapi\n"
            "sync:\n"
            "  currencies: [INR, USD]\n"
            "  schedule: '30 6 * * *'\n"
        )
        config = load_config(config_path=str(path))
        assert config.aggregator.primary == "goldapi"
        assert config.sync.currencies == ["INR", "USD"]
        assert config.sync.schedule == "30 6 * * *"

    def test_default_file_in_cwd(self, tmp_path):
        (tmp_path / "swarna-prices.yml").write_text("api:\n  port: 9100\n")
        assert load_config().api.port == 9100

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yml"
        path.write_text("storage:\n  retention_days: 7\n")
        monkeypatch.setenv("SWARNA_PRICES_CONFIG", str(path))
        assert load_config().storage.retention_days == 7

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "base.yml"
        path.write_text("aggregator:\n  cache_ttl_seconds: 600\n")
        monkeypatch.setenv("SWARNA_PRICES_AGGREGATOR__CACHE_TTL_SECONDS", "120")
        monkeypatch.setenv("SWARNA_PRICES_PROVIDERS__GOLDAPI__API_KEY", "goldapi-xyz")
        monkeypatch.setenv("SWARNA_PRICES_SYNC__CURRENCIES", "INR,AED")
        monkeypatch.setenv("SWARNA_PRICES_SYNC__RUN_ON_STARTUP", "false")
        config = load_config(config_path=str(path))
        assert config.aggregator.cache_ttl_seconds == 120
        assert config.providers.goldapi.api_key == "goldapi-xyz"
        assert config.sync.currencies == ["INR", "AED"]
        assert config.sync.run_on_startup is False

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(config_path=str(tmp_path / "missing.yml"))

    def test_missing_env_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SWARNA_PRICES_CONFIG", str(tmp_path / "missing.yml"))
        with pytest.raises(ConfigurationError, match="SWARNA_PRICES_CONFIG"):
            load_config()

    def test_yaml_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(config_path=str(path))

    def test_broken_yaml(self, tmp_path):
        path = tmp_path / "broken.yml"
        path.write_text("aggregator: [unclosed\n")
        with pytest.raises(ConfigurationError, match="YAML"):
            load_config(config_path=str(path))

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(config_path=str(path)) == SwarnaPricesConfig()

    def test_validation_failure_wrapped(self, monkeypatch):
        monkeypatch.setenv("SWARNA_PRICES_AGGREGATOR__PRIMARY", "kitco")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config()
        assert exc_info.value.context["source"] == "load_config"


class TestAutoCast:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("true", True),
            ("False", False),
            ("42", 42),
            ("2.5", 2.5),
            ("INR", "INR"),
        ],
    )
    def test_casts(self, raw, expected):
        assert _auto_cast(raw) == expected
