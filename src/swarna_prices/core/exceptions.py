"""Custom exception hierarchy for swarna-prices."""

from typing import Any


class SwarnaPricesError(Exception):
    """Base exception for all swarna-prices errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigurationError(SwarnaPricesError):
    """Invalid or missing configuration, or an unsupported provider name.

    Raised by load_config() during startup (fatal) and by
    PriceAggregator.switch_provider() at runtime (state left unchanged).

    Context keys:
        field: str — the config field that failed validation
        value: Any — the invalid value (redacted for secrets)
        provider: str — the unsupported provider name
    """


class ValidationError(SwarnaPricesError):
    """Malformed instrument, currency or date input.

    Policy: rejected before any I/O happens.

    Context keys:
        field: str — "instrument", "currency" or "date"
        value: Any — the rejected value
    """


class ProviderError(SwarnaPricesError):
    """Transport, auth or payload failure from one named upstream provider.

    Policy: clients never retry; the aggregator applies its retry policy and
    walks the fallback chain.

    Context keys:
        provider: str — which provider failed
        status_code: int | None — HTTP status code if applicable
        url: str | None — the URL that was requested
    """

    def __init__(
        self,
        message: str,
        provider: str,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context={"provider": provider, **(context or {})})
        self.provider = provider
        self.cause = cause


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded its configured timeout.

    Policy: treated by the retry helper exactly like a transport error.
    """


class ProviderRateLimitError(ProviderError):
    """Provider answered HTTP 429.

    Context keys:
        retry_after: int | None — seconds suggested by the provider
    """


class NotFoundError(SwarnaPricesError):
    """No data in the store and no provider able to produce it.

    Context keys:
        instrument: str
        currency: str
        date: str | None — for historical lookups
    """


class AllProvidersFailedError(NotFoundError):
    """Every provider in the fallback chain failed and the store missed too.

    Carries the upstream failures in `errors` (in the order they happened).
    """

    def __init__(
        self,
        message: str,
        errors: list[ProviderError],
        context: dict[str, Any] | None = None,
    ):
        ctx = dict(context or {})
        ctx["upstream_errors"] = [
            {"provider": e.provider, "error": str(e)} for e in errors
        ]
        super().__init__(message, context=ctx)
        self.errors = list(errors)


class StorageError(SwarnaPricesError):
    """Database operation failed.

    Policy: raise immediately. Data integrity is critical.

    Context keys:
        operation: str — "insert", "query", "migrate", etc.
        table: str — the table involved
    """
