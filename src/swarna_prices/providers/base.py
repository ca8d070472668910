"""Provider client protocol and the shared HTTP plumbing.

Architecture
------------
Every upstream price source sits behind the same interface:

    upstream JSON → ProviderResponse (validated) → Quote → PriceAggregator

- **ProviderClient** is the consumer-facing protocol. The aggregator and the
  sync scheduler depend only on it.

- **HttpProviderClient** owns the transport: rate limiting, timeouts, and
  the mapping of transport failures onto the ``ProviderError`` family.
  Concrete adapters only build requests and translate payloads.

Clients never retry. Retry and fallback belong to the aggregator.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time
from typing import Any, ClassVar, Protocol, runtime_checkable

import httpx
import pydantic
from aiolimiter import AsyncLimiter

from swarna_prices.core.config import ProviderConfig
from swarna_prices.core.exceptions import (
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)
from swarna_prices.core.models import CurrencyCode, Instrument, Quote
from swarna_prices.providers.responses import (
    PROVIDER_RESPONSE_ADAPTER,
    ProviderResponse,
)

logger = logging.getLogger(__name__)

_USER_AGENT = "swarna-prices/0.1"


@runtime_checkable
class ProviderClient(Protocol):
    """Stateless adapter for one upstream price provider."""

    name: str
    supports_batch: bool
    supports_timeframe: bool

    async def fetch_live(self, instrument: Instrument, currency: CurrencyCode) -> Quote:
        """Latest quote for one instrument/currency pair.

        Raises
        ------
        ProviderError
            Transport, auth, rate-limit or payload failure.
        """
        ...

    async def fetch_historical(
        self, instrument: Instrument, currency: CurrencyCode, day: date
    ) -> Quote:
        """Quote for a past UTC calendar date, marked ``is_historical``."""
        ...

    async def fetch_all_live(self, currency: CurrencyCode) -> dict[Instrument, Quote]:
        """All instruments in one upstream call. Only if ``supports_batch``."""
        ...

    async def fetch_timeframe(
        self, currency: CurrencyCode, start: date, end: date
    ) -> list[Quote]:
        """Historical quotes for every instrument and day in ``start..end``.

        Only if ``supports_timeframe``.
        """
        ...

    async def close(self) -> None: ...


def start_of_day(day: date) -> int:
    """Epoch seconds of 00:00 UTC on ``day``."""
    return int(datetime.combine(day, time.min, tzinfo=UTC).timestamp())


class HttpProviderClient:
    """Base for httpx-backed provider clients.

    Subclasses set ``name``, optionally ``supports_batch`` and
    ``supports_timeframe``, and implement the fetch methods on top of
    ``_get_json`` and ``_parse``.
    """

    name: ClassVar[str] = ""
    supports_batch: ClassVar[bool] = False
    supports_timeframe: ClassVar[bool] = False

    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._limiter = AsyncLimiter(max_rate=config.rate_limit, time_period=1.0)
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            headers={"User-Agent": _USER_AGENT, **self._auth_headers()},
            timeout=httpx.Timeout(config.timeout_seconds),
            follow_redirects=True,
        )

    async def __aenter__(self) -> HttpProviderClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client. Called automatically by __aexit__."""
        await self._client.aclose()

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _auth_params(self) -> dict[str, str]:
        return {}

    async def fetch_all_live(self, currency: CurrencyCode) -> dict[Instrument, Quote]:
        raise ProviderError(
            f"{self.name} does not support batch quotes",
            provider=self.name,
            context={"operation": "fetch_all_live"},
        )

    async def fetch_timeframe(
        self, currency: CurrencyCode, start: date, end: date
    ) -> list[Quote]:
        raise ProviderError(
            f"{self.name} does not support timeframe queries",
            provider=self.name,
            context={"operation": "fetch_timeframe"},
        )

    async def _get_json(
        self, path: str, params: dict[str, str] | None = None
    ) -> dict[str, Any]:
        """GET ``path`` and return the decoded JSON object.

        Raises
        ------
        ProviderTimeoutError
            The request exceeded the configured timeout.
        ProviderRateLimitError
            HTTP 429.
        ProviderError
            Any other transport failure, non-2xx status, or non-object body.
        """
        query = {**self._auth_params(), **(params or {})}
        url = f"{self._config.base_url}{path}"
        try:
            async with self._limiter:
                response = await self._client.get(path, params=query or None)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"{self.name} timed out after {self._config.timeout_seconds}s: {path}",
                provider=self.name,
                cause=e,
                context={"url": url},
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                f"{self.name} request failed: {e}",
                provider=self.name,
                cause=e,
                context={"url": url},
            ) from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise ProviderRateLimitError(
                f"{self.name} rate limit exceeded: {path}",
                provider=self.name,
                context={
                    "url": url,
                    "status_code": 429,
                    "retry_after": int(retry_after) if retry_after and retry_after.isdigit() else None,
                },
            )

        if not response.is_success:
            raise ProviderError(
                f"HTTP {response.status_code} from {self.name}: {response.text[:200]}",
                provider=self.name,
                context={"url": url, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.name} returned a non-JSON body",
                provider=self.name,
                cause=e,
                context={"url": url, "status_code": response.status_code},
            ) from e

        if not isinstance(data, dict):
            raise ProviderError(
                f"{self.name} returned {type(data).__name__}, expected an object",
                provider=self.name,
                context={"url": url},
            )
        logger.debug("%s GET %s -> %d", self.name, path, response.status_code)
        return data

    def _parse(self, payload: dict[str, Any]) -> ProviderResponse:
        """Validate a raw payload into this provider's response variant."""
        try:
            return PROVIDER_RESPONSE_ADAPTER.validate_python({**payload, "kind": self.name})
        except pydantic.ValidationError as e:
            raise ProviderError(
                f"{self.name} payload failed validation: {e.error_count()} error(s)",
                provider=self.name,
                cause=e,
            ) from e

    def _quote(self, **fields: Any) -> Quote:
        """Build a Quote, turning model validation failures into ProviderError."""
        try:
            return Quote(provider=self.name, **fields)
        except pydantic.ValidationError as e:
            raise ProviderError(
                f"{self.name} produced an invalid quote: {e.errors()[0]['msg']}",
                provider=self.name,
                cause=e,
            ) from e
