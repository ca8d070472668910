"""metalpriceapi.com client: batch and timeframe capable, key sent as a query parameter.

Rates are quoted as "ounces of metal per one unit of the base currency", so
the ounce price is ``1 / rate``. Gold per-gram prices are derived from the
ounce price using the troy-ounce weight and each purity's fineness.
"""

from __future__ import annotations

import logging
from datetime import date

import pydantic

from swarna_prices.core.exceptions import ProviderError
from swarna_prices.core.models import (
    CurrencyCode,
    Instrument,
    Quote,
    per_gram_prices,
)
from swarna_prices.providers.base import HttpProviderClient, start_of_day
from swarna_prices.providers.responses import (
    MetalPriceApiResponse,
    MetalPriceApiTimeframeResponse,
)

logger = logging.getLogger(__name__)


class MetalPriceApiClient(HttpProviderClient):
    """Client for https://metalpriceapi.com."""

    name = "metalpriceapi"
    supports_batch = True
    supports_timeframe = True

    def _auth_params(self) -> dict[str, str]:
        if not self._config.api_key:
            return {}
        return {"api_key": self._config.api_key}

    async def fetch_live(self, instrument: Instrument, currency: CurrencyCode) -> Quote:
        payload = await self._fetch(self._config.live_path, currency, [instrument])
        return self._translate(payload, instrument, currency)

    async def fetch_historical(
        self, instrument: Instrument, currency: CurrencyCode, day: date
    ) -> Quote:
        path = self._config.historical_path.format(date=day)
        payload = await self._fetch(path, currency, [instrument])
        return self._translate(payload, instrument, currency, day=day)

    async def fetch_all_live(self, currency: CurrencyCode) -> dict[Instrument, Quote]:
        """One request for every instrument. Metals missing from ``rates`` are omitted."""
        path = self._config.batch_path or self._config.live_path
        instruments = list(Instrument)
        payload = await self._fetch(path, currency, instruments)

        quotes: dict[Instrument, Quote] = {}
        for instrument in instruments:
            if not payload.rates.get(instrument.symbol):
                logger.warning(
                    "metalpriceapi batch response has no rate for %s/%s",
                    instrument.symbol, currency,
                )
                continue
            quotes[instrument] = self._translate(payload, instrument, currency)

        if not quotes:
            raise ProviderError(
                f"metalpriceapi batch response had no usable rates for {currency}",
                provider=self.name,
                context={"currency": currency},
            )
        return quotes

    async def fetch_timeframe(
        self, currency: CurrencyCode, start: date, end: date
    ) -> list[Quote]:
        """Every metal for every day in ``start..end`` from one ``/timeframe`` call.

        Days or metals without a usable rate are skipped. The caller keeps the
        range within the provider's 365-day limit.
        """
        path = self._config.timeframe_path
        data = await self._get_json(
            path,
            params={
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "base": currency,
                "currencies": ",".join(i.symbol for i in Instrument),
            },
        )
        self._raise_for_error(data, path)
        try:
            payload = MetalPriceApiTimeframeResponse.model_validate(data)
        except pydantic.ValidationError as e:
            raise ProviderError(
                f"metalpriceapi timeframe payload failed validation: {e.error_count()} error(s)",
                provider=self.name,
                cause=e,
            ) from e

        quotes: list[Quote] = []
        skipped = 0
        for day_text, rates in sorted(payload.rates.items()):
            try:
                day = date.fromisoformat(day_text)
            except ValueError:
                skipped += 1
                continue
            if not start <= day <= end:
                continue
            for instrument in Instrument:
                rate = rates.get(instrument.symbol)
                if not rate or rate <= 0:
                    skipped += 1
                    continue
                quotes.append(
                    self._ounce_quote(
                        instrument, payload.base or currency, 1 / rate, start_of_day(day), True
                    )
                )
        if skipped:
            logger.warning(
                "metalpriceapi timeframe %s..%s/%s: skipped %d missing rate(s)",
                start, end, currency, skipped,
            )
        if not quotes:
            raise ProviderError(
                f"metalpriceapi timeframe response had no usable rates for {start}..{end}",
                provider=self.name,
                context={"currency": currency, "path": path},
            )
        return quotes

    async def _fetch(
        self,
        path: str,
        currency: CurrencyCode,
        instruments: list[Instrument],
    ) -> MetalPriceApiResponse:
        data = await self._get_json(
            path,
            params={
                "base": currency,
                "currencies": ",".join(i.symbol for i in instruments),
            },
        )
        self._raise_for_error(data, path)
        return self._parse(data)  # type: ignore[return-value]

    def _raise_for_error(self, data: dict, path: str) -> None:
        if data.get("success") is False:
            error = data.get("error") or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            message = error.get("info") or error.get("message") or "unknown error"
            raise ProviderError(
                f"metalpriceapi error: {message}",
                provider=self.name,
                context={"path": path, "code": error.get("code")},
            )

    def _translate(
        self,
        payload: MetalPriceApiResponse,
        instrument: Instrument,
        currency: CurrencyCode,
        day: date | None = None,
    ) -> Quote:
        rate = payload.rates.get(instrument.symbol)
        if not rate or rate <= 0:
            raise ProviderError(
                f"No rate found for {instrument.symbol} in metalpriceapi response",
                provider=self.name,
                context={"instrument": str(instrument), "currency": currency},
            )

        return self._ounce_quote(
            instrument,
            payload.base or currency,
            1 / rate,
            start_of_day(day) if day is not None else payload.timestamp,
            day is not None,
        )

    def _ounce_quote(
        self,
        instrument: Instrument,
        currency: CurrencyCode,
        price: float,
        observed_at: int,
        is_historical: bool,
    ) -> Quote:
        return self._quote(
            instrument=instrument,
            currency=currency,
            price=price,
            per_gram_by_purity=(
                per_gram_prices(price) if instrument == Instrument.GOLD else {}
            ),
            observed_at=observed_at,
            is_historical=is_historical,
        )
