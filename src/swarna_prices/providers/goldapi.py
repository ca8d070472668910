"""goldapi.io client: one instrument per request, token sent as a header."""

from __future__ import annotations

import logging
from datetime import date

from swarna_prices.core.exceptions import ProviderError
from swarna_prices.core.models import CurrencyCode, Instrument, Purity, Quote
from swarna_prices.providers.base import HttpProviderClient, start_of_day
from swarna_prices.providers.responses import GoldApiResponse

logger = logging.getLogger(__name__)


class GoldApiClient(HttpProviderClient):
    """Client for https://www.goldapi.io.

    Field mapping into Quote:
        open_price / high_price / low_price / prev_close_price → open / high / low / close
        ch / chp → change_abs / change_pct
        price_gram_24k / 22k / 18k → per_gram_by_purity (gold only)
    """

    name = "goldapi"
    supports_batch = False

    def _auth_headers(self) -> dict[str, str]:
        if not self._config.api_key:
            return {}
        return {"x-access-token": self._config.api_key}

    async def fetch_live(self, instrument: Instrument, currency: CurrencyCode) -> Quote:
        path = self._config.live_path.format(symbol=instrument.symbol, currency=currency)
        payload = await self._fetch(path)
        return self._translate(payload, instrument, currency)

    async def fetch_historical(
        self, instrument: Instrument, currency: CurrencyCode, day: date
    ) -> Quote:
        path = self._config.historical_path.format(
            symbol=instrument.symbol, currency=currency, date=day
        )
        payload = await self._fetch(path)
        return self._translate(payload, instrument, currency, day=day)

    async def _fetch(self, path: str) -> GoldApiResponse:
        data = await self._get_json(path)
        # goldapi reports some failures as 200 with an "error" key
        if "error" in data:
            raise ProviderError(
                f"goldapi error: {data['error']}",
                provider=self.name,
                context={"path": path},
            )
        return self._parse(data)  # type: ignore[return-value]

    def _translate(
        self,
        payload: GoldApiResponse,
        instrument: Instrument,
        currency: CurrencyCode,
        day: date | None = None,
    ) -> Quote:
        if payload.metal.upper() != instrument.symbol:
            raise ProviderError(
                f"goldapi answered for {payload.metal}, requested {instrument.symbol}",
                provider=self.name,
            )

        per_gram: dict[Purity, float] = {}
        if instrument == Instrument.GOLD:
            grams = {
                Purity.K24: payload.price_gram_24k,
                Purity.K22: payload.price_gram_22k,
                Purity.K18: payload.price_gram_18k,
            }
            per_gram = {p: v for p, v in grams.items() if v is not None}

        return self._quote(
            instrument=instrument,
            currency=payload.currency or currency,
            price=payload.price,
            open=payload.open_price,
            high=payload.high_price,
            low=payload.low_price,
            close=payload.prev_close_price,
            change_abs=payload.ch,
            change_pct=payload.chp,
            ask=payload.ask,
            bid=payload.bid,
            per_gram_by_purity=per_gram,
            observed_at=start_of_day(day) if day is not None else payload.timestamp,
            is_historical=day is not None,
        )
