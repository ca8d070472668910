"""Raw upstream payload shapes, validated before translation into Quote.

Each provider's JSON is parsed into one variant of ``ProviderResponse``,
discriminated by ``kind``. Nothing outside ``swarna_prices.providers`` sees
these models.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class GoldApiResponse(BaseModel):
    """goldapi.io ``/{symbol}/{currency}[/{date}]`` body."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    kind: Literal["goldapi"] = "goldapi"
    metal: str
    currency: str
    price: float
    timestamp: int
    open_price: float | None = None
    high_price: float | None = None
    low_price: float | None = None
    prev_close_price: float | None = None
    ch: float | None = None
    chp: float | None = None
    ask: float | None = None
    bid: float | None = None
    price_gram_24k: float | None = None
    price_gram_22k: float | None = None
    price_gram_18k: float | None = None


class MetalPriceApiResponse(BaseModel):
    """metalpriceapi.com ``/latest`` or ``/{date}`` body.

    ``rates`` maps metal symbols to "ounces of metal per unit of base
    currency", so the ounce price is the reciprocal.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    kind: Literal["metalpriceapi"] = "metalpriceapi"
    success: bool
    base: str
    timestamp: int
    rates: dict[str, float]
    date: str | None = None
    historical: bool = False


ProviderResponse = Annotated[
    Union[GoldApiResponse, MetalPriceApiResponse],
    Field(discriminator="kind"),
]

PROVIDER_RESPONSE_ADAPTER: TypeAdapter[ProviderResponse] = TypeAdapter(ProviderResponse)


class MetalPriceApiTimeframeResponse(BaseModel):
    """metalpriceapi.com ``/timeframe`` body: ``rates`` keyed by ISO date, then symbol.

    Not part of ``ProviderResponse``; only the backfill path reads it.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    success: bool
    base: str
    start_date: str | None = None
    end_date: str | None = None
    rates: dict[str, dict[str, float]]
