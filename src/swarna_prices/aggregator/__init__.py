"""Provider selection, retry and store fallback."""

from swarna_prices.aggregator.retry import RetryAborted, retry_async
from swarna_prices.aggregator.service import (
    PriceAggregator,
    parse_currency,
    parse_day,
    parse_instrument,
)
from swarna_prices.aggregator.state import AggregatorState, AggregatorStateHolder

__all__ = [
    "PriceAggregator",
    "AggregatorState",
    "AggregatorStateHolder",
    "RetryAborted",
    "retry_async",
    "parse_instrument",
    "parse_currency",
    "parse_day",
]
