"""swarna-prices: precious-metals price aggregation and live distribution."""

__version__ = "0.1.0"
