"""Durable quote cache and audit logs."""

from swarna_prices.storage.store import (
    QuoteStore,
    SqliteQuoteStore,
    create_store,
    utc_now,
)

__all__ = ["QuoteStore", "SqliteQuoteStore", "create_store", "utc_now"]
