"""Scheduled cache refresh."""

from swarna_prices.sync.scheduler import SyncListener, SyncScheduler

__all__ = ["SyncScheduler", "SyncListener"]
