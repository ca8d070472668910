"""Live WebSocket fan-out."""

from swarna_prices.broadcast.broadcaster import (
    Broadcaster,
    Connection,
    Subscription,
    SubscriptionState,
)

__all__ = ["Broadcaster", "Connection", "Subscription", "SubscriptionState"]
