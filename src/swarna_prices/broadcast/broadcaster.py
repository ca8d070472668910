"""Live quote fan-out to WebSocket subscribers.

Connection lifecycle::

    connect() ──> CONNECTED ──subscribe──> SUBSCRIBED ──unsubscribe all──> CONNECTED
        │                                                                      │
        └───────────── disconnect / idle past heartbeat / send failure ───> CLOSED

A new connection gets one snapshot ``priceUpdate`` (full quote map, no
changes). Until its first subscribe or unsubscribe frame it follows every
instrument. After that only SUBSCRIBED connections receive updates, and only
when an instrument they follow moved past the change threshold.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from swarna_prices.aggregator.service import PriceAggregator
from swarna_prices.core.config import BroadcastConfig
from swarna_prices.core.exceptions import SwarnaPricesError
from swarna_prices.core.models import Instrument, Quote, SyncRun
from swarna_prices.storage.store import Clock, utc_now

logger = logging.getLogger(__name__)

CLOSE_GOING_AWAY = 1001
CLOSE_TRY_AGAIN_LATER = 1013


class Connection(Protocol):
    """What the broadcaster needs from a socket. FastAPI's WebSocket fits."""

    async def send_json(self, data: Any) -> None: ...
    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class SubscriptionState(StrEnum):
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


@dataclass(eq=False)
class Subscription:
    """Per-connection record. Owned by the Broadcaster."""

    id: str
    connection: Connection
    last_seen: float
    instruments: set[Instrument] = field(default_factory=set)
    state: SubscriptionState = SubscriptionState.CONNECTED
    # no subscribe/unsubscribe yet: receives changes for every instrument
    follows_all: bool = True
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class Broadcaster:
    """Subscriber registry, change detection and fan-out."""

    def __init__(
        self,
        config: BroadcastConfig,
        aggregator: PriceAggregator | None = None,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config
        self._aggregator = aggregator
        self._monotonic = monotonic
        self._clock = clock
        self._subs: dict[str, Subscription] = {}
        self._latest: dict[Instrument, Quote] = {}
        self._baseline: dict[Instrument, float] = {}
        self._tasks: list[asyncio.Task] = []
        self._messages_sent = 0

    # --- Registry ---

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subs.values())

    @property
    def connection_count(self) -> int:
        return len(self._subs)

    async def connect(self, connection: Connection) -> Subscription | None:
        """Register a connection and send it the current snapshot.

        Returns None (after closing with 1013) when the connection limit is reached.
        """
        if len(self._subs) >= self._config.max_connections:
            logger.warning(
                "Rejecting connection: %d/%d connections open",
                len(self._subs), self._config.max_connections,
            )
            await connection.close(code=CLOSE_TRY_AGAIN_LATER, reason="Too many connections")
            return None

        sub = Subscription(
            id=uuid.uuid4().hex,
            connection=connection,
            last_seen=self._monotonic(),
        )
        # hold the send lock until the snapshot is out so no update overtakes it
        async with sub.send_lock:
            self._subs[sub.id] = sub
            logger.info("Client %s connected (%d open)", sub.id, len(self._subs))
            snapshot = await self._snapshot()
            ok = await self._send_locked(sub, self._price_update(snapshot, []))
        if not ok:
            return None
        return sub

    async def disconnect(self, sub: Subscription) -> None:
        if self._subs.pop(sub.id, None) is not None:
            logger.info("Client %s disconnected (%d open)", sub.id, len(self._subs))
        sub.state = SubscriptionState.CLOSED

    async def _close(self, sub: Subscription, code: int, reason: str) -> None:
        await self.disconnect(sub)
        try:
            await sub.connection.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Close of %s failed: %s", sub.id, e)

    async def _snapshot(self) -> dict[Instrument, Quote]:
        if self._latest or self._aggregator is None:
            return dict(self._latest)
        try:
            quotes = await self._aggregator.get_all_quotes(self._config.currency)
        except SwarnaPricesError as e:
            logger.warning("No snapshot available for new client: %s", e)
            return {}
        self._remember(quotes.values())
        return dict(self._latest)

    # --- Client Messages ---

    async def handle_message(self, sub: Subscription, text: str) -> None:
        """Apply one client frame. Never closes the connection."""
        sub.last_seen = self._monotonic()
        try:
            message = json.loads(text)
        except ValueError:
            logger.warning("Client %s sent malformed JSON; ignored", sub.id)
            return
        if not isinstance(message, dict):
            logger.warning("Client %s sent a non-object frame; ignored", sub.id)
            return

        kind = message.get("type")
        if kind == "ping":
            await self._send(sub, {"type": "pong", "timestamp": self._now_iso()})
        elif kind == "subscribe":
            await self._subscribe(sub, message)
        elif kind == "unsubscribe":
            await self._unsubscribe(sub, message)
        else:
            logger.info("Client %s sent unknown message type %r; ignored", sub.id, kind)

    async def _subscribe(self, sub: Subscription, message: dict[str, Any]) -> None:
        names = self._requested_names(message)
        if not names:
            valid, unknown = set(Instrument), []
        else:
            valid, unknown = self._partition(names)
        sub.follows_all = False
        sub.instruments |= valid
        if sub.instruments:
            sub.state = SubscriptionState.SUBSCRIBED
        logger.debug("Client %s subscribed to %s", sub.id, sorted(sub.instruments))
        if unknown:
            await self._send_unknown(sub, unknown)

    async def _unsubscribe(self, sub: Subscription, message: dict[str, Any]) -> None:
        names = self._requested_names(message)
        valid, unknown = self._partition(names)
        if sub.follows_all:
            sub.follows_all = False
            sub.instruments = set(Instrument)
        sub.instruments -= valid
        if sub.instruments:
            sub.state = SubscriptionState.SUBSCRIBED
        elif sub.state == SubscriptionState.SUBSCRIBED:
            sub.state = SubscriptionState.CONNECTED
        if unknown:
            await self._send_unknown(sub, unknown)

    @staticmethod
    def _requested_names(message: dict[str, Any]) -> list[str]:
        names = message.get("instruments", message.get("metals")) or []
        if isinstance(names, str):
            names = [names]
        if not isinstance(names, list):
            return []
        return [str(n) for n in names]

    @staticmethod
    def _partition(names: list[str]) -> tuple[set[Instrument], list[str]]:
        valid: set[Instrument] = set()
        unknown: list[str] = []
        for name in names:
            try:
                valid.add(Instrument.parse(name))
            except ValueError:
                unknown.append(name)
        return valid, unknown

    async def _send_unknown(self, sub: Subscription, unknown: list[str]) -> None:
        await self._send(
            sub,
            {
                "type": "error",
                "message": f"Unknown instrument(s): {', '.join(unknown)}",
                "instruments": unknown,
                "timestamp": self._now_iso(),
            },
        )

    # --- Fan-out ---

    async def publish(
        self, quotes: Mapping[Instrument, Quote] | Iterable[Quote]
    ) -> list[dict[str, Any]]:
        """Diff ``quotes`` against the last broadcast prices and fan out.

        Quotes in other currencies than the broadcast currency are ignored.
        Returns the detected changes.
        """
        await self.reap_idle()

        incoming = list(quotes.values()) if isinstance(quotes, Mapping) else list(quotes)
        incoming = [q for q in incoming if q.currency == self._config.currency]
        if not incoming:
            return []

        changes = self._detect_changes(incoming)
        self._remember(incoming)
        if not changes:
            return []

        data = dict(self._latest)
        targets = []
        for sub in list(self._subs.values()):
            if sub.follows_all:
                relevant = changes
            elif sub.state == SubscriptionState.SUBSCRIBED:
                relevant = [c for c in changes if Instrument(c["instrument"]) in sub.instruments]
            else:
                continue
            if relevant:
                targets.append(self._send(sub, self._price_update(data, relevant)))
        if targets:
            await asyncio.gather(*targets)
        logger.info(
            "Published %d change(s) to %d subscriber(s)", len(changes), len(targets)
        )
        return changes

    def _detect_changes(self, quotes: list[Quote]) -> list[dict[str, Any]]:
        threshold = self._config.change_threshold_percent
        changes = []
        for quote in quotes:
            old = self._baseline.get(quote.instrument)
            if old is None:
                self._baseline[quote.instrument] = quote.price
                continue
            change_pct = (quote.price - old) / old * 100
            if abs(change_pct) > threshold:
                changes.append(
                    {
                        "instrument": str(quote.instrument),
                        "oldPrice": old,
                        "newPrice": quote.price,
                        "changePercent": round(change_pct, 4),
                        "direction": "up" if change_pct > 0 else "down",
                    }
                )
                self._baseline[quote.instrument] = quote.price
        return changes

    def _remember(self, quotes: Iterable[Quote]) -> None:
        for quote in quotes:
            self._latest[quote.instrument] = quote
            self._baseline.setdefault(quote.instrument, quote.price)

    def _price_update(
        self, data: dict[Instrument, Quote], changes: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return {
            "type": "priceUpdate",
            "data": {str(i): q.to_wire() for i, q in data.items()},
            "changes": changes,
            "timestamp": self._now_iso(),
        }

    async def _send(self, sub: Subscription, payload: dict[str, Any]) -> bool:
        async with sub.send_lock:
            return await self._send_locked(sub, payload)

    async def _send_locked(self, sub: Subscription, payload: dict[str, Any]) -> bool:
        if sub.state == SubscriptionState.CLOSED:
            return False
        try:
            await sub.connection.send_json(payload)
        except Exception as e:
            logger.warning("Send to %s failed, dropping subscriber: %s", sub.id, e)
            await self.disconnect(sub)
            return False
        self._messages_sent += 1
        return True

    async def on_sync(self, run: SyncRun, quotes: list[Quote]) -> None:
        """SyncScheduler listener."""
        if quotes:
            await self.publish(quotes)

    # --- Heartbeat ---

    async def reap_idle(self) -> int:
        """Close connections silent for longer than the heartbeat timeout."""
        cutoff = self._monotonic() - self._config.heartbeat_timeout_seconds
        idle = [s for s in self._subs.values() if s.last_seen < cutoff]
        for sub in idle:
            logger.info("Client %s idle past heartbeat timeout; closing", sub.id)
            await self._close(sub, CLOSE_GOING_AWAY, "Heartbeat timeout")
        return len(idle)

    # --- Background Tasks ---

    async def start(self) -> None:
        if not self._config.enabled:
            logger.info("Broadcaster disabled")
            return
        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="broadcast-heartbeat"))
        if self._config.interval_seconds > 0 and self._aggregator is not None:
            self._tasks.append(asyncio.create_task(self._refresh_loop(), name="broadcast-refresh"))
        logger.info(
            "Broadcaster started: %s every %ss, threshold %.2f%%",
            self._config.currency, self._config.interval_seconds,
            self._config.change_threshold_percent,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        for sub in list(self._subs.values()):
            await self._close(sub, CLOSE_GOING_AWAY, "Server shutting down")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_check_seconds)
            await self.reap_idle()

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.interval_seconds)
            await self.refresh()

    async def refresh(self) -> list[dict[str, Any]]:
        """Pull current quotes from the aggregator and publish them."""
        if self._aggregator is None:
            return []
        try:
            quotes = await self._aggregator.get_all_quotes(self._config.currency)
        except SwarnaPricesError as e:
            logger.warning("Broadcast refresh failed: %s", e)
            return []
        return await self.publish(quotes)

    def stats(self) -> dict[str, Any]:
        subscribed = sum(
            1 for s in self._subs.values() if s.state == SubscriptionState.SUBSCRIBED
        )
        return {
            "enabled": self._config.enabled,
            "connections": len(self._subs),
            "subscribed": subscribed,
            "maxConnections": self._config.max_connections,
            "messagesSent": self._messages_sent,
            "currency": self._config.currency,
        }

    def _now_iso(self) -> str:
        return self._clock().isoformat()
