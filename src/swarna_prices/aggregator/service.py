"""PriceAggregator: provider selection, retry and the primary → fallback → store chain."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from typing import Any, TypeVar

from swarna_prices.aggregator.retry import RetryAborted, Sleep, retry_async
from swarna_prices.aggregator.state import AggregatorState, AggregatorStateHolder
from swarna_prices.core.config import AggregatorConfig
from swarna_prices.core.exceptions import (
    AllProvidersFailedError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    StorageError,
    ValidationError,
)
from swarna_prices.core.models import (
    STORE_ONLY,
    ApiCallRecord,
    BackfillResult,
    BackfillWindow,
    CurrencyCode,
    Instrument,
    OperatingMode,
    Quote,
    RetryPolicy,
    normalize_currency,
)
from swarna_prices.providers.base import ProviderClient
from swarna_prices.storage.store import Clock, QuoteStore, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


def parse_instrument(value: str | Instrument) -> Instrument:
    try:
        return Instrument.parse(value)
    except ValueError as e:
        raise ValidationError(
            f"Unknown instrument: {value!r}. Expected one of "
            f"{[str(i) for i in Instrument]} or their symbols",
            context={"field": "instrument", "value": str(value)},
        ) from e


def parse_currency(value: str) -> CurrencyCode:
    try:
        return normalize_currency(value)
    except ValueError as e:
        raise ValidationError(
            str(e), context={"field": "currency", "value": str(value)}
        ) from e


def parse_day(value: str | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as e:
        raise ValidationError(
            f"date must be YYYY-MM-DD, got {value!r}",
            context={"field": "date", "value": str(value)},
        ) from e


class PriceAggregator:
    """Serves quotes from the configured providers, falling back to the store.

    Resolution order for a live quote:
        1. store-only mode → store, no network
        2. fresh cached quote (age ≤ cache TTL) → store
        3. primary provider with bounded retry → persist → return
        4. fallback provider, same policy → persist → return
        5. store regardless of age, else AllProvidersFailedError

    Provider selection lives in an AggregatorStateHolder and can be switched
    at runtime with switch_provider(). Every provider call chain is written
    to the store's API call log.
    """

    def __init__(
        self,
        providers: dict[str, ProviderClient],
        store: QuoteStore,
        config: AggregatorConfig,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utc_now,
    ) -> None:
        self._providers = dict(providers)
        self._store = store
        self._config = config
        self._retry = config.retry_policy()
        self._ttl = timedelta(seconds=config.cache_ttl_seconds)
        self._sleep = sleep
        self._clock = clock
        self._holder = AggregatorStateHolder(self._initial_state(config))

    def _initial_state(self, config: AggregatorConfig) -> AggregatorState:
        if config.primary == STORE_ONLY:
            return AggregatorState(primary=None, mode=OperatingMode.STORE_ONLY)
        if config.primary not in self._providers:
            raise ConfigurationError(
                f"Primary provider {config.primary!r} has no client",
                context={"provider": config.primary},
            )
        return AggregatorState(
            primary=config.primary,
            fallback=self._default_fallback(config.primary),
        )

    def _default_fallback(self, primary: str) -> str | None:
        configured = self._config.fallback
        if configured is not None and configured != primary and configured in self._providers:
            return configured
        for name in self._providers:
            if name != primary:
                return name
        return None

    # --- Introspection ---

    @property
    def state(self) -> AggregatorState:
        return self._holder.get()

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    @property
    def default_currency(self) -> CurrencyCode:
        return self._config.default_currency

    @property
    def store(self) -> QuoteStore:
        return self._store

    def _network_allowed(self) -> bool:
        return self._holder.get().network_enabled

    # --- Live Quotes ---

    async def get_quote(
        self, instrument: str | Instrument, currency: str | None = None
    ) -> Quote:
        """Latest quote for one pair, following the fallback chain.

        Raises:
            ValidationError: Bad instrument or currency; no I/O happened.
            NotFoundError: Store-only mode and nothing stored.
            AllProvidersFailedError: Every provider failed and the store missed.
        """
        inst = parse_instrument(instrument)
        cur = parse_currency(currency or self.default_currency)
        state = self.state

        if not state.network_enabled:
            return await self._from_store(inst, cur)

        if await self._store.is_fresh(inst, cur, self._ttl):
            cached = await self._store.get(inst, cur)
            if cached is not None:
                logger.debug("Serving fresh cached %s/%s", inst, cur)
                return cached

        errors: list[ProviderError] = []
        for name in state.chain():
            try:
                quote, _ = await self._call_provider(
                    name,
                    "live",
                    lambda p: p.fetch_live(inst, cur),
                    {"instrument": str(inst), "currency": cur},
                    guard=self._network_allowed,
                )
            except ProviderError as e:
                logger.warning("Provider %s failed for %s/%s: %s", name, inst, cur, e)
                errors.append(e)
                continue
            except RetryAborted:
                logger.info("Network calls switched off mid-request; serving %s/%s from store", inst, cur)
                break
            await self._store.put(quote)
            return quote

        stored = await self._store.get(inst, cur)
        if stored is not None:
            logger.warning(
                "All providers failed for %s/%s; serving stored quote from %d",
                inst, cur, stored.observed_at,
            )
            return stored
        raise AllProvidersFailedError(
            f"No provider could supply {inst}/{cur} and nothing is stored",
            errors=errors,
            context={"instrument": str(inst), "currency": cur},
        )

    async def get_all_quotes(self, currency: str | None = None) -> dict[Instrument, Quote]:
        """Quotes for every instrument, in Instrument order.

        Instruments with no data anywhere are omitted.

        Raises:
            NotFoundError: No instrument could be served at all.
        """
        cur = parse_currency(currency or self.default_currency)
        state = self.state

        if not state.network_enabled:
            stored = await self._store.get_all_latest(cur)
            if not stored:
                raise NotFoundError(
                    f"No stored quotes for currency {cur}",
                    context={"currency": cur},
                )
            return self._ordered(stored)

        if await self._store.has_recent_data(list(Instrument), cur, self._ttl):
            return self._ordered(await self._store.get_all_latest(cur))

        quotes: dict[Instrument, Quote] = {}
        primary = self._providers[state.primary] if state.primary else None
        if primary is not None and primary.supports_batch:
            try:
                quotes, _ = await self._call_provider(
                    state.primary,
                    "live_all",
                    lambda p: p.fetch_all_live(cur),
                    {"currency": cur},
                    guard=self._network_allowed,
                )
            except ProviderError as e:
                logger.warning(
                    "Batch fetch from %s failed for %s, falling back to per-instrument: %s",
                    state.primary, cur, e,
                )
            except RetryAborted:
                stored = await self._store.get_all_latest(cur)
                if not stored:
                    raise NotFoundError(
                        f"No stored quotes for currency {cur}",
                        context={"currency": cur},
                    ) from None
                return self._ordered(stored)
            for quote in quotes.values():
                await self._store.put(quote)

        missing = [i for i in Instrument if i not in quotes]
        if missing:
            fetched = await asyncio.gather(
                *(self._quote_or_none(i, cur) for i in missing)
            )
            for instrument, quote in zip(missing, fetched):
                if quote is not None:
                    quotes[instrument] = quote

        if not quotes:
            raise NotFoundError(
                f"No quotes available for currency {cur}",
                context={"currency": cur},
            )
        return self._ordered(quotes)

    async def _quote_or_none(self, instrument: Instrument, currency: CurrencyCode) -> Quote | None:
        try:
            return await self.get_quote(instrument, currency)
        except NotFoundError as e:
            logger.warning("No data for %s/%s: %s", instrument, currency, e)
            return None

    @staticmethod
    def _ordered(quotes: dict[Instrument, Quote]) -> dict[Instrument, Quote]:
        return {i: quotes[i] for i in Instrument if i in quotes}

    async def _from_store(self, instrument: Instrument, currency: CurrencyCode) -> Quote:
        quote = await self._store.get(instrument, currency)
        if quote is None:
            raise NotFoundError(
                f"No stored quote for {instrument}/{currency}",
                context={"instrument": str(instrument), "currency": currency},
            )
        return quote

    # --- Historical Quotes ---

    async def get_historical(
        self,
        instrument: str | Instrument,
        currency: str | None,
        day: str | date,
    ) -> Quote:
        """Quote for a past UTC date: store first, then providers, persisted as historical.

        Raises:
            ValidationError: Bad input or a future date.
            NotFoundError: Store-only mode and nothing stored for that date.
            AllProvidersFailedError: Providers failed and the store has nothing.
        """
        inst = parse_instrument(instrument)
        cur = parse_currency(currency or self.default_currency)
        when = parse_day(day)
        today = self._clock().date()
        if when > today:
            raise ValidationError(
                f"date {when.isoformat()} is in the future",
                context={"field": "date", "value": when.isoformat()},
            )
        context = {"instrument": str(inst), "currency": cur, "date": when.isoformat()}

        stored = await self._store.get_historical(inst, cur, when)
        state = self.state
        if not state.network_enabled:
            if stored is None:
                raise NotFoundError(
                    f"No stored quote for {inst}/{cur} on {when.isoformat()}",
                    context=context,
                )
            return stored
        if stored is not None and stored.is_historical:
            return stored

        errors: list[ProviderError] = []
        for name in state.chain():
            try:
                quote, _ = await self._call_provider(
                    name,
                    "historical",
                    lambda p: p.fetch_historical(inst, cur, when),
                    context,
                    guard=self._network_allowed,
                )
            except ProviderError as e:
                logger.warning("Provider %s failed for historical %s: %s", name, context, e)
                errors.append(e)
                continue
            except RetryAborted:
                break
            await self._store.put(quote)
            return quote

        if stored is not None:
            return stored
        raise AllProvidersFailedError(
            f"No provider could supply {inst}/{cur} for {when.isoformat()}",
            errors=errors,
            context=context,
        )

    # --- Forced Fetch (sync path) ---

    async def fetch_from(
        self,
        provider_name: str,
        instrument: str | Instrument,
        currency: str,
        retry: RetryPolicy | None = None,
    ) -> tuple[Quote, int]:
        """Fetch through a named provider regardless of the serving mode, then persist.

        The serving state is never read or changed.

        Returns:
            (quote, attempts used)

        Raises:
            ConfigurationError: Unknown provider.
            ProviderError: Retries exhausted; ``context["attempts"]`` is set.
        """
        if provider_name not in self._providers:
            raise ConfigurationError(
                f"Unsupported provider: {provider_name!r}",
                context={"provider": provider_name},
            )
        inst = parse_instrument(instrument)
        cur = parse_currency(currency)
        quote, attempts = await self._call_provider(
            provider_name,
            "sync",
            lambda p: p.fetch_live(inst, cur),
            {"instrument": str(inst), "currency": cur},
            policy=retry or self._retry,
        )
        await self._store.put(quote)
        return quote, attempts

    # --- Historical Backfill ---

    async def backfill(
        self,
        start: str | date,
        end: str | date | None = None,
        currency: str | None = None,
        provider: str | None = None,
    ) -> BackfillResult:
        """Load every instrument's daily historical quote for ``start..end`` into the store.

        Goes through a timeframe-capable provider (the serving primary when it
        is one) in windows of ``backfill_window_days``, so a year costs one
        upstream call. Like ``fetch_from`` it ignores store-only mode. A failed
        window is recorded and the remaining windows still run.

        Raises:
            ValidationError: Bad dates, ``start`` after ``end``, or ``end`` in the future.
            ConfigurationError: Unknown provider, or none that supports timeframes.
        """
        first = parse_day(start)
        today = self._clock().date()
        last = parse_day(end) if end is not None else today
        cur = parse_currency(currency or self.default_currency)
        if last > today:
            raise ValidationError(
                f"end date {last.isoformat()} is in the future",
                context={"field": "date", "value": last.isoformat()},
            )
        if first > last:
            raise ValidationError(
                f"start date {first.isoformat()} is after end date {last.isoformat()}",
                context={"field": "date", "value": first.isoformat()},
            )
        name = self._timeframe_provider(provider)

        started_at = time.monotonic()
        step = timedelta(days=self._config.backfill_window_days)
        windows: list[BackfillWindow] = []
        window_start = first
        while window_start <= last:
            window_end = min(window_start + step - timedelta(days=1), last)
            windows.append(await self._backfill_window(name, cur, window_start, window_end))
            window_start = window_end + timedelta(days=1)

        result = BackfillResult(
            provider=name,
            currency=cur,
            start_date=first,
            end_date=last,
            duration_seconds=time.monotonic() - started_at,
            windows=windows,
        )
        logger.info(
            "Backfill %s %s..%s via %s: %d quotes stored, %d/%d window(s) failed",
            cur, first, last, name, result.quotes_stored, result.failure_count, len(windows),
        )
        return result

    def _timeframe_provider(self, requested: str | None) -> str:
        if requested is not None:
            if requested not in self._providers:
                raise ConfigurationError(
                    f"Unsupported provider: {requested!r}",
                    context={"provider": requested},
                )
            if not self._providers[requested].supports_timeframe:
                raise ConfigurationError(
                    f"{requested} does not support timeframe backfill",
                    context={"provider": requested},
                )
            return requested
        primary = self.state.primary
        if primary is not None and self._providers[primary].supports_timeframe:
            return primary
        for name, client in self._providers.items():
            if client.supports_timeframe:
                return name
        raise ConfigurationError(
            "No configured provider supports timeframe backfill",
            context={"provider": None},
        )

    async def _backfill_window(
        self, name: str, currency: CurrencyCode, start: date, end: date
    ) -> BackfillWindow:
        try:
            quotes, attempts = await self._call_provider(
                name,
                "timeframe",
                lambda p: p.fetch_timeframe(currency, start, end),
                {"currency": currency, "start_date": start.isoformat(), "end_date": end.isoformat()},
            )
            stored = await self._store.put_many(quotes)
        except (ProviderError, StorageError) as e:
            logger.warning("Backfill window %s..%s/%s failed: %s", start, end, currency, e)
            return BackfillWindow(
                start_date=start,
                end_date=end,
                success=False,
                attempts=e.context.get("attempts", 1),
                error=str(e),
            )
        return BackfillWindow(
            start_date=start, end_date=end, success=True, attempts=attempts, quotes_stored=stored
        )

    # --- Provider Selection ---

    def switch_provider(
        self, name: str, fallback: str | None = None
    ) -> tuple[AggregatorState, AggregatorState]:
        """Atomically change which providers serve reads.

        ``store-only`` turns network calls off. A configured provider becomes
        primary with the configured fallback (or the first other provider).

        Returns:
            (previous state, new state)

        Raises:
            ConfigurationError: Unknown provider or fallback; state is unchanged.
        """
        target = name.strip().lower()
        if target == STORE_ONLY:
            previous, current = self._holder.swap(
                lambda s: s.model_copy(update={"mode": OperatingMode.STORE_ONLY})
            )
        else:
            if target not in self._providers:
                raise ConfigurationError(
                    f"Unsupported provider: {name!r}. "
                    f"Choose one of {self.provider_names + [STORE_ONLY]}",
                    context={"provider": name},
                )
            if fallback is not None:
                fallback = fallback.strip().lower()
                if fallback not in self._providers or fallback == target:
                    raise ConfigurationError(
                        f"Invalid fallback provider: {fallback!r}",
                        context={"provider": fallback},
                    )
            new_fallback = fallback or self._default_fallback(target)
            previous, current = self._holder.swap(
                lambda s: AggregatorState(
                    primary=target,
                    fallback=new_fallback,
                    mode=OperatingMode.LIVE,
                    generation=s.generation,
                )
            )
        logger.info(
            "Provider switched: %s -> %s (fallback: %s)",
            previous.active_provider, current.active_provider, current.fallback,
        )
        return previous, current

    async def check_provider(self, name: str | None = None) -> dict[str, Any]:
        """Health check: one live gold quote from ``name`` (default: primary), no retry."""
        target = name or self.state.primary
        if target is None or target not in self._providers:
            raise ConfigurationError(
                f"Unsupported provider: {target!r}",
                context={"provider": target},
            )
        started = time.monotonic()
        checked_at = self._clock()
        error: str | None = None
        try:
            await self._call_provider(
                target,
                "health",
                lambda p: p.fetch_live(Instrument.GOLD, self.default_currency),
                {"currency": self.default_currency},
                policy=RetryPolicy(attempts=1),
            )
        except ProviderError as e:
            error = str(e)
        return {
            "provider": target,
            "status": "healthy" if error is None else "unhealthy",
            "latency_ms": int((time.monotonic() - started) * 1000),
            "error": error,
            "checked_at": checked_at.isoformat(),
        }

    # --- Provider Calls ---

    async def _call_provider(
        self,
        name: str,
        operation: str,
        call: Callable[[ProviderClient], Awaitable[T]],
        params: dict[str, Any],
        *,
        policy: RetryPolicy | None = None,
        guard: Callable[[], bool] | None = None,
    ) -> tuple[T, int]:
        provider = self._providers[name]
        started = time.monotonic()
        try:
            result, attempts = await retry_async(
                lambda: call(provider),
                policy or self._retry,
                sleep=self._sleep,
                guard=guard,
                description=f"{name}.{operation}",
            )
        except ProviderError as e:
            await self._log_call(
                name, operation, params, started,
                attempts=e.context.get("attempts", 1), error=str(e),
            )
            raise
        except RetryAborted as e:
            if e.attempts:
                await self._log_call(
                    name, operation, params, started,
                    attempts=e.attempts, error="aborted: network calls switched off",
                )
            raise
        await self._log_call(name, operation, params, started, attempts=attempts)
        return result, attempts

    async def _log_call(
        self,
        name: str,
        operation: str,
        params: dict[str, Any],
        started: float,
        *,
        attempts: int,
        error: str | None = None,
    ) -> None:
        record = ApiCallRecord(
            provider=name,
            operation=operation,
            params=params,
            success=error is None,
            duration_ms=int((time.monotonic() - started) * 1000),
            attempts=attempts,
            error=error,
            called_at=self._clock(),
        )
        try:
            await self._store.log_api_call(record)
        except StorageError as e:
            logger.error("Could not write api call log for %s.%s: %s", name, operation, e)

    async def close(self) -> None:
        """Close every provider client."""
        for provider in self._providers.values():
            await provider.close()
