"""Cron-scheduled forced refresh of the quote store."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from swarna_prices.aggregator.service import PriceAggregator
from swarna_prices.core.config import SyncConfig
from swarna_prices.core.exceptions import (
    ConfigurationError,
    StorageError,
    SwarnaPricesError,
)
from swarna_prices.core.models import (
    Instrument,
    InstrumentSyncResult,
    Quote,
    SyncRun,
    SyncTrigger,
)
from swarna_prices.storage.store import Clock, QuoteStore, utc_now

logger = logging.getLogger(__name__)

SyncListener = Callable[[SyncRun, list[Quote]], Awaitable[None]]

_MIN_SUCCESS_RATE = 0.5


class SyncScheduler:
    """Refreshes every instrument for each configured currency on a cron schedule.

    Runs go through ``PriceAggregator.fetch_from`` with the designated sync
    provider, so the serving provider selection is never touched. Runs are
    serialised; one instrument failing never aborts a run. Each run is
    appended to the store's ``sync_runs`` log and handed to listeners.
    """

    def __init__(
        self,
        aggregator: PriceAggregator,
        store: QuoteStore,
        config: SyncConfig,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._aggregator = aggregator
        self._store = store
        self._config = config
        self._clock = clock
        self._schedule = config.schedule
        self._tz = ZoneInfo(config.timezone)
        self._retry = config.retry_policy()
        self._lock = asyncio.Lock()
        self._listeners: list[SyncListener] = []
        self._task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._schedule_changed = asyncio.Event()

        self._last_run: SyncRun | None = None
        self._total_runs = 0
        self._clean_runs = 0
        self._items_ok = 0
        self._items_failed = 0
        self._last_success_at: datetime | None = None

    # --- Lifecycle ---

    def add_listener(self, listener: SyncListener) -> None:
        self._listeners.append(listener)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def schedule(self) -> str:
        return self._schedule

    async def start(self) -> None:
        """Start the scheduling loop. A no-op when sync is disabled."""
        if not self._config.enabled:
            logger.info("Scheduled sync disabled")
            return
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="sync-scheduler")
        logger.info(
            "Sync scheduler started: %r (%s) via %s, next run %s",
            self._schedule, self._config.timezone, self._config.provider,
            self.get_next_run_time(),
        )

    async def stop(self) -> None:
        tasks = list(self._pending)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except SwarnaPricesError as e:
                logger.error("Sync task %s had failed: %s", task.get_name(), e)
        self._task = None
        self._pending.clear()
        logger.info("Sync scheduler stopped")

    async def _loop(self) -> None:
        if self._config.run_on_startup:
            try:
                if not await self._has_recent_data():
                    logger.info("No quotes newer than %dh; running startup sync",
                                self._config.freshness_horizon_hours)
                    await self.run_once(SyncTrigger.STARTUP)
            except SwarnaPricesError:
                logger.exception("Startup sync failed; continuing on schedule")

        while True:
            next_run = self.get_next_run_time()
            delay = max((next_run - self._clock()).total_seconds(), 0.0)
            self._schedule_changed.clear()
            try:
                await asyncio.wait_for(self._schedule_changed.wait(), timeout=delay)
            except TimeoutError:
                try:
                    await self.run_once(SyncTrigger.SCHEDULED)
                except SwarnaPricesError:
                    logger.exception("Scheduled sync failed; waiting for next tick")
            # schedule changed: recompute the next tick

    async def _has_recent_data(self) -> bool:
        horizon = timedelta(hours=self._config.freshness_horizon_hours)
        for currency in self._config.currencies:
            if not await self._store.has_recent_data(list(Instrument), currency, horizon):
                return False
        return True

    # --- Runs ---

    async def run_once(
        self,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        run_id: str | None = None,
    ) -> SyncRun:
        """Fetch every instrument × currency through the sync provider.

        Waits for any run already in progress.
        """
        async with self._lock:
            run_id = run_id or uuid.uuid4().hex
            started_at = self._clock()
            started = time.monotonic()
            results: list[InstrumentSyncResult] = []
            refreshed: list[Quote] = []
            provider = self._config.provider
            logger.info("Sync run %s (%s) started via %s", run_id, trigger, provider)

            for currency in self._config.currencies:
                for instrument in Instrument:
                    try:
                        quote, attempts = await self._aggregator.fetch_from(
                            provider, instrument, currency, retry=self._retry
                        )
                    except SwarnaPricesError as e:
                        attempts = e.context.get("attempts", self._retry.attempts)
                        logger.warning(
                            "Sync %s: %s/%s failed after %d attempt(s): %s",
                            run_id, instrument, currency, attempts, e,
                        )
                        results.append(
                            InstrumentSyncResult(
                                instrument=instrument,
                                currency=currency,
                                success=False,
                                attempts=attempts,
                                error=str(e),
                            )
                        )
                        continue
                    refreshed.append(quote)
                    results.append(
                        InstrumentSyncResult(
                            instrument=instrument,
                            currency=currency,
                            success=True,
                            attempts=attempts,
                            price=quote.price,
                        )
                    )

            run = SyncRun(
                run_id=run_id,
                trigger=trigger,
                provider=provider,
                started_at=started_at,
                finished_at=self._clock(),
                duration_seconds=time.monotonic() - started,
                results=results,
            )
            self._record_stats(run)
            try:
                await self._store.record_sync_run(run)
            except StorageError as e:
                logger.error("Could not record sync run %s: %s", run_id, e)

        logger.info(
            "Sync run %s finished: %d ok, %d failed in %.2fs",
            run_id, run.success_count, run.failure_count, run.duration_seconds,
        )
        await self._notify(run, refreshed)
        return run

    def trigger_now(self) -> str:
        """Start a manual run in the background and return its run id at once."""
        run_id = uuid.uuid4().hex
        task = asyncio.create_task(
            self.run_once(SyncTrigger.MANUAL, run_id=run_id),
            name=f"sync-{run_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._on_triggered_done)
        logger.info("Manual sync %s queued", run_id)
        return run_id

    def _on_triggered_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Manual sync task failed: %s", task.exception())

    def _record_stats(self, run: SyncRun) -> None:
        self._last_run = run
        self._total_runs += 1
        self._items_ok += run.success_count
        self._items_failed += run.failure_count
        if run.failure_count == 0:
            self._clean_runs += 1
        if run.success_count > 0:
            self._last_success_at = run.finished_at

    async def _notify(self, run: SyncRun, quotes: list[Quote]) -> None:
        for listener in self._listeners:
            try:
                await listener(run, quotes)
            except Exception:
                logger.exception("Sync listener %r failed for run %s", listener, run.run_id)

    # --- Schedule ---

    def get_next_run_time(self) -> datetime:
        """Next cron tick after now, in UTC."""
        base = self._clock().astimezone(self._tz)
        return croniter(self._schedule, base).get_next(datetime).astimezone(UTC)

    def _interval_seconds(self) -> float:
        base = self._clock().astimezone(self._tz)
        it = croniter(self._schedule, base)
        first = it.get_next(datetime)
        second = it.get_next(datetime)
        return (second - first).total_seconds()

    def update_schedule(self, expression: str) -> datetime:
        """Replace the cron expression; the loop picks it up immediately.

        Raises:
            ConfigurationError: Not a valid cron expression.
        """
        if not croniter.is_valid(expression):
            raise ConfigurationError(
                f"Invalid cron expression: {expression!r}",
                context={"field": "sync.schedule", "value": expression},
            )
        self._schedule = expression
        self._schedule_changed.set()
        logger.info("Sync schedule updated to %r", expression)
        return self.get_next_run_time()

    # --- Reporting ---

    async def last_run(self) -> SyncRun | None:
        if self._last_run is not None:
            return self._last_run
        return await self._store.latest_sync_run()

    async def status(self) -> dict[str, Any]:
        last = await self.last_run()
        return {
            "enabled": self._config.enabled,
            "running": self.is_running,
            "inProgress": self._lock.locked(),
            "schedule": self._schedule,
            "timezone": self._config.timezone,
            "provider": self._config.provider,
            "currencies": list(self._config.currencies),
            "nextRunAt": (
                self.get_next_run_time().isoformat() if self._config.enabled else None
            ),
            "lastRun": last.summary() if last is not None else None,
            "stats": {
                "totalRuns": self._total_runs,
                "cleanRuns": self._clean_runs,
                "instrumentsSynced": self._items_ok,
                "instrumentFailures": self._items_failed,
                "lastSuccessAt": (
                    self._last_success_at.isoformat() if self._last_success_at else None
                ),
            },
        }

    async def health(self) -> dict[str, Any]:
        """``healthy`` / ``warning`` / ``error`` / ``disabled`` with the reasons."""
        if not self._config.enabled:
            return {"status": "disabled", "issues": []}

        issues: list[str] = []
        status = "healthy"
        last = await self.last_run()
        if last is None:
            status = "warning"
            issues.append("no sync has run yet")
        else:
            age = (self._clock() - last.finished_at).total_seconds()
            if age > 2 * self._interval_seconds():
                status = "warning"
                issues.append(f"last sync finished {int(age)}s ago")

        attempted = self._items_ok + self._items_failed
        if attempted and self._items_ok / attempted < _MIN_SUCCESS_RATE:
            status = "error"
            issues.append(
                f"success rate {self._items_ok / attempted:.0%} is below "
                f"{_MIN_SUCCESS_RATE:.0%}"
            )
        return {"status": status, "issues": issues}
