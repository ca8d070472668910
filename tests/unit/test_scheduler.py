"""Tests for swarna_prices.sync.scheduler (SyncScheduler)."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

import pytest

from swarna_prices.aggregator.service import PriceAggregator
from swarna_prices.core.config import SyncConfig
from swarna_prices.core.exceptions import ConfigurationError, StorageError
from swarna_prices.core.models import Instrument, SyncTrigger
from swarna_prices.sync.scheduler import SyncScheduler

from fakes import DEFAULT_PRICES, NOW


# --- Fixtures ---


@pytest.fixture
def sync_provider(make_provider):
    return make_provider("metalpriceapi")


@pytest.fixture
def other_provider(make_provider):
    return make_provider("goldapi")


@pytest.fixture
def aggregator(sync_provider, other_provider, store, aggregator_config, sleeper, clock):
    return PriceAggregator(
        {"metalpriceapi": sync_provider, "goldapi": other_provider},
        store,
        aggregator_config,
        sleep=sleeper,
        clock=clock,
    )


@pytest.fixture
def make_scheduler(aggregator, store, clock):
    def _make(**overrides) -> SyncScheduler:
        defaults = dict(retry_attempts=2, retry_base_delay=5.0)
        defaults.update(overrides)
        return SyncScheduler(aggregator, store, SyncConfig(**defaults), clock=clock)

    return _make


async def _wait_for_runs(store, count: int = 1) -> None:
    for _ in range(200):
        if len(await store.list_sync_runs()) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"expected {count} sync run(s)")


# --- run_once ---


class TestRunOnce:
    async def test_refreshes_every_pair(self, make_scheduler, sync_provider, other_provider, store):
        scheduler = make_scheduler(currencies=["INR", "USD"])
        run = await scheduler.run_once()

        assert run.trigger == SyncTrigger.MANUAL
        assert run.provider == "metalpriceapi"
        assert run.success_count == 8
        assert run.failure_count == 0
        assert len(sync_provider.calls) == 8
        assert other_provider.calls == []
        assert len(await store.get_all_latest("USD")) == 4
        assert await store.latest_sync_run() == run

    async def test_one_failure_does_not_abort(self, make_scheduler, sync_provider, sleeper):
        del sync_provider.prices[Instrument.SILVER]
        run = await make_scheduler().run_once()

        assert run.success_count == 3
        failed = [r for r in run.results if not r.success]
        assert len(failed) == 1
        assert failed[0].instrument == Instrument.SILVER
        assert failed[0].attempts == 2
        assert "no price for silver" in failed[0].error
        assert sleeper.delays == [5.0]

    async def test_results_carry_prices(self, make_scheduler):
        run = await make_scheduler().run_once(SyncTrigger.SCHEDULED, run_id="fixed-id")
        assert run.run_id == "fixed-id"
        gold = next(r for r in run.results if r.instrument == Instrument.GOLD)
        assert gold.price == DEFAULT_PRICES[Instrument.GOLD]
        assert gold.attempts == 1

    async def test_serving_state_untouched(self, make_scheduler, aggregator, sync_provider):
        aggregator.switch_provider("store-only")
        before = aggregator.state
        run = await make_scheduler().run_once()
        assert run.success_count == 4
        assert aggregator.state is before

    async def test_listeners_receive_refreshed_quotes(self, make_scheduler, sync_provider):
        del sync_provider.prices[Instrument.PALLADIUM]
        scheduler = make_scheduler()
        received = []

        async def listener(run, quotes):
            received.append((run.run_id, [q.instrument for q in quotes]))

        scheduler.add_listener(listener)
        run = await scheduler.run_once()
        assert received == [
            (run.run_id, [Instrument.GOLD, Instrument.SILVER, Instrument.PLATINUM])
        ]

    async def test_listener_failure_is_logged(self, make_scheduler, caplog):
        scheduler = make_scheduler()

        async def broken(run, quotes):
            raise RuntimeError("listener bug")

        scheduler.add_listener(broken)
        with caplog.at_level(logging.ERROR):
            run = await scheduler.run_once()
        assert run.success_count == 4
        assert "Sync listener" in caplog.text

    async def test_runs_are_serialised(self, make_scheduler, store):
        scheduler = make_scheduler()
        runs = await asyncio.gather(scheduler.run_once(), scheduler.run_once())
        assert runs[0].run_id != runs[1].run_id
        assert len(await store.list_sync_runs()) == 2


class TestTriggerNow:
    async def test_returns_id_and_runs_in_background(self, make_scheduler, store):
        scheduler = make_scheduler()
        run_id = scheduler.trigger_now()
        assert isinstance(run_id, str)
        await _wait_for_runs(store)
        assert (await store.latest_sync_run()).run_id == run_id
        await scheduler.stop()


# --- Schedule ---


class TestSchedule:
    def test_next_run_daily_midnight_utc(self, make_scheduler):
        assert make_scheduler().get_next_run_time() == datetime(2025, 7, 18, 0, 0, tzinfo=UTC)

    def test_next_run_respects_timezone(self, make_scheduler):
        # 06:45 UTC is 12:15 in Kolkata; next 09:00 local is tomorrow 03:30 UTC
        scheduler = make_scheduler(schedule="0 9 * * *", timezone="Asia/Kolkata")
        assert scheduler.get_next_run_time() == datetime(2025, 7, 18, 3, 30, tzinfo=UTC)

    def test_update_schedule(self, make_scheduler):
        scheduler = make_scheduler()
        next_run = scheduler.update_schedule("*/15 * * * *")
        assert scheduler.schedule == "*/15 * * * *"
        assert next_run == datetime(2025, 7, 17, 7, 0, tzinfo=UTC)

    def test_update_schedule_invalid(self, make_scheduler):
        scheduler = make_scheduler()
        with pytest.raises(ConfigurationError, match="Invalid cron"):
            scheduler.update_schedule("not a cron")
        assert scheduler.schedule == "0 0 * * *"


# --- Lifecycle ---


class TestLifecycle:
    async def test_disabled_does_not_start(self, make_scheduler):
        scheduler = make_scheduler(enabled=False)
        await scheduler.start()
        assert not scheduler.is_running

    async def test_startup_run_when_store_empty(self, make_scheduler, store):
        scheduler = make_scheduler()
        await scheduler.start()
        try:
            assert scheduler.is_running
            await _wait_for_runs(store)
            run = await store.latest_sync_run()
            assert run.trigger == SyncTrigger.STARTUP
        finally:
            await scheduler.stop()
        assert not scheduler.is_running

    async def test_no_startup_run_with_recent_data(self, make_scheduler, store, make_quote):
        for instrument, price in DEFAULT_PRICES.items():
            await store.put(make_quote(instrument=instrument, price=price))
        scheduler = make_scheduler()
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert await store.list_sync_runs() == []

    async def test_no_startup_run_when_disabled_by_config(self, make_scheduler, store):
        scheduler = make_scheduler(run_on_startup=False)
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert await store.list_sync_runs() == []

    async def test_storage_error_at_startup_keeps_loop_alive(self, make_scheduler, store, monkeypatch, caplog):
        async def locked(*args, **kwargs):
            raise StorageError("database is locked")

        monkeypatch.setattr(store, "has_recent_data", locked)
        scheduler = make_scheduler()
        with caplog.at_level(logging.ERROR, logger="swarna_prices.sync.scheduler"):
            await scheduler.start()
            await asyncio.sleep(0.05)
            assert scheduler.is_running
            await scheduler.stop()
        assert "Startup sync failed" in caplog.text
        assert not scheduler.is_running

    async def test_unknown_sync_provider_fails_items_not_run(self, make_scheduler):
        scheduler = make_scheduler(provider="nosuchapi", retry_attempts=1)
        run = await scheduler.run_once()
        assert run.success_count == 0
        assert run.failure_count == len(Instrument)
        assert all("nosuchapi" in r.error for r in run.results)

    async def test_stop_tolerates_task_that_already_failed(self, make_scheduler, caplog):
        scheduler = make_scheduler()

        async def broken():
            raise StorageError("database is locked")

        scheduler._task = asyncio.create_task(broken())
        await asyncio.sleep(0)
        with caplog.at_level(logging.ERROR, logger="swarna_prices.sync.scheduler"):
            await scheduler.stop()
        assert "database is locked" in caplog.text


# --- Reporting ---


class TestStatusAndHealth:
    async def test_status_before_any_run(self, make_scheduler):
        status = await make_scheduler(currencies=["INR", "USD"]).status()
        assert status["enabled"] is True
        assert status["running"] is False
        assert status["inProgress"] is False
        assert status["currencies"] == ["INR", "USD"]
        assert status["nextRunAt"] == "2025-07-18T00:00:00+00:00"
        assert status["lastRun"] is None
        assert status["stats"]["totalRuns"] == 0

    async def test_status_after_run(self, make_scheduler):
        scheduler = make_scheduler()
        run = await scheduler.run_once()
        status = await scheduler.status()
        assert status["lastRun"]["runId"] == run.run_id
        assert status["stats"]["totalRuns"] == 1
        assert status["stats"]["cleanRuns"] == 1
        assert status["stats"]["instrumentsSynced"] == 4

    async def test_last_run_read_from_store(self, make_scheduler):
        first = make_scheduler()
        run = await first.run_once()
        fresh = make_scheduler()
        assert (await fresh.last_run()).run_id == run.run_id

    async def test_health_disabled(self, make_scheduler):
        assert (await make_scheduler(enabled=False).health())["status"] == "disabled"

    async def test_health_warning_without_runs(self, make_scheduler):
        health = await make_scheduler().health()
        assert health["status"] == "warning"
        assert health["issues"] == ["no sync has run yet"]

    async def test_health_healthy_after_run(self, make_scheduler):
        scheduler = make_scheduler()
        await scheduler.run_once()
        assert await scheduler.health() == {"status": "healthy", "issues": []}

    async def test_health_warning_when_overdue(self, make_scheduler, clock):
        scheduler = make_scheduler()
        await scheduler.run_once()
        clock.advance(days=3)
        health = await scheduler.health()
        assert health["status"] == "warning"
        assert "last sync finished" in health["issues"][0]

    async def test_health_error_on_low_success_rate(self, make_scheduler, sync_provider):
        sync_provider.fail()
        scheduler = make_scheduler(retry_attempts=1)
        await scheduler.run_once()
        health = await scheduler.health()
        assert health["status"] == "error"
        assert any("success rate" in issue for issue in health["issues"])
