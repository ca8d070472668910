"""Quote storage: Protocol definition, SQLite implementation, factory."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any, ClassVar, Protocol, runtime_checkable

import aiosqlite

from swarna_prices.core.config import StorageConfig
from swarna_prices.core.exceptions import StorageError
from swarna_prices.core.models import (
    ApiCallRecord,
    CurrencyCode,
    Instrument,
    InstrumentSyncResult,
    Purity,
    Quote,
    StorageBackend,
    SyncRun,
    SyncTrigger,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


@runtime_checkable
class QuoteStore(Protocol):
    """Durable quote cache plus the sync and API-call audit logs."""

    async def get(self, instrument: Instrument, currency: CurrencyCode) -> Quote | None: ...
    async def get_historical(
        self, instrument: Instrument, currency: CurrencyCode, day: date
    ) -> Quote | None: ...
    async def get_all_latest(self, currency: CurrencyCode) -> dict[Instrument, Quote]: ...
    async def put(self, quote: Quote) -> None: ...
    async def put_many(self, quotes: list[Quote]) -> int: ...
    async def is_fresh(
        self, instrument: Instrument, currency: CurrencyCode, max_age: timedelta
    ) -> bool: ...
    async def latest_observed_at(self, currency: CurrencyCode | None = None) -> int | None: ...
    async def has_recent_data(
        self,
        instruments: list[Instrument],
        currency: CurrencyCode,
        horizon: timedelta,
    ) -> bool: ...
    async def purge_older_than(self, horizon: timedelta) -> int: ...
    async def record_sync_run(self, run: SyncRun) -> None: ...
    async def list_sync_runs(self, limit: int = 20) -> list[SyncRun]: ...
    async def latest_sync_run(self) -> SyncRun | None: ...
    async def log_api_call(self, record: ApiCallRecord) -> None: ...
    async def get_api_stats(
        self, provider: str | None = None, hours: int = 24
    ) -> list[dict[str, Any]]: ...
    async def get_statistics(self) -> dict[str, Any]: ...
    async def initialize(self) -> None: ...
    async def close(self) -> None: ...
    async def health_check(self) -> bool: ...


class SqliteQuoteStore:
    """SQLite implementation of the quote store.

    Uses aiosqlite for async access, WAL mode for concurrent reads,
    and a version-tracked migration system. Every write is committed
    before the call returns.
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS quotes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    instrument TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    observed_at INTEGER NOT NULL,
                    observed_date TEXT NOT NULL,
                    is_historical INTEGER NOT NULL DEFAULT 0,
                    price REAL NOT NULL,
                    open REAL,
                    high REAL,
                    low REAL,
                    close REAL,
                    change_abs REAL,
                    change_pct REAL,
                    ask REAL,
                    bid REAL,
                    per_gram_json TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(instrument, currency, observed_at, provider, is_historical)
                )""",
                """CREATE TABLE IF NOT EXISTS sync_runs (
                    run_id TEXT PRIMARY KEY,
                    trigger TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL,
                    duration_seconds REAL NOT NULL,
                    success_count INTEGER NOT NULL,
                    failure_count INTEGER NOT NULL,
                    results_json TEXT NOT NULL
                )""",
                """CREATE TABLE IF NOT EXISTS api_calls (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    params_json TEXT,
                    success INTEGER NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    error TEXT,
                    called_at TEXT NOT NULL
                )""",
                # Indexes
                "CREATE INDEX IF NOT EXISTS idx_quotes_pair ON quotes(instrument, currency, is_historical, observed_at)",
                "CREATE INDEX IF NOT EXISTS idx_quotes_date ON quotes(instrument, currency, observed_date)",
                "CREATE INDEX IF NOT EXISTS idx_sync_runs_started ON sync_runs(started_at)",
                "CREATE INDEX IF NOT EXISTS idx_api_calls_provider ON api_calls(provider, called_at)",
            ],
        ),
    }

    def __init__(self, config: StorageConfig, clock: Clock = utc_now) -> None:
        self._path = config.sqlite_path
        self._clock = clock
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection, enable WAL, run migrations."""
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self._path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            current = await self._get_schema_version()
            await self._apply_migrations(current)
            await self._db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
            return row is not None
        except aiosqlite.Error:
            return False

    # --- Schema Migration ---

    async def _get_schema_version(self) -> int:
        try:
            async with self._db.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, current_version: int) -> None:
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            for sql in statements:
                await self._db.execute(sql)
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError(
                "Store is not initialized; call initialize() first",
                context={"operation": "connect", "path": self._path},
            )
        return self._db

    # --- Quote Operations ---

    _UPSERT_QUOTE: ClassVar[str] = """INSERT INTO quotes
        (instrument, currency, provider, observed_at, observed_date,
         is_historical, price, open, high, low, close, change_abs,
         change_pct, ask, bid, per_gram_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(instrument, currency, observed_at, provider, is_historical)
        DO UPDATE SET
            price = excluded.price,
            open = excluded.open,
            high = excluded.high,
            low = excluded.low,
            close = excluded.close,
            change_abs = excluded.change_abs,
            change_pct = excluded.change_pct,
            ask = excluded.ask,
            bid = excluded.bid,
            per_gram_json = excluded.per_gram_json,
            version = quotes.version + 1,
            updated_at = excluded.updated_at"""

    @staticmethod
    def _quote_params(quote: Quote, now: str) -> tuple:
        per_gram = (
            json.dumps({str(p): v for p, v in quote.per_gram_by_purity.items()})
            if quote.per_gram_by_purity
            else None
        )
        return (
            str(quote.instrument),
            quote.currency,
            quote.provider,
            quote.observed_at,
            quote.observed_date.isoformat(),
            int(quote.is_historical),
            quote.price,
            quote.open,
            quote.high,
            quote.low,
            quote.close,
            quote.change_abs,
            quote.change_pct,
            quote.ask,
            quote.bid,
            per_gram,
            now,
            now,
        )

    async def put(self, quote: Quote) -> None:
        """Upsert on (instrument, currency, observed_at, provider, is_historical).

        A repeated key overwrites the price fields and bumps ``version``.
        """
        try:
            db = self._conn()
            await db.execute(self._UPSERT_QUOTE, self._quote_params(quote, self._clock().isoformat()))
            await db.commit()
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to save quote: {e}",
                context={
                    "operation": "insert",
                    "table": "quotes",
                    "instrument": str(quote.instrument),
                    "currency": quote.currency,
                },
            ) from e

    async def put_many(self, quotes: list[Quote]) -> int:
        """Upsert a batch of quotes in one transaction. Returns the count written."""
        if not quotes:
            return 0
        try:
            db = self._conn()
            now = self._clock().isoformat()
            await db.executemany(self._UPSERT_QUOTE, [self._quote_params(q, now) for q in quotes])
            await db.commit()
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to save {len(quotes)} quotes: {e}",
                context={"operation": "insert", "table": "quotes", "count": len(quotes)},
            ) from e
        logger.debug("Stored %d quotes in one batch", len(quotes))
        return len(quotes)

    async def get(self, instrument: Instrument, currency: CurrencyCode) -> Quote | None:
        """Latest non-historical quote for the pair, regardless of age."""
        try:
            async with self._conn().execute(
                """SELECT * FROM quotes
                   WHERE instrument = ? AND currency = ? AND is_historical = 0
                   ORDER BY observed_at DESC, updated_at DESC
                   LIMIT 1""",
                (str(instrument), currency),
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_quote(row) if row is not None else None
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to get quote: {e}",
                context={
                    "operation": "query",
                    "table": "quotes",
                    "instrument": str(instrument),
                    "currency": currency,
                },
            ) from e

    async def get_historical(
        self, instrument: Instrument, currency: CurrencyCode, day: date
    ) -> Quote | None:
        """Historical row for ``day`` (UTC), else the latest live row observed that day."""
        try:
            async with self._conn().execute(
                """SELECT * FROM quotes
                   WHERE instrument = ? AND currency = ? AND observed_date = ?
                   ORDER BY is_historical DESC, observed_at DESC, updated_at DESC
                   LIMIT 1""",
                (str(instrument), currency, day.isoformat()),
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_quote(row) if row is not None else None
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to get historical quote: {e}",
                context={
                    "operation": "query",
                    "table": "quotes",
                    "instrument": str(instrument),
                    "currency": currency,
                    "date": day.isoformat(),
                },
            ) from e

    async def get_all_latest(self, currency: CurrencyCode) -> dict[Instrument, Quote]:
        """Latest live quote per instrument; instruments with none are omitted."""
        result: dict[Instrument, Quote] = {}
        for instrument in Instrument:
            quote = await self.get(instrument, currency)
            if quote is not None:
                result[instrument] = quote
        return result

    async def is_fresh(
        self, instrument: Instrument, currency: CurrencyCode, max_age: timedelta
    ) -> bool:
        quote = await self.get(instrument, currency)
        if quote is None:
            return False
        age = self._clock().timestamp() - quote.observed_at
        return age <= max_age.total_seconds()

    async def latest_observed_at(self, currency: CurrencyCode | None = None) -> int | None:
        try:
            query = "SELECT MAX(observed_at) FROM quotes WHERE is_historical = 0"
            params: list = []
            if currency is not None:
                query += " AND currency = ?"
                params.append(currency)
            async with self._conn().execute(query, params) as cursor:
                row = await cursor.fetchone()
            return row[0] if row is not None else None
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to read latest observation: {e}",
                context={"operation": "query", "table": "quotes"},
            ) from e

    async def has_recent_data(
        self,
        instruments: list[Instrument],
        currency: CurrencyCode,
        horizon: timedelta,
    ) -> bool:
        """True only if every listed instrument has a live quote within ``horizon``."""
        for instrument in instruments:
            if not await self.is_fresh(instrument, currency, horizon):
                return False
        return True

    async def purge_older_than(self, horizon: timedelta) -> int:
        """Retention cleanup.

        Deletes live quotes observed before ``now - horizon``, except the
        latest row per (instrument, currency), which is kept so the store
        fallback always has something to serve. Historical rows are kept.
        API call log rows older than the horizon are deleted too.

        Returns the number of quote rows deleted.
        """
        try:
            db = self._conn()
            cutoff = self._clock() - horizon
            cursor = await db.execute(
                """DELETE FROM quotes
                   WHERE is_historical = 0
                     AND observed_at < ?
                     AND observed_at < (
                         SELECT MAX(q2.observed_at) FROM quotes q2
                         WHERE q2.instrument = quotes.instrument
                           AND q2.currency = quotes.currency
                           AND q2.is_historical = 0
                     )""",
                (int(cutoff.timestamp()),),
            )
            deleted_quotes = cursor.rowcount
            cursor = await db.execute(
                "DELETE FROM api_calls WHERE called_at < ?",
                (cutoff.isoformat(),),
            )
            deleted_calls = cursor.rowcount
            await db.commit()
            logger.info(
                "Retention cleanup: removed %d quotes and %d api call rows older than %s",
                deleted_quotes, deleted_calls, cutoff.isoformat(),
            )
            return deleted_quotes
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to purge old quotes: {e}",
                context={"operation": "delete", "table": "quotes"},
            ) from e

    # --- Sync Run Audit Log ---

    async def record_sync_run(self, run: SyncRun) -> None:
        """Append a run. Run ids are unique; re-recording one is an error."""
        try:
            db = self._conn()
            await db.execute(
                """INSERT INTO sync_runs
                   (run_id, trigger, provider, started_at, finished_at,
                    duration_seconds, success_count, failure_count, results_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run.run_id,
                    str(run.trigger),
                    run.provider,
                    run.started_at.isoformat(),
                    run.finished_at.isoformat(),
                    run.duration_seconds,
                    run.success_count,
                    run.failure_count,
                    json.dumps([r.model_dump(mode="json") for r in run.results]),
                ),
            )
            await db.commit()
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to record sync run: {e}",
                context={"operation": "insert", "table": "sync_runs", "run_id": run.run_id},
            ) from e

    async def list_sync_runs(self, limit: int = 20) -> list[SyncRun]:
        """Most recent runs first."""
        try:
            async with self._conn().execute(
                "SELECT * FROM sync_runs ORDER BY started_at DESC LIMIT ?",
                (limit,),
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_sync_run(r) for r in rows]
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to list sync runs: {e}",
                context={"operation": "query", "table": "sync_runs"},
            ) from e

    async def latest_sync_run(self) -> SyncRun | None:
        runs = await self.list_sync_runs(limit=1)
        return runs[0] if runs else None

    # --- API Call Log ---

    async def log_api_call(self, record: ApiCallRecord) -> None:
        try:
            db = self._conn()
            await db.execute(
                """INSERT INTO api_calls
                   (provider, operation, params_json, success, duration_ms,
                    attempts, error, called_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.provider,
                    record.operation,
                    json.dumps(record.params, default=str),
                    int(record.success),
                    record.duration_ms,
                    record.attempts,
                    record.error,
                    record.called_at.isoformat(),
                ),
            )
            await db.commit()
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to log api call: {e}",
                context={"operation": "insert", "table": "api_calls"},
            ) from e

    async def get_api_stats(
        self, provider: str | None = None, hours: int = 24
    ) -> list[dict[str, Any]]:
        """Per-provider call counts, success rate and mean latency for the window."""
        try:
            since = (self._clock() - timedelta(hours=hours)).isoformat()
            query = """SELECT provider,
                              COUNT(*) AS total_calls,
                              SUM(success) AS successful_calls,
                              AVG(duration_ms) AS avg_duration_ms,
                              MAX(called_at) AS last_called_at
                       FROM api_calls
                       WHERE called_at >= ?"""
            params: list = [since]
            if provider is not None:
                query += " AND provider = ?"
                params.append(provider)
            query += " GROUP BY provider ORDER BY provider"
            async with self._conn().execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to read api stats: {e}",
                context={"operation": "query", "table": "api_calls"},
            ) from e

        stats = []
        for row in rows:
            total = row["total_calls"]
            ok = row["successful_calls"] or 0
            stats.append(
                {
                    "provider": row["provider"],
                    "total_calls": total,
                    "successful_calls": ok,
                    "failed_calls": total - ok,
                    "success_rate": round(ok / total, 4) if total else 0.0,
                    "avg_duration_ms": round(row["avg_duration_ms"] or 0.0, 1),
                    "last_called_at": row["last_called_at"],
                }
            )
        return stats

    async def get_statistics(self) -> dict[str, Any]:
        """Row counts and observation range, for status output."""
        try:
            db = self._conn()
            async with db.execute(
                """SELECT COUNT(*) AS total,
                          SUM(is_historical) AS historical,
                          MIN(observed_at) AS oldest,
                          MAX(observed_at) AS newest
                   FROM quotes"""
            ) as cursor:
                totals = await cursor.fetchone()
            async with db.execute(
                "SELECT instrument, COUNT(*) AS n FROM quotes GROUP BY instrument"
            ) as cursor:
                per_instrument = {r["instrument"]: r["n"] for r in await cursor.fetchall()}
            async with db.execute("SELECT COUNT(*) FROM sync_runs") as cursor:
                sync_runs = (await cursor.fetchone())[0]
            async with db.execute("SELECT COUNT(*) FROM api_calls") as cursor:
                api_calls = (await cursor.fetchone())[0]
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to read statistics: {e}",
                context={"operation": "query", "table": "quotes"},
            ) from e

        return {
            "quotes": totals["total"],
            "historical_quotes": totals["historical"] or 0,
            "quotes_by_instrument": per_instrument,
            "oldest_observed_at": totals["oldest"],
            "newest_observed_at": totals["newest"],
            "sync_runs": sync_runs,
            "api_calls": api_calls,
        }

    # --- Row Mappers ---

    @staticmethod
    def _row_to_quote(row: aiosqlite.Row) -> Quote:
        per_gram_json = row["per_gram_json"]
        per_gram = (
            {Purity(k): v for k, v in json.loads(per_gram_json).items()}
            if per_gram_json
            else {}
        )
        return Quote(
            instrument=Instrument(row["instrument"]),
            currency=row["currency"],
            price=row["price"],
            open=row["open"],
            high=row["high"],
            low=row["low"],
            close=row["close"],
            change_abs=row["change_abs"],
            change_pct=row["change_pct"],
            ask=row["ask"],
            bid=row["bid"],
            per_gram_by_purity=per_gram,
            observed_at=row["observed_at"],
            provider=row["provider"],
            is_historical=bool(row["is_historical"]),
        )

    @staticmethod
    def _row_to_sync_run(row: aiosqlite.Row) -> SyncRun:
        return SyncRun(
            run_id=row["run_id"],
            trigger=SyncTrigger(row["trigger"]),
            provider=row["provider"],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]),
            duration_seconds=row["duration_seconds"],
            results=[
                InstrumentSyncResult.model_validate(r)
                for r in json.loads(row["results_json"])
            ],
        )


async def create_store(
    config: StorageConfig, clock: Clock = utc_now
) -> SqliteQuoteStore:
    """Create and initialize a storage backend based on configuration."""
    if config.backend == StorageBackend.SQLITE:
        store = SqliteQuoteStore(config, clock=clock)
        await store.initialize()
        return store
    raise StorageError(
        f"Unsupported storage backend: {config.backend}",
        context={"operation": "create_store", "backend": str(config.backend)},
    )
