"""Click-based CLI for swarna-prices.

Thin wrapper around library modules. Every command delegates to the
aggregator, the store or the sync scheduler.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code.

    Library errors become a red one-line message and exit status 1.
    """
    from swarna_prices.core.exceptions import SwarnaPricesError

    try:
        return asyncio.run(coro)
    except SwarnaPricesError as e:
        console.print(f"[red]{type(e).__name__}: {escape(str(e))}[/red]")
        raise SystemExit(1) from e


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from swarna_prices.core import load_config

        ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
    return ctx.obj["config"]


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@asynccontextmanager
async def _services(config, provider: str | None = None):
    """Open store + aggregator for one command, closing both afterwards."""
    from swarna_prices.aggregator import PriceAggregator
    from swarna_prices.providers import create_providers
    from swarna_prices.storage import create_store

    store = await create_store(config.storage)
    try:
        aggregator = PriceAggregator(create_providers(config), store, config.aggregator)
        try:
            if provider:
                aggregator.switch_provider(provider)
            yield store, aggregator
        finally:
            await aggregator.close()
    finally:
        await store.close()


def _fmt_price(value: float | None) -> str:
    return f"{value:,.2f}" if value is not None else "-"


def _fmt_ts(epoch: int | None) -> str:
    if epoch is None:
        return "N/A"
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


def _quotes_table(title: str, quotes) -> Table:
    table = Table(title=title)
    table.add_column("Instrument", style="bold")
    table.add_column("Currency")
    table.add_column("Price / oz", justify="right")
    table.add_column("Change %", justify="right")
    table.add_column("24k / g", justify="right")
    table.add_column("22k / g", justify="right")
    table.add_column("Observed")
    table.add_column("Provider")
    for q in quotes:
        per_gram = {str(k): v for k, v in q.per_gram_by_purity.items()}
        change = q.change_pct
        change_str = "-" if change is None else (
            f"[green]{change:+.2f}[/green]" if change >= 0 else f"[red]{change:+.2f}[/red]"
        )
        table.add_row(
            str(q.instrument),
            q.currency,
            _fmt_price(q.price),
            change_str,
            _fmt_price(per_gram.get("24k")),
            _fmt_price(per_gram.get("22k")),
            _fmt_ts(q.observed_at) + (" (hist)" if q.is_historical else ""),
            q.provider,
        )
    return table


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


_PROVIDER_OPTION = click.option(
    "--provider",
    "-P",
    type=str,
    default=None,
    help="Serve from this provider (or 'store-only') instead of the configured primary.",
)

_FORMAT_OPTION = click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format.",
)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="SWARNA_PRICES_CONFIG",
    default=None,
    help="Path to swarna-prices.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging.",
)
@click.version_option(package_name="swarna-prices")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """Swarna Prices: precious-metals quotes with provider fallback."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# quote / quotes / historical
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("instrument")
@click.option("--currency", "-C", type=str, default=None, help="ISO currency code.")
@_PROVIDER_OPTION
@_FORMAT_OPTION
@click.pass_context
def quote(
    ctx: click.Context,
    instrument: str,
    currency: str | None,
    provider: str | None,
    output_format: str,
) -> None:
    """Show the latest quote for INSTRUMENT (gold, silver, XAU, ...)."""
    async def _run():
        config = _load_config(ctx)
        async with _services(config, provider) as (_, aggregator):
            result = await aggregator.get_quote(instrument, currency)
        if output_format == "json":
            _echo_json(result.to_wire())
        else:
            console.print(_quotes_table("Live Quote", [result]))

    _run_async(_run())


@cli.command()
@click.option("--currency", "-C", type=str, default=None, help="ISO currency code.")
@_PROVIDER_OPTION
@_FORMAT_OPTION
@click.pass_context
def quotes(
    ctx: click.Context,
    currency: str | None,
    provider: str | None,
    output_format: str,
) -> None:
    """Show the latest quotes for every instrument."""
    async def _run():
        config = _load_config(ctx)
        async with _services(config, provider) as (_, aggregator):
            result = await aggregator.get_all_quotes(currency)
        if output_format == "json":
            _echo_json({str(i): q.to_wire() for i, q in result.items()})
        else:
            console.print(_quotes_table("Live Quotes", result.values()))

    _run_async(_run())


@cli.command()
@click.argument("instrument")
@click.option(
    "--date",
    "-d",
    "day",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    required=True,
    help="Calendar date (YYYY-MM-DD, UTC).",
)
@click.option("--currency", "-C", type=str, default=None, help="ISO currency code.")
@_PROVIDER_OPTION
@_FORMAT_OPTION
@click.pass_context
def historical(
    ctx: click.Context,
    instrument: str,
    day: datetime,
    currency: str | None,
    provider: str | None,
    output_format: str,
) -> None:
    """Show the quote for INSTRUMENT on a past date."""
    async def _run():
        config = _load_config(ctx)
        async with _services(config, provider) as (_, aggregator):
            result = await aggregator.get_historical(instrument, currency, day.date())
        if output_format == "json":
            _echo_json(result.to_wire())
        else:
            console.print(_quotes_table(f"Quote on {day.date().isoformat()}", [result]))

    _run_async(_run())


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


@cli.command()
@_FORMAT_OPTION
@click.pass_context
def sync(ctx: click.Context, output_format: str) -> None:
    """Run one sync now through the configured sync provider."""
    async def _run():
        from swarna_prices.core import SyncTrigger
        from swarna_prices.sync import SyncScheduler

        config = _load_config(ctx)
        async with _services(config) as (store, aggregator):
            scheduler = SyncScheduler(aggregator, store, config.sync)
            with console.status("Syncing quotes..."):
                run = await scheduler.run_once(SyncTrigger.MANUAL)

        if output_format == "json":
            _echo_json(run.model_dump(mode="json"))
            return run

        table = Table(title=f"Sync {run.run_id[:8]} via {run.provider}")
        table.add_column("Instrument", style="bold")
        table.add_column("Currency")
        table.add_column("Result")
        table.add_column("Attempts", justify="right")
        table.add_column("Price / oz", justify="right")
        for r in run.results:
            table.add_row(
                str(r.instrument),
                r.currency,
                "[green]ok[/green]" if r.success else f"[red]{escape(r.error or '')}[/red]",
                str(r.attempts),
                _fmt_price(r.price),
            )
        console.print(table)
        console.print(
            f"{run.success_count} ok, {run.failure_count} failed "
            f"in {run.duration_seconds:.2f}s"
        )
        return run

    run = _run_async(_run())
    if run.success_count == 0:
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# backfill
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--start",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="First date (YYYY-MM-DD). Default: --days before --end.",
)
@click.option(
    "--end",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Last date (YYYY-MM-DD). Default: today (UTC).",
)
@click.option("--days", type=click.IntRange(min=1), default=365, show_default=True)
@click.option("--currency", "-C", type=str, default=None, help="ISO currency code.")
@click.option("--provider", type=str, default=None, help="Timeframe-capable provider to use.")
@_FORMAT_OPTION
@click.pass_context
def backfill(
    ctx: click.Context,
    start: datetime | None,
    end: datetime | None,
    days: int,
    currency: str | None,
    provider: str | None,
    output_format: str,
) -> None:
    """Store daily historical quotes for every instrument over a date range."""
    last = end.date() if end is not None else datetime.now(UTC).date()
    first = start.date() if start is not None else last - timedelta(days=days - 1)

    async def _run():
        config = _load_config(ctx)
        async with _services(config) as (_, aggregator):
            with console.status(f"Backfilling {first} to {last}..."):
                result = await aggregator.backfill(first, last, currency, provider)

        if output_format == "json":
            _echo_json(result.summary())
            return result

        table = Table(title=f"Backfill {result.currency} via {result.provider}")
        table.add_column("From")
        table.add_column("To")
        table.add_column("Result")
        table.add_column("Attempts", justify="right")
        table.add_column("Quotes", justify="right")
        for w in result.windows:
            table.add_row(
                w.start_date.isoformat(),
                w.end_date.isoformat(),
                "[green]ok[/green]" if w.success else f"[red]{escape(w.error or '')}[/red]",
                str(w.attempts),
                str(w.quotes_stored),
            )
        console.print(table)
        console.print(
            f"Stored {result.quotes_stored} quotes, "
            f"{result.failure_count} failed window(s) in {result.duration_seconds:.2f}s"
        )
        return result

    result = _run_async(_run())
    if result.quotes_stored == 0:
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--days",
    type=int,
    default=None,
    help="Keep this many days of live quotes. Default: storage.retention_days.",
)
@click.pass_context
def cleanup(ctx: click.Context, days: int | None) -> None:
    """Delete live quotes and API call logs older than the retention window."""
    async def _run():
        from swarna_prices.storage import create_store

        config = _load_config(ctx)
        retention = days or config.storage.retention_days
        store = await create_store(config.storage)
        try:
            deleted = await store.purge_older_than(timedelta(days=retention))
        finally:
            await store.close()
        console.print(f"Removed [bold]{deleted}[/bold] quotes older than {retention} days")

    _run_async(_run())


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", type=str, default=None, help="Bind address. Default: api.host.")
@click.option("--port", "-p", type=int, default=None, help="Port number. Default: api.port.")
@click.option("--reload", is_flag=True, default=False, help="Auto-reload on code changes.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Start the HTTP + WebSocket server."""
    import uvicorn

    config = _load_config(ctx)
    host = host or config.api.host
    port = port or config.api.port

    console.print(f"Starting swarna-prices API on [bold]{host}:{port}[/bold]")
    console.print(f"API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "swarna_prices.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show storage coverage, provider selection and the last sync run."""
    async def _run():
        from swarna_prices.storage import create_store

        config = _load_config(ctx)
        store = await create_store(config.storage)
        try:
            stats = await store.get_statistics()
            last_run = await store.latest_sync_run()
            api_stats = await store.get_api_stats(hours=24)
        finally:
            await store.close()

        table = Table(title="Swarna Prices Status")
        table.add_column("Metric", style="bold", no_wrap=True)
        table.add_column("Value", justify="right")

        table.add_row("Storage backend", str(config.storage.backend))
        table.add_row("Database path", config.storage.sqlite_path)
        table.add_row("Primary provider", config.aggregator.primary)
        table.add_row("Fallback provider", config.aggregator.fallback or "none")
        table.add_section()
        table.add_row("Stored quotes", str(stats["quotes"]))
        table.add_row("Historical quotes", str(stats["historical_quotes"]))
        table.add_row(
            "Observed range",
            f"{_fmt_ts(stats['oldest_observed_at'])} → {_fmt_ts(stats['newest_observed_at'])}"
            if stats["quotes"] > 0
            else "N/A",
        )
        table.add_section()
        table.add_row("Sync schedule", f"{config.sync.schedule} ({config.sync.timezone})")
        table.add_row("Sync runs", str(stats["sync_runs"]))
        if last_run is not None:
            table.add_row("Last sync", last_run.finished_at.isoformat())
            table.add_row(
                "Last sync result",
                f"{last_run.success_count} ok / {last_run.failure_count} failed",
            )
        else:
            table.add_row("Last sync", "never")
        table.add_section()
        for row in api_stats:
            table.add_row(
                f"{row['provider']} calls (24h)",
                f"{row['total_calls']} ({row['success_rate']:.0%} ok)",
            )

        console.print(table)

    _run_async(_run())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
