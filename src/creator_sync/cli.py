"""CLI interface for creator-sync."""

import asyncio
import json
import sqlite3
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .errors import BaselineError, ConfigError

app = typer.Typer(
    name="creator-sync",
    help="Refresh a creator's social metrics from public profiles, falling back to manual data",
    add_completion=False,
)
console = Console()


def get_config(config_path: Path | None = None, baseline: Path | None = None):
    """Load configuration from .env, an optional YAML file and the environment."""
    from dotenv import load_dotenv

    from .config import load_config
    from .logging import configure_logging

    load_dotenv()
    try:
        cfg = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)
    if baseline is not None:
        cfg.baseline_path = baseline
    configure_logging(cfg.log_level, cfg.log_format)
    return cfg


def get_reconciler(cfg, orchestrator=None):
    from .reconciler import Reconciler

    try:
        return Reconciler.from_file(
            cfg.baseline_path,
            cfg.platforms,
            orchestrator=orchestrator,
            validation=cfg.validation,
        )
    except BaselineError as e:
        console.print(f"[red]Baseline error: {e}[/red]")
        raise typer.Exit(1)


def _records_table(reconciler, outcomes: dict | None = None) -> Table:
    record = reconciler.record
    table = Table(title=f"Data quality: {record.metadata.data_quality.get('overall', 'manual')}")
    table.add_column("Platform", style="cyan")
    table.add_column("Handle")
    table.add_column("Followers", justify="right")
    table.add_column("Quality")
    table.add_column("Source")
    table.add_column("Last scraped")
    if outcomes is not None:
        table.add_column("Result")

    for name, section in record.platforms.items():
        row = [
            name,
            section.handle,
            f"{section.followers:,}",
            record.metadata.data_quality.get(name, "manual"),
            record.metadata.sources.get(name, "manual_data"),
            section.last_scraped.isoformat() if section.last_scraped else "-",
        ]
        if outcomes is not None:
            row.append(outcomes.get(name, "error"))
        table.add_row(*row)
    return table


@app.command()
def update(
    config: Path = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    baseline: Path = typer.Option(None, "--baseline", "-b", help="Baseline JSON document"),
):
    """Scrape every platform once and merge the results into the baseline."""
    cfg = get_config(config, baseline)

    async def run():
        from .context import ScrapingContext

        async with ScrapingContext(cfg, run_cleanup=False) as ctx:
            reconciler = get_reconciler(cfg, ctx.orchestrator)
            summary = await reconciler.update_all()
            return reconciler, summary

    reconciler, summary = asyncio.run(run())
    outcomes = {k: v.value for k, v in summary.outcomes.items()}
    console.print(_records_table(reconciler, outcomes))
    for name, error in summary.errors.items():
        console.print(f"[yellow]{name}: {error}[/yellow]")


def _print_event(event, payload) -> None:
    from .models import UpdateEvent

    if event is UpdateEvent.UPDATE_COMPLETED:
        outcomes = payload["summary"]["outcomes"]
        console.print("[green]Updated[/green] " + ", ".join(f"{k}: {v}" for k, v in outcomes.items()))
    elif event is UpdateEvent.UPDATE_FAILED:
        console.print(f"[red]Update failed: {payload}[/red]")


@app.command()
def watch(
    config: Path = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    baseline: Path = typer.Option(None, "--baseline", "-b", help="Baseline JSON document"),
    interval: float = typer.Option(None, "--interval", "-i", help="Minutes between updates"),
):
    """Keep the baseline fresh, updating on a schedule until interrupted."""
    cfg = get_config(config, baseline)
    minutes = interval or cfg.auto_update_minutes

    async def run():
        from .context import ScrapingContext

        async with ScrapingContext(cfg) as ctx:
            reconciler = get_reconciler(cfg, ctx.orchestrator)
            reconciler.on_update(_print_event)
            await reconciler.start_auto_update(minutes)

    console.print(f"Updating every {minutes:g} minutes, Ctrl-C to stop")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("Stopped")


@app.command()
def show(
    config: Path = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    baseline: Path = typer.Option(None, "--baseline", "-b", help="Baseline JSON document"),
    as_json: bool = typer.Option(False, "--json", help="Print the snapshot as JSON"),
):
    """Show the current baseline and derived metrics without fetching anything."""
    cfg = get_config(config, baseline)
    reconciler = get_reconciler(cfg)
    if as_json:
        console.print_json(json.dumps(reconciler.get_snapshot()))
        return
    console.print(_records_table(reconciler))
    metrics = reconciler.get_snapshot()["metrics"]
    console.print(
        Panel(
            f"Total followers: [bold]{metrics['totalFollowers']:,}[/bold]\n"
            f"Weighted engagement: {metrics['totalEngagement']:.2f}%\n"
            f"Monthly growth: {metrics['growth']['monthlyGrowthRate']}% ({metrics['growth']['trend']})",
            title="Metrics",
        )
    )


def _parse_value(raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@app.command("set")
def set_field(
    platform: str = typer.Argument(..., help="Platform section, e.g. instagram"),
    field: str = typer.Argument(..., help="Field name, e.g. followers or engagementRate"),
    value: str = typer.Argument(..., help="New value (JSON literals are parsed)"),
    config: Path = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    baseline: Path = typer.Option(None, "--baseline", "-b", help="Baseline JSON document"),
):
    """Manually override a baseline field."""
    cfg = get_config(config, baseline)
    reconciler = get_reconciler(cfg)
    try:
        reconciler.update_manual_field(platform, field, _parse_value(value))
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    reconciler.save()
    console.print(f"[green]Updated {platform}.{field}[/green]")


@app.command()
def status(
    config: Path = typer.Option(None, "--config", "-c", help="YAML configuration file"),
):
    """Show relays, rate limits and durable cache usage."""
    cfg = get_config(config)

    table = Table(title="Platforms")
    table.add_column("Platform", style="cyan")
    table.add_column("Delay (s)", justify="right")
    table.add_column("Max retries", justify="right")
    table.add_column("Burst", justify="right")
    table.add_column("Daily limit", justify="right")
    table.add_column("Profile TTL (s)", justify="right")
    for name, platform in cfg.platforms.items():
        burst = f"{platform.burst_limit}/{platform.burst_window:g}s" if platform.burst_limit else "-"
        table.add_row(
            name,
            str(platform.request_delay),
            str(platform.max_retries),
            burst,
            str(platform.daily_limit or "-"),
            str(cfg.ttl_for(name)),
        )
    console.print(table)

    relays = Table(title="Relays")
    relays.add_column("Priority", justify="right")
    relays.add_column("Name", style="cyan")
    relays.add_column("Mode")
    relays.add_column("Unwraps")
    for relay in cfg.relays_by_priority():
        relays.add_row(str(relay.priority), relay.name, relay.mode, relay.response_field or "-")
    console.print(relays)

    if cfg.cache.db_path is not None:
        from .cache import SQLiteStore

        try:
            entries = len(SQLiteStore(cfg.cache.db_path).keys())
        except (sqlite3.Error, OSError) as e:
            console.print(f"[yellow]Durable cache: {cfg.cache.db_path} is unusable ({e})[/yellow]")
        else:
            console.print(f"Durable cache: {cfg.cache.db_path} ({entries} entries)")
    else:
        console.print("Durable cache: in-memory only")


@app.command("clear-cache")
def clear_cache(
    config: Path = typer.Option(None, "--config", "-c", help="YAML configuration file"),
):
    """Remove every cached profile from the durable cache."""
    cfg = get_config(config)
    if cfg.cache.db_path is None:
        console.print("Nothing to clear: no durable cache configured")
        return

    from .cache import SQLiteStore, TieredCache

    try:
        cleared = TieredCache(durable=SQLiteStore(cfg.cache.db_path)).clear()
    except (sqlite3.Error, OSError) as e:
        cleared = False
        console.print(f"[red]Cannot open cache {cfg.cache.db_path}: {e}[/red]")
    if not cleared:
        console.print("[red]Cache not cleared[/red]")
        raise typer.Exit(1)
    console.print("[green]Cache cleared[/green]")


@app.command()
def export(
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the export"),
    config: Path = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    baseline: Path = typer.Option(None, "--baseline", "-b", help="Baseline JSON document"),
):
    """Export the baseline and derived metrics as JSON."""
    cfg = get_config(config, baseline)
    reconciler = get_reconciler(cfg)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(reconciler.export_data(), indent=2, ensure_ascii=False))
    console.print(f"[green]Exported to {output}[/green]")


if __name__ == "__main__":
    app()
