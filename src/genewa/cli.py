"""CLI for genewa: run calendar operations from the shell."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import click

from genewa import __version__
from genewa.calendar.errors import OperationResult
from genewa.calendar.service import CalendarService
from genewa.config import DEFAULT_CONFIG_FILENAME, AppConfig, ConfigError, load_config
from genewa.core.logging import configure_logging
from genewa.core.metrics import init_metrics

Operation = Callable[[CalendarService], Awaitable[OperationResult]]


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path(DEFAULT_CONFIG_FILENAME),
    show_default=True,
    help="Path to genewa.toml (or the directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """Genewa: resilient calendar operations and availability search."""
    ctx.obj = config_path


def _load(ctx: click.Context) -> AppConfig:
    try:
        config = load_config(ctx.obj)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name=config.service_name,
    )
    init_metrics(config.service_name)
    return config


async def _invoke(config: AppConfig, operation: Operation) -> OperationResult:
    async with CalendarService.from_config(config.calendar) as service:
        return await operation(service)


def _run(ctx: click.Context, operation: Operation) -> None:
    config = _load(ctx)
    result = asyncio.run(_invoke(config, operation))
    click.echo(json.dumps(result.to_response(), indent=2))
    if not result.success:
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Connect to the configured provider and report its health."""
    _run(ctx, lambda service: service.health_check())


@cli.command()
@click.pass_context
def calendars(ctx: click.Context) -> None:
    """List calendars visible to the configured account."""
    _run(ctx, lambda service: service.list_calendars())


@cli.command()
@click.option("--calendar", "calendar_id", default=None, help="Calendar ID (default: primary)")
@click.option("--from", "time_min", default=None, help="Window start (default: now)")
@click.option("--to", "time_max", default=None, help="Window end (default: start + 7 days)")
@click.option("--max-results", type=int, default=250, show_default=True)
@click.option("--tz", "time_zone", default=None, help="IANA time zone for the response")
@click.pass_context
def events(
    ctx: click.Context,
    calendar_id: str | None,
    time_min: str | None,
    time_max: str | None,
    max_results: int,
    time_zone: str | None,
) -> None:
    """List events in a time window."""
    _run(
        ctx,
        lambda service: service.list_events(
            calendar_id,
            time_min=time_min,
            time_max=time_max,
            max_results=max_results,
            time_zone=time_zone,
        ),
    )


@cli.command()
@click.argument("query")
@click.option("--calendar", "calendar_id", default=None, help="Calendar ID (default: primary)")
@click.option("--from", "time_min", default=None, help="Window start (default: now)")
@click.option("--to", "time_max", default=None, help="Window end (default: start + 30 days)")
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    calendar_id: str | None,
    time_min: str | None,
    time_max: str | None,
) -> None:
    """Search events by free text."""
    _run(
        ctx,
        lambda service: service.search_events(
            query, calendar_id, time_min=time_min, time_max=time_max
        ),
    )


@cli.command()
@click.option("--calendar", "calendar_ids", multiple=True, help="Calendar ID (repeatable)")
@click.option("--duration", type=int, default=60, show_default=True, help="Minutes")
@click.option("--from", "time_min", required=True, help="Window start")
@click.option("--to", "time_max", required=True, help="Window end")
@click.option("--tz", "time_zone", default=None, help="IANA time zone")
@click.pass_context
def slots(
    ctx: click.Context,
    calendar_ids: tuple[str, ...],
    duration: int,
    time_min: str,
    time_max: str,
    time_zone: str | None,
) -> None:
    """Find free slots of at least --duration minutes across calendars."""
    _run(
        ctx,
        lambda service: service.find_available_slots(
            list(calendar_ids) or None,
            duration,
            time_min=time_min,
            time_max=time_max,
            time_zone=time_zone,
        ),
    )


@cli.command("next-slot")
@click.option("--calendar", "calendar_id", default=None, help="Calendar ID (default: primary)")
@click.option("--duration", type=int, default=60, show_default=True, help="Minutes")
@click.pass_context
def next_slot(ctx: click.Context, calendar_id: str | None, duration: int) -> None:
    """Find the first free slot in the next seven days."""
    _run(ctx, lambda service: service.find_next_available_slot(calendar_id, duration))


@cli.command()
@click.pass_context
def colors(ctx: click.Context) -> None:
    """List the provider's event and calendar color palette."""
    _run(ctx, lambda service: service.list_colors())


@cli.command()
@click.option("--tz", "time_zone", default=None, help="IANA time zone")
@click.pass_context
def now(ctx: click.Context, time_zone: str | None) -> None:
    """Print the current time in UTC and the requested zone."""
    _run(ctx, lambda service: service.get_current_time(time_zone))
