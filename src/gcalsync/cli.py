"""CLI entrypoint for gcalsync.

Commands
- sync:    on-demand two-way sync of the configured local calendar files
- watch:   background mode; polls local files and queues changes
- diff:    show the delta between two iCalendar files
- status:  show the calendars and UID counts tracked by the event registry

Notes
- Configuration precedence: CLI > ENV (GCALSYNC__) > YAML file, see config loader.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import typer

from .config import AppConfig, load_config
from .ical.parser import CalendarParseError, parse_events
from .logging import setup_logging
from .state import OfflineEventRegistry
from .sync.compare import EventComparator
from .sync.delta import compute_delta
from .sync.orchestrator import Orchestrator
from .sync.recurrence import RecurrenceNormalizer

app = typer.Typer(add_completion=False, help="Two-way iCalendar <-> Google Calendar sync tool")


def _cli_overrides_from_args(
    *,
    delete_enabled: bool | None = None,
    extended_sync: bool | None = None,
    verbose: bool = False,
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    sync_over: dict[str, Any] = {}
    if delete_enabled is not None:
        sync_over["delete_enabled"] = delete_enabled
    if extended_sync is not None:
        sync_over["extended_sync"] = extended_sync
    if sync_over:
        overrides["sync"] = sync_over

    if verbose:
        overrides.setdefault("logging", {})["level"] = "DEBUG"

    return overrides


def _load(config: Path | None, overrides: dict[str, Any]) -> AppConfig:
    try:
        cfg = load_config(file_path=str(config) if config else None, cli_overrides=overrides)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=3) from exc
    setup_logging(level=cfg.logging.level, json=cfg.logging.as_json)
    return cfg


@app.command(help="Run on-demand two-way sync of the configured calendars.")
def sync(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to YAML config file.", show_default=False
    ),
    calendar: list[str] | None = typer.Option(
        None,
        "--calendar",
        help="Calendar name from the config (repeatable). Default: all.",
        show_default=False,
    ),
    delete_enabled: bool | None = typer.Option(
        None,
        "--delete/--no-delete",
        help="Allow or forbid deleting remote events (overrides config).",
        show_default=False,
    ),
    extended_sync: bool | None = typer.Option(
        None,
        "--extended/--no-extended",
        help="Sync attendees, alarms, categories, priority and URL as well.",
        show_default=False,
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Set log level to DEBUG (overrides config.logging.level)."
    ),
) -> None:
    overrides = _cli_overrides_from_args(
        delete_enabled=delete_enabled, extended_sync=extended_sync, verbose=verbose
    )
    cfg = _load(config, overrides)
    if not cfg.calendars:
        typer.echo("No calendars configured", err=True)
        raise typer.Exit(code=3)

    exit_code, summary = Orchestrator(cfg).run_once(calendar or None)
    agg = summary.aggregate()
    typer.echo(
        "gcalsync sync summary: "
        f"calendars={len(summary.calendars)} inserted={agg['inserted']} updated={agg['updated']} "
        f"deleted={agg['deleted']} skipped={agg['skipped']} errors={agg['errors']}"
    )
    raise typer.Exit(code=exit_code)


@app.command(help="Watch local calendar files and sync changes in the background.")
def watch(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to YAML config file.", show_default=False
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Set log level to DEBUG (overrides config.logging.level)."
    ),
) -> None:
    cfg = _load(config, _cli_overrides_from_args(verbose=verbose))
    raise typer.Exit(code=Orchestrator(cfg).watch())


@app.command(help="Show new/changed and removed events between two iCalendar files.")
def diff(
    old: Path = typer.Argument(..., exists=True, dir_okay=False, help="Previous calendar."),
    new: Path = typer.Argument(..., exists=True, dir_okay=False, help="Current calendar."),
    extended: bool = typer.Option(
        False, "--extended", help="Compare the extended fields as well."
    ),
) -> None:
    try:
        old_events = parse_events(old.read_bytes()).events
        new_events = parse_events(new.read_bytes()).events
    except CalendarParseError as exc:
        typer.echo(f"Cannot parse calendar: {exc}", err=True)
        raise typer.Exit(code=3) from exc

    comparator = EventComparator(RecurrenceNormalizer(), compare_extensions=extended)
    changed = compute_delta(old_events, new_events, True, comparator)
    removed = compute_delta(new_events, old_events, False, comparator)
    for ev in changed:
        typer.echo(f"+ {ev.uid} {ev.display_title()}")
    for ev in removed:
        typer.echo(f"- {ev.uid} {ev.display_title()}")
    typer.echo(f"changed={len(changed)} removed={len(removed)}")
    raise typer.Exit(code=0)


@app.command(help="Show the calendars tracked by the event registry.")
def status(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to YAML config file.", show_default=False
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Set log level to DEBUG (overrides config.logging.level)."
    ),
) -> None:
    cfg = _load(config, _cli_overrides_from_args(verbose=verbose))
    registry = OfflineEventRegistry(cfg.state.registry_path)
    registry.load()
    tracked = registry.calendars()
    typer.echo(f"registry: {cfg.state.registry_path}")
    for name, cal in cfg.calendars.items():
        typer.echo(f"  {name}: {tracked.get(cal.ics_url, 0)} events")
    untracked = set(tracked) - {cal.ics_url for cal in cfg.calendars.values()}
    if untracked:
        typer.echo(f"  (unconfigured calendars in registry: {len(untracked)})")
    raise typer.Exit(code=0)


if __name__ == "__main__":  # pragma: no cover
    app()
