"""Command-line interface for codetime."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer

from .config import StatsSettings
from .errors import CodetimeError
from .models import Filters, User
from .paths import get_db_path
from .server_runner import run_server
from .service import StatsService

app = typer.Typer(help="Coding activity stats from editor heartbeats.")


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the server."),
    port: int = typer.Option(
        3000, "--port", min=1, max=65535, help="TCP port for the server."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the heartbeat SQLite database."
    ),
    idle_minutes: float = typer.Option(
        5.0,
        "--idle-timeout",
        min=0.5,
        help="Minutes between heartbeats after which activity counts as interrupted.",
    ),
    retention_days: Optional[float] = typer.Option(
        None,
        "--retention-days",
        min=1.0,
        help="Days of heartbeats kept by the prune command.",
    ),
) -> None:
    """Start the stats web server."""
    settings = StatsSettings.from_intervals(
        idle_minutes=idle_minutes,
        retention_days=retention_days,
    )
    run_server(host=host, port=port, db_path=db_path or get_db_path(), settings=settings)


@app.command()
def summary(
    user: str = typer.Option(..., "--user", "-u", help="User to summarize."),
    range_token: str = typer.Option(
        "last_7_days",
        "--range",
        "-r",
        help="Range token (today, week, last_30_days, any, YYYY-MM-DD, ...).",
    ),
    project: Optional[str] = typer.Option(None, "--project", help="Only count this project."),
    language: Optional[str] = typer.Option(None, "--language", help="Only count this language."),
    editor: Optional[str] = typer.Option(None, "--editor", help="Only count this editor."),
    operating_system: Optional[str] = typer.Option(
        None, "--operating-system", help="Only count this operating system."
    ),
    machine: Optional[str] = typer.Option(None, "--machine", help="Only count this machine."),
    label: Optional[str] = typer.Option(None, "--label", help="Only count this project label."),
    recompute: bool = typer.Option(False, "--recompute", help="Ignore cached summaries."),
    idle_minutes: float = typer.Option(
        5.0,
        "--idle-timeout",
        min=0.5,
        help="Minutes between heartbeats after which activity counts as interrupted.",
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the heartbeat SQLite database."
    ),
) -> None:
    """Print stats for a user and range."""
    from .reporting import SummaryPrinter

    service = StatsService.from_path(
        db_path or get_db_path(), StatsSettings.from_intervals(idle_minutes=idle_minutes)
    )
    filters = Filters(
        project=project,
        language=language,
        editor=editor,
        operating_system=operating_system,
        machine=machine,
        label=label,
    )
    try:
        SummaryPrinter(service).print_stats(user, range_token, filters, recompute=recompute)
    except CodetimeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


@app.command()
def prune(
    retention_days: float = typer.Option(
        365.0, "--retention-days", min=1.0, help="Keep heartbeats from this many days."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the heartbeat SQLite database."
    ),
) -> None:
    """Delete heartbeats older than the retention window."""
    settings = StatsSettings.from_intervals(idle_minutes=5.0, retention_days=retention_days)
    service = StatsService.from_path(db_path or get_db_path(), settings)
    deleted = service.prune()
    typer.echo(f"Deleted {deleted} heartbeats.")


@app.command()
def register(
    user: str = typer.Argument(..., help="User id."),
    timezone_name: str = typer.Option("UTC", "--timezone", help="IANA timezone name."),
    share_projects: bool = typer.Option(False, "--share-projects/--no-share-projects"),
    share_languages: bool = typer.Option(False, "--share-languages/--no-share-languages"),
    share_editors: bool = typer.Option(False, "--share-editors/--no-share-editors"),
    share_operating_systems: bool = typer.Option(False, "--share-os/--no-share-os"),
    share_machines: bool = typer.Option(False, "--share-machines/--no-share-machines"),
    share_data_max_days: int = typer.Option(
        0, "--share-days", help="Days others may look back; negative for no limit."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the heartbeat SQLite database."
    ),
) -> None:
    """Create or update a user and their sharing preferences."""
    service = StatsService.from_path(db_path or get_db_path())
    service.register_user(
        User(
            id=user,
            timezone=timezone_name,
            share_projects=share_projects,
            share_languages=share_languages,
            share_editors=share_editors,
            share_operating_systems=share_operating_systems,
            share_machines=share_machines,
            share_data_max_days=share_data_max_days,
        )
    )
    typer.echo(f"Saved user {user}.")


@app.command()
def alias(
    user: str = typer.Option(..., "--user", "-u", help="User owning the rule."),
    entity_type: str = typer.Option(
        "project", "--type", help="project, language, editor, operating_system or machine."
    ),
    key: str = typer.Option(..., "--key", help="Canonical name to report."),
    value: str = typer.Option(..., "--value", help="Raw name to fold into the key."),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the heartbeat SQLite database."
    ),
) -> None:
    """Fold a raw entity name into a canonical one."""
    service = StatsService.from_path(db_path or get_db_path())
    try:
        service.aliases.add_alias(user, entity_type, key, value)
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"{value} -> {key}")
