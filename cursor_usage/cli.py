from __future__ import annotations

import json
import logging
import time

import typer
from rich import print
from rich.table import Table

from . import __version__
from .config import get_config_path, load_config
from .engine import UsageEngine
from .store import ActivityUpdate, UsageRow

app = typer.Typer(help="cursor-usage: token usage from Cursor conversations")


def _engine(db_path: str | None, *, file_watch: bool) -> UsageEngine:
    return UsageEngine(load_config(), db_path=db_path, file_watch=file_watch)


def _format_ts(value: int) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(value / 1000))


def _rows_table(rows: list[UsageRow]) -> Table:
    table = Table(title=f"{len(rows)} usage rows")
    table.add_column("time")
    table.add_column("session")
    table.add_column("project")
    table.add_column("model")
    table.add_column("input", justify="right")
    table.add_column("output", justify="right")
    table.add_column("cost", justify="right")
    table.add_column("est", justify="center")
    for row in rows:
        table.add_row(
            _format_ts(row.timestamp),
            row.session_name or row.session_id[:8],
            row.project_name or "",
            f"{row.provider_id}/{row.model_id}",
            str(row.tokens.input),
            str(row.tokens.output),
            f"{row.cost:.4f}" if row.cost is not None else "",
            "~" if row.is_estimated else "",
        )
    return table


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
) -> None:
    if version:
        print(__version__)
        raise typer.Exit()
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    if ctx.invoked_subcommand is None:
        print(ctx.get_help())


@app.command("sessions")
def sessions(
    session_id: str = typer.Option(None, "--session-id", help="Only parse this conversation"),
    limit: int = typer.Option(None, help="Maximum number of conversations"),
    since: int = typer.Option(None, help="Only conversations updated after this epoch ms"),
    db_path: str = typer.Option(None, help="Path to the editor state database"),
    as_json: bool = typer.Option(False, "--json", help="Print rows as JSON"),
) -> None:
    """Parse conversations once and print token usage rows."""

    engine = _engine(db_path, file_watch=False)
    try:
        rows = engine.parse(session_id=session_id, limit=limit, since=since)
    finally:
        engine.shutdown()
    if as_json:
        typer.echo(json.dumps([row.to_dict() for row in rows], ensure_ascii=False, indent=2))
        return
    if not rows:
        print("No usage rows")
        return
    print(_rows_table(rows))


@app.command("watch")
def watch(
    db_path: str = typer.Option(None, help="Path to the editor state database"),
    duration: float = typer.Option(0.0, help="Seconds to watch; 0 runs until interrupted"),
) -> None:
    """Print new assistant turns as they are written."""

    def _print_update(update: ActivityUpdate) -> None:
        marker = " ~" if update.is_estimated else ""
        print(
            f"{_format_ts(update.timestamp)} {update.session_id[:8]} {update.message_id[:8]} "
            f"in={update.tokens.input} out={update.tokens.output}{marker}"
        )

    engine = _engine(db_path, file_watch=True)
    engine.start_watch(_print_update)
    deadline = time.monotonic() + duration if duration > 0 else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        engine.shutdown()


@app.command("config-path")
def config_path() -> None:
    """Show where configuration is read from."""

    print(str(get_config_path()))
