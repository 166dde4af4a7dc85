from __future__ import annotations

import logging
from pathlib import Path

import typer

from oi_tracker.commands import oi as oi_commands
from oi_tracker.commands import patterns as pattern_commands
from oi_tracker.commands import tracker as tracker_commands
from oi_tracker.data.storage_runtime import (
    reset_default_archive_root,
    reset_default_duckdb_path,
    set_default_archive_root,
    set_default_duckdb_path,
)
from oi_tracker.data.store_factory import close_warehouses
from oi_tracker.observability import finalize_run_logger, setup_run_logger

app = typer.Typer(add_completion=False, help="Options open-interest tracker (not financial advice).")
app.add_typer(oi_commands.app, name="oi")

app.command("run")(tracker_commands.run)
app.command("refresh")(tracker_commands.refresh)
app.command("rollup")(tracker_commands.rollup)
app.command("reconcile")(tracker_commands.reconcile)
app.command("sources")(tracker_commands.sources)
app.command("analyze")(pattern_commands.analyze)


@app.callback()
def main(
    ctx: typer.Context,
    log_dir: Path = typer.Option(Path("data/logs"), "--log-dir", help="Directory for per-run log files."),
    log_level: str = typer.Option("INFO", "--log-level", help="Log level (DEBUG, INFO, WARNING, ...)."),
    duckdb_path: Path | None = typer.Option(None, "--duckdb-path", help="Override the DuckDB warehouse path."),
    archive_root: Path | None = typer.Option(None, "--archive-root", help="Override the raw archive directory."),
) -> None:
    ctx.obj = {"duckdb_path": duckdb_path, "archive_root": archive_root}
    if duckdb_path is not None:
        duckdb_token = set_default_duckdb_path(duckdb_path)
        ctx.call_on_close(lambda: reset_default_duckdb_path(duckdb_token))
    if archive_root is not None:
        archive_token = set_default_archive_root(archive_root)
        ctx.call_on_close(lambda: reset_default_archive_root(archive_token))

    level = logging.getLevelName(log_level.strip().upper())
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}")

    command_name = ctx.invoked_subcommand or "oi-tracker"
    run_logger = setup_run_logger(log_dir, command_name, level=level)
    if run_logger is not None:
        ctx.call_on_close(lambda: finalize_run_logger(run_logger))
    ctx.call_on_close(close_warehouses)


if __name__ == "__main__":
    app()
