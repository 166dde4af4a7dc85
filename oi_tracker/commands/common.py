from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import pandas as pd
import typer
from rich.console import Console
from rich.table import Table

from oi_tracker.config import DEFAULT_CONFIG_PATH, ConfigError
from oi_tracker.models import TrackerConfig

CONFIG_OPTION_HELP = "Path to tracker YAML config."


def _parse_date(value: str) -> date:
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise typer.BadParameter("Invalid date format. Use YYYY-MM-DD (recommended).")


def _parse_datetime(value: str | None) -> datetime | None:
    """ISO timestamp (naive values are UTC); a bare date means midnight UTC."""
    if value is None or not value.strip():
        return None
    raw = value.strip()
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        d = _parse_date(raw)
        dt = datetime(d.year, d.month, d.day)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def load_cli_config(ctx: typer.Context, config_path: Path | None, *, required: bool = True) -> TrackerConfig:
    from oi_tracker.cli_deps import load_config

    path = config_path or DEFAULT_CONFIG_PATH
    if not required and not path.exists():
        cfg = TrackerConfig()
    else:
        try:
            cfg = load_config(path)
        except ConfigError as exc:
            Console(stderr=True).print(f"[red]Config error:[/red] {exc}")
            raise typer.Exit(2) from exc

    overrides = ctx.obj if isinstance(ctx.obj, dict) else {}
    storage_update = {k: Path(v) for k, v in overrides.items() if k in {"duckdb_path", "archive_root"} and v is not None}
    if storage_update:
        cfg = cfg.model_copy(update={"storage": cfg.storage.model_copy(update=storage_update)})
    return cfg


def _stringify_cell(value: Any) -> str:
    if value is None or value is pd.NaT:
        return "-"
    if isinstance(value, float):
        if pd.isna(value):
            return "-"
        return f"{value:,.2f}"
    if isinstance(value, (datetime, date, pd.Timestamp)):
        return value.isoformat()
    text = str(value)
    return text or "-"


def render_rows(
    console: Console,
    *,
    title: str,
    rows: Sequence[dict[str, Any]],
    columns: Sequence[tuple[str, str]],
    empty_text: str,
) -> None:
    console.print(f"\n[bold]{title}[/bold]")
    if not rows:
        console.print(f"[yellow]{empty_text}[/yellow]")
        return

    table = Table(show_header=True)
    for label, _ in columns:
        table.add_column(label, overflow="fold")
    for row in rows:
        table.add_row(*[_stringify_cell(row.get(key)) for _, key in columns])
    console.print(table)


def render_frame(console: Console, df: pd.DataFrame, *, title: str, empty_text: str, limit: int | None = None) -> None:
    if limit is not None and limit > 0:
        df = df.tail(limit)
    rows = df.to_dict(orient="records")
    render_rows(
        console,
        title=title,
        rows=rows,
        columns=[(str(c), str(c)) for c in df.columns],
        empty_text=empty_text,
    )
