from __future__ import annotations

from pathlib import Path

import pandas as pd
import typer
from rich.console import Console

from oi_tracker.commands.common import CONFIG_OPTION_HELP, _parse_date, _parse_datetime, load_cli_config, render_frame

app = typer.Typer(help="Query persisted open-interest series.")


def _emit(console: Console, df: pd.DataFrame, *, as_json: bool, title: str, empty_text: str, limit: int) -> None:
    if as_json:
        rows = df.tail(limit) if limit > 0 else df
        console.print_json(rows.to_json(orient="records", date_format="iso"))
        return
    render_frame(console, df, title=title, empty_text=empty_text, limit=limit)


@app.command("intraday")
def intraday(
    ctx: typer.Context,
    symbol: str = typer.Argument(..., help="Underlying symbol, e.g. NIFTY."),
    start: str | None = typer.Option(None, "--from", help="Start timestamp (ISO, UTC when naive)."),
    end: str | None = typer.Option(None, "--to", help="End timestamp (ISO, UTC when naive)."),
    limit: int = typer.Option(200, "--limit", help="Show only the latest N rows (0 = all)."),
    as_json: bool = typer.Option(False, "--json", help="Print rows as JSON."),
    config_path: Path | None = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Intraday strike-level open interest."""
    from oi_tracker.cli_deps import build_persister

    cfg = load_cli_config(ctx, config_path, required=False)
    df = build_persister(cfg).get_intraday_oi(symbol, _parse_datetime(start), _parse_datetime(end))
    _emit(
        Console(),
        df,
        as_json=as_json,
        title=f"{symbol.upper()} intraday OI",
        empty_text="No intraday rows.",
        limit=limit,
    )


@app.command("daily")
def daily(
    ctx: typer.Context,
    symbol: str = typer.Argument(..., help="Underlying symbol, e.g. NIFTY."),
    start: str | None = typer.Option(None, "--from", help="First trading date (YYYY-MM-DD)."),
    end: str | None = typer.Option(None, "--to", help="Last trading date (YYYY-MM-DD)."),
    limit: int = typer.Option(0, "--limit", help="Show only the latest N rows (0 = all)."),
    as_json: bool = typer.Option(False, "--json", help="Print rows as JSON."),
    config_path: Path | None = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """End-of-day open interest rolled up from the last snapshot of each session."""
    from oi_tracker.cli_deps import build_persister

    cfg = load_cli_config(ctx, config_path, required=False)
    df = build_persister(cfg).get_daily_oi(
        symbol,
        _parse_date(start) if start else None,
        _parse_date(end) if end else None,
    )
    _emit(
        Console(),
        df,
        as_json=as_json,
        title=f"{symbol.upper()} daily OI",
        empty_text="No daily rows.",
        limit=limit,
    )


@app.command("deltas")
def deltas(
    ctx: typer.Context,
    symbol: str = typer.Argument(..., help="Underlying symbol, e.g. NIFTY."),
    start: str | None = typer.Option(None, "--from", help="Start timestamp (ISO, UTC when naive)."),
    end: str | None = typer.Option(None, "--to", help="End timestamp (ISO, UTC when naive)."),
    severity: str | None = typer.Option(None, "--severity", help="Filter by severity: large or moderate."),
    limit: int = typer.Option(200, "--limit", help="Show only the latest N rows (0 = all)."),
    as_json: bool = typer.Option(False, "--json", help="Print rows as JSON."),
    config_path: Path | None = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Logged open-interest changes between consecutive snapshots."""
    from oi_tracker.cli_deps import build_persister

    if severity is not None and severity.strip().lower() not in {"large", "moderate"}:
        raise typer.BadParameter("--severity must be 'large' or 'moderate'")
    cfg = load_cli_config(ctx, config_path, required=False)
    df = build_persister(cfg).get_oi_deltas(
        symbol,
        _parse_datetime(start),
        _parse_datetime(end),
        severity=severity.strip().lower() if severity else None,
    )
    _emit(
        Console(),
        df,
        as_json=as_json,
        title=f"{symbol.upper()} OI deltas",
        empty_text="No OI deltas.",
        limit=limit,
    )
