from __future__ import annotations

from pathlib import Path
import threading

import typer
from rich.console import Console

from oi_tracker.commands.common import CONFIG_OPTION_HELP, load_cli_config, render_rows


def _orchestrator(ctx: typer.Context, config_path: Path | None):  # noqa: ANN202
    from oi_tracker.cli_deps import build_orchestrator

    cfg = load_cli_config(ctx, config_path)
    if not cfg.sources:
        Console(stderr=True).print("[red]Error:[/red] no data sources configured.")
        raise typer.Exit(2)
    return build_orchestrator(cfg)


def run(
    ctx: typer.Context,
    tick_seconds: float = typer.Option(1.0, "--tick-seconds", min=0.1, help="Scheduler tick interval."),
    config_path: Path | None = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Run the polling / end-of-day / reconciliation scheduler until interrupted."""
    orchestrator = _orchestrator(ctx, config_path)
    console = Console()
    console.print(
        f"Tracking {', '.join(orchestrator.symbols)} every {orchestrator.poll_interval_seconds:.0f}s "
        "(Ctrl+C to stop)"
    )
    stop_event = threading.Event()
    try:
        orchestrator.run_forever(stop_event, tick_seconds=tick_seconds)
    except KeyboardInterrupt:
        stop_event.set()
        console.print("Stopped.")


def refresh(
    ctx: typer.Context,
    symbols: list[str] | None = typer.Option(None, "--symbol", "-s", help="Symbol to refresh (repeatable)."),
    alert: bool = typer.Option(False, "--alert", help="Tag the run as alert-triggered instead of manual."),
    config_path: Path | None = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Acquire, diff, persist and analyze now, outside the polling cadence."""
    orchestrator = _orchestrator(ctx, config_path)
    results = orchestrator.run_cycle(symbols or None, trigger_reason="alert_trigger" if alert else "manual_refresh")

    rows = []
    for r in results:
        snap = r.snapshot
        rows.append(
            {
                "symbol": r.symbol,
                "status": "ok" if r.ok else f"skipped: {r.error}",
                "source": snap.data_source if snap else None,
                "price": snap.current_price if snap else None,
                "strikes": len(snap.chain) if snap else None,
                "rows": r.rows_written,
                "deltas": len(r.deltas),
                "signals": len(r.signals),
                "top_signal": r.signals[0].type.value if r.signals else None,
            }
        )
    console = Console()
    render_rows(
        console,
        title="Refresh",
        rows=rows,
        columns=[
            ("Symbol", "symbol"),
            ("Status", "status"),
            ("Source", "source"),
            ("Price", "price"),
            ("Strikes", "strikes"),
            ("Rows", "rows"),
            ("Deltas", "deltas"),
            ("Signals", "signals"),
            ("Top signal", "top_signal"),
        ],
        empty_text="No symbols to refresh.",
    )
    if results and not any(r.ok for r in results):
        raise typer.Exit(1)


def rollup(
    ctx: typer.Context,
    config_path: Path | None = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Roll today's final snapshot into the daily table and archive the raw payload."""
    orchestrator = _orchestrator(ctx, config_path)
    records = orchestrator.run_eod_rollup()
    render_rows(
        Console(),
        title="End-of-day rollup",
        rows=[
            {
                "symbol": r.symbol,
                "date": r.archive_date,
                "records": r.record_count,
                "bytes": r.byte_size,
                "checksum": r.checksum[:16],
                "location": r.location,
            }
            for r in records
        ],
        columns=[
            ("Symbol", "symbol"),
            ("Date", "date"),
            ("Records", "records"),
            ("Bytes", "bytes"),
            ("SHA-256", "checksum"),
            ("Location", "location"),
        ],
        empty_text="Nothing rolled up (no data available).",
    )


def reconcile(
    ctx: typer.Context,
    config_path: Path | None = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Run the weekly reconciliation hook now."""
    orchestrator = _orchestrator(ctx, config_path)
    results = orchestrator.run_reconciliation()
    render_rows(
        Console(),
        title="Reconciliation",
        rows=[
            {
                "symbol": r.symbol,
                "as_of": r.as_of,
                "status": r.status,
                "checked": r.checked_rows,
                "missing": r.missing_rows,
                "mismatched": r.mismatched_rows,
                "notes": r.notes,
            }
            for r in results
        ],
        columns=[
            ("Symbol", "symbol"),
            ("As of", "as_of"),
            ("Status", "status"),
            ("Checked", "checked"),
            ("Missing", "missing"),
            ("Mismatched", "mismatched"),
            ("Notes", "notes"),
        ],
        empty_text="No symbols configured.",
    )


def sources(
    ctx: typer.Context,
    config_path: Path | None = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Data source health: configured priority plus the last persisted counters."""
    from oi_tracker.cli_deps import build_persister, build_registry

    cfg = load_cli_config(ctx, config_path)
    configured = {m.name: m for m in build_registry(cfg).metrics()}
    stored = {str(row["source_name"]): row for row in build_persister(cfg).load_source_metrics().to_dict(orient="records")}

    rows = []
    for name, health in configured.items():
        row = stored.get(name, {})
        total = int(row.get("total_requests") or 0)
        ok = int(row.get("successful_requests") or 0)
        rows.append(
            {
                "name": name,
                "priority": health.priority,
                "active": "yes" if health.is_active else "no",
                "total": total,
                "success_rate": f"{ok / total * 100:.1f}%" if total else "-",
                "avg_ms": row.get("avg_response_time_ms"),
                "last_success": row.get("last_success"),
                "last_failure": row.get("last_failure"),
            }
        )
    render_rows(
        Console(),
        title="Data sources",
        rows=rows,
        columns=[
            ("Source", "name"),
            ("Priority", "priority"),
            ("Active", "active"),
            ("Requests", "total"),
            ("Success", "success_rate"),
            ("Avg ms", "avg_ms"),
            ("Last success", "last_success"),
            ("Last failure", "last_failure"),
        ],
        empty_text="No data sources configured.",
    )
