from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from oi_tracker.commands.common import CONFIG_OPTION_HELP, load_cli_config, render_rows
from oi_tracker.data.market_types import DataFetchError


def _load_chain(path: Path) -> tuple[list[Any], dict[str, Any]]:
    """Return (chain, metadata) from a JSON file.

    Accepted shapes:
    - a provider payload `{"data": [{"strikePrice": ..., "CE": {...}, "PE": {...}}], ...}`
    - a list of flat rows (`strike`, `callOI`, `callOIChange`, ..., `putVolume`)
    - `{"chain": [...flat rows...], "underlying": ..., "currentPrice": ..., "previousPrice": ...}`
    """
    from oi_tracker.data.providers.base import normalize_option_chain

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Cannot read chain file {path}: {exc}") from exc

    if isinstance(payload, list):
        return payload, {}
    if not isinstance(payload, dict):
        raise typer.BadParameter("Chain file must hold a JSON object or list.")
    if isinstance(payload.get("chain"), list):
        return payload["chain"], payload
    try:
        return normalize_option_chain(payload, source=path.name), payload
    except DataFetchError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _meta_float(meta: dict[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = meta.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def analyze(
    ctx: typer.Context,
    chain_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Option chain JSON file."),
    symbol: str | None = typer.Option(None, "--symbol", help="Underlying symbol (defaults to the file's)."),
    price: float | None = typer.Option(None, "--price", help="Current underlying price."),
    previous_price: float | None = typer.Option(None, "--previous-price", help="Previous close."),
    iv: float | None = typer.Option(None, "--iv", help="ATM implied volatility (percent), if known."),
    as_json: bool = typer.Option(False, "--json", help="Print signals as JSON."),
    config_path: Path | None = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Run the pattern engine over a saved option chain."""
    from oi_tracker.analysis.patterns import PatternContext, PatternEngine

    chain, meta = _load_chain(chain_path)
    current = price if price is not None else _meta_float(meta, "currentPrice", "underlyingValue", "current_price")
    if current is None or current <= 0:
        raise typer.BadParameter("Provide --price (no underlying price in the chain file).")
    previous = previous_price
    if previous is None:
        previous = _meta_float(meta, "previousPrice", "previous_price")
    underlying = (symbol or str(meta.get("underlying") or meta.get("symbol") or "UNKNOWN")).upper()

    cfg = load_cli_config(ctx, config_path, required=False)
    signals = PatternEngine(cfg.patterns).analyze(
        chain,
        PatternContext(
            underlying=underlying,
            current_price=current,
            previous_price=previous if previous is not None else current,
            implied_volatility=iv,
        ),
    )

    console = Console()
    if as_json:
        console.print_json(json.dumps([s.to_dict() for s in signals]))
        return
    render_rows(
        console,
        title=f"{underlying} patterns @ {current:g}",
        rows=[
            {
                "type": s.type.value,
                "strike": f"{s.strike:g}",
                "direction": s.direction,
                "confidence": f"{s.confidence:.2f}",
                "strength": s.strength,
                "description": s.description,
            }
            for s in signals
        ],
        columns=[
            ("Pattern", "type"),
            ("Strike", "strike"),
            ("Direction", "direction"),
            ("Confidence", "confidence"),
            ("Strength", "strength"),
            ("Description", "description"),
        ],
        empty_text="No patterns detected.",
    )
