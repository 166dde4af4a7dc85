from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np
import pandas as pd

from oi_tracker.data.market_types import OptionStrikeSnapshot, StrikePair

SIDE_FIELDS = ("oi", "oi_change", "ltp", "ltp_change", "volume")
CHAIN_COLUMNS = ("strike",) + tuple(f"{side}_{f}" for side in ("call", "put") for f in SIDE_FIELDS)

# Flat row keys (as used by dashboards/backtests) -> frame columns.
_FLAT_KEYS = {
    "strike": "strike",
    "callOI": "call_oi",
    "callOIChange": "call_oi_change",
    "callLTP": "call_ltp",
    "callLTPChange": "call_ltp_change",
    "callVolume": "call_volume",
    "putOI": "put_oi",
    "putOIChange": "put_oi_change",
    "putLTP": "put_ltp",
    "putLTPChange": "put_ltp_change",
    "putVolume": "put_volume",
}


def _side_values(side: OptionStrikeSnapshot | None) -> list[float]:
    if side is None:
        return [0.0] * len(SIDE_FIELDS)
    return [
        float(side.open_interest),
        float(side.oi_change),
        float(side.last_price),
        float(side.price_change),
        float(side.volume),
    ]


def chain_to_frame(chain: pd.DataFrame | Sequence[StrikePair] | Iterable[dict[str, Any]] | None) -> pd.DataFrame:
    """Wide per-strike frame (`strike`, `call_oi`, ..., `put_volume`), sorted, missing values as 0.

    Accepts strike pairs, an existing frame, or flat dict rows (`callOI`, `putLTPChange`, ...).
    """
    if chain is None:
        return pd.DataFrame(columns=list(CHAIN_COLUMNS), dtype="float64")

    if isinstance(chain, pd.DataFrame):
        df = chain.copy()
    else:
        items = list(chain)
        if items and isinstance(items[0], StrikePair):
            records = [[float(p.strike)] + _side_values(p.call) + _side_values(p.put) for p in items]
            df = pd.DataFrame(records, columns=list(CHAIN_COLUMNS))
        else:
            df = pd.DataFrame([{_FLAT_KEYS.get(k, k): v for k, v in dict(row).items()} for row in items])

    for col in CHAIN_COLUMNS:
        if col not in df.columns:
            df[col] = 0.0
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df[list(CHAIN_COLUMNS)].replace([np.inf, -np.inf], np.nan).fillna(0.0)
    df = df[df["strike"] > 0]
    df = df.drop_duplicates(subset=["strike"], keep="last").sort_values("strike", kind="mergesort")
    return df.reset_index(drop=True)


def find_atm_strike(strikes: Sequence[float] | pd.Series, price: float) -> float:
    """Strike closest to `price`; the lowest such strike wins a tie. Empty chain -> price."""
    arr = np.asarray(list(strikes), dtype="float64")
    if arr.size == 0:
        return float(price)
    return float(arr[int(np.argmin(np.abs(arr - float(price))))])


def compute_max_pain(chain: pd.DataFrame | Sequence[StrikePair]) -> float | None:
    """Strike minimizing total writer payout; the first (lowest) strike wins ties."""
    df = chain_to_frame(chain)
    if df.empty:
        return None
    strikes = df["strike"].to_numpy(dtype="float64")
    call_oi = df["call_oi"].to_numpy(dtype="float64")
    put_oi = df["put_oi"].to_numpy(dtype="float64")
    # payout[i] for candidate K = strikes[i]
    diff = strikes[:, None] - strikes[None, :]  # K - s
    payout = (np.clip(diff, 0.0, None) * call_oi[None, :]).sum(axis=1)
    payout += (np.clip(-diff, 0.0, None) * put_oi[None, :]).sum(axis=1)
    return float(strikes[int(np.argmin(payout))])


def put_call_ratio(total_put_oi: float, total_call_oi: float) -> float:
    if total_call_oi <= 0:
        return 0.0
    return float(total_put_oi) / float(total_call_oi)


@dataclass(frozen=True)
class ChainSummary:
    strike_count: int
    total_call_oi: int
    total_put_oi: int
    put_call_ratio: float
    max_pain_strike: float | None
    atm_strike: float


def summarize_chain(chain: pd.DataFrame | Sequence[StrikePair], current_price: float) -> ChainSummary:
    df = chain_to_frame(chain)
    total_call = int(df["call_oi"].sum()) if not df.empty else 0
    total_put = int(df["put_oi"].sum()) if not df.empty else 0
    return ChainSummary(
        strike_count=int(len(df)),
        total_call_oi=total_call,
        total_put_oi=total_put,
        put_call_ratio=put_call_ratio(total_put, total_call),
        max_pain_strike=compute_max_pain(df),
        atm_strike=find_atm_strike(df["strike"], current_price),
    )
