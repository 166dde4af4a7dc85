from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from oi_tracker.data.market_types import MarketSnapshot, OptionStrikeSnapshot, StrikePair

DEFAULT_TS = datetime(2026, 3, 9, 5, 0, tzinfo=timezone.utc)  # 10:30 IST, a Monday


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.t = float(start)
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds

    def advance(self, seconds: float) -> None:
        self.t += seconds


def chain_payload(oi_by_strike: dict[float, tuple[int, int]], **extra: Any) -> dict[str, Any]:
    """Provider-shaped `{"data": [...]}` payload with (call OI, put OI) per strike."""
    rows = []
    for strike, (call_oi, put_oi) in oi_by_strike.items():
        rows.append(
            {
                "strikePrice": strike,
                "CE": {"openInterest": call_oi, "changeinOpenInterest": 0, "lastPrice": 100.0, "change": 1.0, "totalTradedVolume": 500},
                "PE": {"openInterest": put_oi, "changeinOpenInterest": 0, "lastPrice": 90.0, "change": -1.0, "totalTradedVolume": 400},
            }
        )
    payload: dict[str, Any] = {"data": rows}
    payload.update(extra)
    return payload


def make_snapshot(
    oi: dict[tuple[float, str], int],
    *,
    symbol: str = "NIFTY",
    timestamp: datetime = DEFAULT_TS,
    source: str = "mock",
    price: float = 24_450.0,
    previous_price: float = 24_300.0,
) -> MarketSnapshot:
    by_strike: dict[float, dict[str, OptionStrikeSnapshot]] = {}
    for (strike, option_type), value in oi.items():
        by_strike.setdefault(float(strike), {})[option_type] = OptionStrikeSnapshot(
            strike=float(strike),
            option_type=option_type,  # type: ignore[arg-type]
            open_interest=value,
            last_price=100.0,
            volume=1_000,
        )
    chain = tuple(
        StrikePair(strike=strike, call=sides.get("CALL"), put=sides.get("PUT"))
        for strike, sides in sorted(by_strike.items())
    )
    return MarketSnapshot(
        symbol=symbol,
        timestamp=timestamp,
        current_price=price,
        previous_price=previous_price,
        chain=chain,
        data_source=source,
        raw={"quote": {"ltp": price}, "option_chain": {"data": []}},
    )
