from __future__ import annotations

from datetime import date, datetime, timezone
import time
from typing import Any

import numpy as np

from oi_tracker.data.market_types import DataFetchError, NotFoundError, Quote
from oi_tracker.data.providers.base import ProviderGateway


class MockGateway(ProviderGateway):
    """
    Deterministic, in-memory gateway for unit tests and demos.

    Notes:
    - Quotes may be given as `Quote` objects or plain last prices.
    - Chains are raw `{"data": [...]}` payloads so normalization runs exactly as for real providers.
    - `fail_with` makes every fetch raise the given error (login still succeeds).
    """

    name = "mock"

    def __init__(
        self,
        *,
        quote_by_symbol: dict[str, Quote | float] | None = None,
        chain_by_symbol: dict[str, dict[str, Any]] | None = None,
        fail_with: DataFetchError | None = None,
        delay_seconds: float = 0.0,
        min_interval_seconds: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(min_interval_seconds=min_interval_seconds, **kwargs)
        self._quote_by_symbol = {k.upper(): v for k, v in (quote_by_symbol or {}).items()}
        self._chain_by_symbol = {k.upper(): v for k, v in (chain_by_symbol or {}).items()}
        self.fail_with = fail_with
        self.delay_seconds = float(delay_seconds)
        self.fetch_count = 0

    def _login(self) -> None:
        return None

    def _refresh_token(self) -> None:
        return None

    def _maybe_fail(self) -> None:
        self.fetch_count += 1
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise self.fail_with

    def _fetch_quote(self, symbol: str) -> Quote:
        self._maybe_fail()
        sym = symbol.upper()
        if sym not in self._quote_by_symbol:
            raise NotFoundError(f"{self.name}: no quote for {sym}")
        value = self._quote_by_symbol[sym]
        if isinstance(value, Quote):
            return value
        price = float(value)
        return Quote(symbol=sym, last_price=price, close=price, timestamp=datetime.now(timezone.utc))

    def _fetch_option_chain(self, symbol: str, expiry: date | None) -> dict[str, Any]:  # noqa: ARG002
        self._maybe_fail()
        sym = symbol.upper()
        if sym not in self._chain_by_symbol:
            raise NotFoundError(f"{self.name}: no option chain for {sym}")
        return self._chain_by_symbol[sym]


_STRIKE_STEPS = {"NIFTY": 50.0, "BANKNIFTY": 100.0, "FINNIFTY": 50.0}
_BASE_PRICES = {"NIFTY": 24_500.0, "BANKNIFTY": 52_000.0, "FINNIFTY": 23_500.0}


class SimulatedGateway(ProviderGateway):
    """Seeded synthetic market for offline runs.

    Never a silent fallback: it is only present when configured explicitly, and every
    snapshot it produces is labelled `simulated` so it cannot pass for real data.
    """

    name = "simulated"

    def __init__(
        self,
        *,
        seed: int | None = None,
        strikes_each_side: int = 10,
        min_interval_seconds: float = 0.0,
        **kwargs: Any,
    ) -> None:
        kwargs.pop("name", None)
        super().__init__(min_interval_seconds=min_interval_seconds, **kwargs)
        self._rng = np.random.default_rng(seed)
        self._strikes_each_side = int(strikes_each_side)
        self._prices: dict[str, float] = {}
        self._open_interest: dict[tuple[str, float, str], int] = {}

    def _login(self) -> None:
        return None

    def _refresh_token(self) -> None:
        return None

    def _price(self, symbol: str) -> float:
        sym = symbol.upper()
        prev = self._prices.get(sym, _BASE_PRICES.get(sym, 20_000.0))
        nxt = float(prev * (1.0 + self._rng.normal(0.0, 0.001)))
        self._prices[sym] = nxt
        return nxt

    def _fetch_quote(self, symbol: str) -> Quote:
        sym = symbol.upper()
        prev = self._prices.get(sym, _BASE_PRICES.get(sym, 20_000.0))
        price = self._price(sym)
        return Quote(
            symbol=sym,
            last_price=round(price, 2),
            open=round(prev, 2),
            high=round(max(prev, price), 2),
            low=round(min(prev, price), 2),
            close=round(prev, 2),
            volume=int(self._rng.integers(100_000, 1_000_000)),
            timestamp=datetime.now(timezone.utc),
        )

    def _fetch_option_chain(self, symbol: str, expiry: date | None) -> dict[str, Any]:
        sym = symbol.upper()
        step = _STRIKE_STEPS.get(sym, 50.0)
        price = self._prices.get(sym) or self._price(sym)
        atm = round(price / step) * step
        offsets = np.arange(-self._strikes_each_side, self._strikes_each_side + 1)
        strikes = atm + offsets * step
        # OI peaks near the money and decays with distance.
        weight = np.exp(-((offsets / (self._strikes_each_side / 2.0)) ** 2))

        rows = []
        for strike, w in zip(strikes, weight):
            row: dict[str, Any] = {"strikePrice": float(strike), "expiryDate": expiry.isoformat() if expiry else None}
            for key, intrinsic in (("CE", max(price - strike, 0.0)), ("PE", max(strike - price, 0.0))):
                oi_key = (sym, float(strike), key)
                prev_oi = self._open_interest.get(oi_key, int(200_000 * w) + 1_000)
                new_oi = max(0, prev_oi + int(self._rng.normal(0.0, 5_000 * w + 100)))
                self._open_interest[oi_key] = new_oi
                premium = intrinsic + 150.0 * w + float(self._rng.uniform(0.0, 5.0))
                row[key] = {
                    "openInterest": new_oi,
                    "changeinOpenInterest": new_oi - prev_oi,
                    "lastPrice": round(premium, 2),
                    "change": round(float(self._rng.normal(0.0, 3.0)), 2),
                    "totalTradedVolume": int(self._rng.integers(0, 50_000) * w),
                }
            rows.append(row)
        return {"data": rows, "simulated": True}
