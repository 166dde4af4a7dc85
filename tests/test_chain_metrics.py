from __future__ import annotations

import pytest

from oi_tracker.analysis.chain_metrics import (
    CHAIN_COLUMNS,
    chain_to_frame,
    compute_max_pain,
    find_atm_strike,
    put_call_ratio,
    summarize_chain,
)
from oi_tracker.data.market_types import OptionStrikeSnapshot, StrikePair


def _pair(strike: float, call_oi: int = 0, put_oi: int = 0) -> StrikePair:
    return StrikePair(
        strike=strike,
        call=OptionStrikeSnapshot(strike=strike, option_type="CALL", open_interest=call_oi) if call_oi else None,
        put=OptionStrikeSnapshot(strike=strike, option_type="PUT", open_interest=put_oi) if put_oi else None,
    )


def test_max_pain_sits_on_the_only_strike_with_open_interest() -> None:
    chain = [_pair(24_300.0), _pair(24_400.0, call_oi=50_000, put_oi=50_000), _pair(24_500.0)]
    assert compute_max_pain(chain) == 24_400.0


def test_max_pain_weighs_call_and_put_writers() -> None:
    # Heavy put OI at 24500 pulls the minimum payout up to that strike.
    chain = [_pair(24_300.0, call_oi=10_000), _pair(24_400.0, call_oi=10_000), _pair(24_500.0, put_oi=90_000)]
    assert compute_max_pain(chain) == 24_500.0


def test_max_pain_of_empty_chain_is_none() -> None:
    assert compute_max_pain([]) is None


def test_atm_strike_prefers_lower_strike_on_tie() -> None:
    strikes = [24_300.0, 24_400.0, 24_500.0]
    assert find_atm_strike(strikes, 24_450.0) == 24_400.0
    assert find_atm_strike(strikes, 24_460.0) == 24_500.0
    assert find_atm_strike([], 24_460.0) == 24_460.0


def test_put_call_ratio_with_no_calls_is_zero() -> None:
    assert put_call_ratio(5_000, 0) == 0.0
    assert put_call_ratio(5_000, 10_000) == pytest.approx(0.5)


def test_flat_rows_map_to_frame_columns() -> None:
    df = chain_to_frame(
        [
            {"strike": 24_500, "callOI": 10, "putLTPChange": -2.5},
            {"strike": 24_400, "callOI": 80_000, "callOIChange": 15_000, "callVolume": None},
            {"strike": 0, "callOI": 1},
        ]
    )

    assert list(df.columns) == list(CHAIN_COLUMNS)
    assert list(df["strike"]) == [24_400.0, 24_500.0]
    assert df.loc[0, "call_oi_change"] == 15_000
    assert df.loc[0, "call_volume"] == 0.0
    assert df.loc[1, "put_ltp_change"] == -2.5


def test_summarize_chain_totals() -> None:
    chain = [_pair(24_400.0, call_oi=80_000, put_oi=40_000), _pair(24_500.0, call_oi=20_000)]

    summary = summarize_chain(chain, 24_480.0)

    assert summary.strike_count == 2
    assert summary.total_call_oi == 100_000
    assert summary.total_put_oi == 40_000
    assert summary.put_call_ratio == pytest.approx(0.4)
    assert summary.atm_strike == 24_500.0
    assert summary.max_pain_strike == 24_400.0
