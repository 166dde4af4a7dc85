from __future__ import annotations

from datetime import timedelta

import numpy as np
import pytest

from oi_tracker.analysis.patterns import PatternContext, PatternEngine, analyze
from oi_tracker.models import PatternThresholds
from oi_tracker.schemas.patterns import PatternType
from tests.oi_helpers import DEFAULT_TS


def _ctx(price: float = 24_450.0, previous: float = 24_300.0, **kwargs) -> PatternContext:
    return PatternContext(underlying="NIFTY", current_price=price, previous_price=previous, as_of=DEFAULT_TS, **kwargs)


def _of_type(signals, kind: PatternType):
    return [s for s in signals if s.type == kind]


BUILDUP_ROW = {
    "strike": 24_400,
    "callOI": 80_000,
    "callOIChange": 15_000,
    "callLTP": 120,
    "callLTPChange": 8,
    "callVolume": 20_000,
}


def test_call_long_buildup_is_the_only_signal() -> None:
    signals = analyze([BUILDUP_ROW], _ctx())

    assert len(signals) == 1
    sig = signals[0]
    assert sig.type == PatternType.CALL_LONG_BUILDUP
    assert sig.direction == "BULLISH"
    assert sig.strike == 24_400.0
    assert sig.confidence == pytest.approx(0.95)
    assert sig.strength == "HIGH"
    assert sig.timestamp == DEFAULT_TS
    assert sig.valid_until == DEFAULT_TS + timedelta(hours=4)
    assert sig.id == f"call_long_buildup_NIFTY_24400_{int(DEFAULT_TS.timestamp() * 1000)}"
    assert [i.status for i in sig.indicators] == ["TRIGGERED", "TRIGGERED", "TRIGGERED"]


def test_thresholds_are_configurable() -> None:
    engine = PatternEngine(PatternThresholds(oi_buildup_threshold=20_000))
    assert engine.analyze([BUILDUP_ROW], _ctx()) == []


def test_put_long_buildup_below_atm() -> None:
    rows = [
        {"strike": 24_300, "putOI": 50_000, "putOIChange": 12_000, "putLTPChange": 3, "putVolume": 5_000},
        {"strike": 24_500, "putOI": 10_000, "putOIChange": 12_000, "putLTPChange": 3},
    ]

    [sig] = _of_type(analyze(rows, _ctx(price=24_320.0)), PatternType.PUT_LONG_BUILDUP)

    assert sig.strike == 24_300.0
    assert sig.direction == "BEARISH"
    # 0.4 * 1 + 0.3 * (3 / 5) + 0.3 * (5000 / 10000)
    assert sig.confidence == pytest.approx(0.73)
    assert sig.strength == "MEDIUM"


def test_put_short_covering() -> None:
    rows = [{"strike": 24_400, "putOI": 20_000, "putOIChange": -6_000, "putLTPChange": 4, "putVolume": 12_000}]

    assert _of_type(analyze(rows, _ctx()), PatternType.PUT_SHORT_COVER) == []

    rows[0]["putLTPChange"] = 6
    [sig] = _of_type(analyze(rows, _ctx()), PatternType.PUT_SHORT_COVER)
    assert sig.direction == "BEARISH"
    assert sig.confidence == pytest.approx(0.95)


def test_gamma_concentration_direction_and_confidence() -> None:
    rows = [{"strike": 24_400, "callOI": 300_000, "putOI": 100_000}, {"strike": 30_000, "callOI": 900_000}]

    [sig] = _of_type(analyze(rows, _ctx()), PatternType.GAMMA_SQUEEZE)
    assert sig.direction == "BULLISH"
    assert sig.confidence == pytest.approx(0.8)
    assert sig.strike == 24_400.0

    balanced = [{"strike": 24_400, "callOI": 100_000, "putOI": 100_000}]
    [tie] = _of_type(analyze(balanced, _ctx()), PatternType.GAMMA_SQUEEZE)
    assert tie.direction == "NEUTRAL"


def test_volatility_spike_uses_mean_absolute_premium_change() -> None:
    rows = [
        {"strike": 24_400, "callLTPChange": 20},
        {"strike": 24_500, "callLTPChange": -16},
    ]

    [sig] = _of_type(analyze(rows, _ctx(implied_volatility=30.0)), PatternType.VOLATILITY_SPIKE)

    assert sig.direction == "NEUTRAL"
    assert sig.confidence == pytest.approx(18 / 30)
    iv = [i for i in sig.indicators if i.name == "Implied Volatility"]
    assert iv and iv[0].status == "TRIGGERED"

    calm = [{"strike": 24_400, "callLTPChange": 15}]
    assert _of_type(analyze(calm, _ctx()), PatternType.VOLATILITY_SPIKE) == []


def test_unusual_activity_volume_relative_to_open_interest() -> None:
    rows = [
        {"strike": 24_400, "callOI": 40_000, "callVolume": 30_000},
        {"strike": 24_500, "callOI": 1_000, "callVolume": 15_000},
    ]

    [sig] = _of_type(analyze(rows, _ctx()), PatternType.UNUSUAL_ACTIVITY)

    assert sig.strike == 24_400.0
    assert sig.direction == "BULLISH"
    assert sig.confidence == pytest.approx(0.75)


def test_support_and_resistance_are_ranked_by_confidence() -> None:
    rows = [
        {"strike": 24_400, "callOI": 10_000, "putOI": 70_000},
        {"strike": 24_500, "callOI": 60_000},
        {"strike": 23_000, "putOI": 500_000},
    ]

    signals = analyze(rows, _ctx())
    levels = _of_type(signals, PatternType.SUPPORT_RESISTANCE)

    assert [(s.strike, s.direction) for s in levels] == [(24_400.0, "BULLISH"), (24_500.0, "BEARISH")]
    assert [s.confidence for s in levels] == pytest.approx([0.8, 0.6])
    confidences = [s.confidence for s in signals]
    assert confidences == sorted(confidences, reverse=True)


def test_momentum_requires_flow_to_agree_with_price() -> None:
    rows = [{"strike": 24_000, "callOIChange": 2_000, "putOIChange": 500}]

    [sig] = _of_type(analyze(rows, _ctx(price=25_000.0, previous=24_000.0)), PatternType.MOMENTUM_SHIFT)
    assert sig.direction == "BULLISH"
    assert sig.confidence == pytest.approx((1_000 / 24_000 * 100) / 5.0)

    opposed = [{"strike": 24_000, "callOIChange": 500, "putOIChange": 2_000}]
    assert _of_type(analyze(opposed, _ctx(price=25_000.0, previous=24_000.0)), PatternType.MOMENTUM_SHIFT) == []


def test_max_pain_distance() -> None:
    rows = [{"strike": 24_000, "callOI": 50_000, "putOI": 50_000}]

    [sig] = _of_type(analyze(rows, _ctx(price=25_000.0, previous=25_000.0)), PatternType.MAX_PAIN)
    assert sig.strike == 24_000.0
    assert sig.direction == "BEARISH"
    assert sig.confidence == pytest.approx(0.4)

    assert _of_type(analyze(rows, _ctx(price=24_100.0, previous=24_100.0)), PatternType.MAX_PAIN) == []


def test_empty_chain_has_no_signals() -> None:
    assert analyze([], _ctx()) == []
    assert analyze(None, _ctx()) == []


def test_indicator_status_bands() -> None:
    engine = PatternEngine()
    assert engine._indicator("x", 10.1, 10).status == "TRIGGERED"
    assert engine._indicator("x", 10.0, 10).status == "TRIGGERED"
    assert engine._indicator("x", 9.9, 10).status == "APPROACHING"
    assert engine._indicator("x", 8.0, 10).status == "APPROACHING"
    assert engine._indicator("x", 7.9, 10).status == "NORMAL"


def test_random_chains_keep_confidence_bounded_and_are_deterministic() -> None:
    rng = np.random.default_rng(7)
    engine = PatternEngine()
    for _ in range(25):
        n = int(rng.integers(1, 30))
        strikes = 24_000 + 50 * np.arange(n)
        rows = [
            {
                "strike": float(k),
                "callOI": float(rng.integers(0, 400_000)),
                "putOI": float(rng.integers(0, 400_000)),
                "callOIChange": float(rng.integers(-40_000, 40_000)),
                "putOIChange": float(rng.integers(-40_000, 40_000)),
                "callLTPChange": float(rng.normal(0, 25)),
                "putLTPChange": float(rng.normal(0, 25)),
                "callVolume": float(rng.integers(0, 300_000)),
                "putVolume": float(rng.integers(0, 300_000)),
            }
            for k in strikes
        ]
        ctx = _ctx(price=float(rng.uniform(23_500, 25_500)), previous=float(rng.uniform(23_500, 25_500)))

        signals = engine.analyze(rows, ctx)

        for sig in signals:
            assert 0.0 <= sig.confidence <= 0.95
            expected = "HIGH" if sig.confidence > 0.8 else "MEDIUM" if sig.confidence > 0.6 else "LOW"
            assert sig.strength == expected
        assert [s.to_dict() for s in engine.analyze(rows, ctx)] == [s.to_dict() for s in signals]
