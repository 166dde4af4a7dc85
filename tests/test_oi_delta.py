from __future__ import annotations

from datetime import timedelta
import threading

import pytest

from oi_tracker.data.oi_delta import OIDeltaTracker
from tests.oi_helpers import DEFAULT_TS, make_snapshot


def test_delta_and_percent_change() -> None:
    tracker = OIDeltaTracker()
    tracker.prime("NIFTY", {(24_400.0, "CALL"): 1_000})

    records = tracker.observe(make_snapshot({(24_400.0, "CALL"): 1_500}))

    assert len(records) == 1
    rec = records[0]
    assert rec.old_oi == 1_000
    assert rec.new_oi == 1_500
    assert rec.delta_oi == 500
    assert rec.percent_change == pytest.approx(50.0)
    assert rec.severity == "moderate"
    assert rec.trigger_reason == "scheduled"
    assert rec.data_source == "mock"


def test_first_observation_starts_from_zero() -> None:
    tracker = OIDeltaTracker()

    records = tracker.observe(make_snapshot({(24_400.0, "CALL"): 1_200, (24_400.0, "PUT"): 0}))

    assert [(r.option_type, r.old_oi, r.delta_oi, r.percent_change) for r in records] == [("CALL", 0, 1_200, 0.0)]
    assert records[0].severity == "large"
    assert tracker.last_oi("NIFTY", 24_400.0, "PUT") == 0


def test_each_observation_gets_the_next_sequence() -> None:
    tracker = OIDeltaTracker()

    first = tracker.observe(make_snapshot({(24_400.0, "CALL"): 1_000}))
    tracker.observe(make_snapshot({(24_400.0, "CALL"): 1_000}))
    third = tracker.observe(make_snapshot({(24_400.0, "CALL"): 1_300}), trigger_reason="manual_refresh")

    assert [r.sequence for r in first] == [0]
    assert [r.sequence for r in third] == [2]
    assert third[0].timestamp == first[0].timestamp


def test_prime_continues_after_the_stored_sequence() -> None:
    tracker = OIDeltaTracker()
    tracker.prime("NIFTY", {(24_400.0, "CALL"): 1_000}, last_sequence=41)

    [rec] = tracker.observe(make_snapshot({(24_400.0, "CALL"): 1_100}))

    assert rec.sequence == 42


def test_unchanged_open_interest_emits_nothing() -> None:
    tracker = OIDeltaTracker()
    snap = make_snapshot({(24_400.0, "CALL"): 1_000})
    tracker.observe(snap)

    assert tracker.observe(make_snapshot({(24_400.0, "CALL"): 1_000}, timestamp=DEFAULT_TS + timedelta(minutes=1))) == []


def test_significance_floor_suppresses_small_changes_but_updates_baseline() -> None:
    tracker = OIDeltaTracker(significance_floor=100)
    tracker.prime("NIFTY", {(24_400.0, "PUT"): 1_000})

    assert tracker.observe(make_snapshot({(24_400.0, "PUT"): 1_050})) == []
    assert tracker.last_oi("NIFTY", 24_400.0, "PUT") == 1_050

    records = tracker.observe(make_snapshot({(24_400.0, "PUT"): 900}))
    assert [r.delta_oi for r in records] == [-150]
    assert records[0].percent_change == pytest.approx(-150 / 1_050 * 100)


def test_large_threshold_classifies_severity() -> None:
    tracker = OIDeltaTracker(large_delta_threshold=1_000)
    tracker.prime("NIFTY", {(24_400.0, "CALL"): 10_000, (24_500.0, "CALL"): 10_000})

    records = tracker.observe(make_snapshot({(24_400.0, "CALL"): 11_000, (24_500.0, "CALL"): 8_999}))

    assert {r.strike: r.severity for r in records} == {24_400.0: "moderate", 24_500.0: "large"}


def test_invalid_trigger_reason_is_rejected() -> None:
    with pytest.raises(ValueError, match="trigger_reason"):
        OIDeltaTracker().observe(make_snapshot({(24_400.0, "CALL"): 1}), trigger_reason="cron")  # type: ignore[arg-type]


def test_symbols_are_tracked_independently() -> None:
    tracker = OIDeltaTracker()
    tracker.observe(make_snapshot({(24_400.0, "CALL"): 1_000}, symbol="NIFTY"))

    records = tracker.observe(make_snapshot({(24_400.0, "CALL"): 1_000}, symbol="BANKNIFTY"))

    assert [r.old_oi for r in records] == [0]
    tracker.reset("NIFTY")
    assert tracker.last_oi("NIFTY", 24_400.0, "CALL") == 0
    assert tracker.last_oi("BANKNIFTY", 24_400.0, "CALL") == 1_000


def test_concurrent_observations_of_one_symbol_conserve_total_change() -> None:
    tracker = OIDeltaTracker()
    values = list(range(1, 201))
    totals: list[int] = []
    lock = threading.Lock()

    def worker(chunk: list[int]) -> None:
        for value in chunk:
            recs = tracker.observe(make_snapshot({(24_400.0, "CALL"): value}))
            with lock:
                totals.extend(r.delta_oi for r in recs)

    threads = [threading.Thread(target=worker, args=(values[i::4],)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # Deltas telescope: their sum is always the final value minus the zero baseline.
    assert sum(totals) == tracker.last_oi("NIFTY", 24_400.0, "CALL")
