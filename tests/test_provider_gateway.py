from __future__ import annotations

from datetime import date
import threading
import time
from typing import Any

import pytest

from oi_tracker.data.market_types import (
    AuthError,
    DataFetchError,
    MalformedPayloadError,
    NetworkError,
    ProviderTimeoutError,
    Quote,
)
from oi_tracker.data.providers import MockGateway, SimulatedGateway, available_gateways, get_gateway
from oi_tracker.data.providers.base import ProviderGateway, normalize_option_chain
from tests.oi_helpers import FakeClock, chain_payload


class ScriptedGateway(ProviderGateway):
    name = "scripted"

    def __init__(
        self,
        *,
        quote_errors: list[DataFetchError] | None = None,
        refresh_error: DataFetchError | None = None,
        quote_seconds: float = 0.0,
        clock: FakeClock | None = None,
        **kwargs: Any,
    ) -> None:
        self.fake_clock = clock or FakeClock()
        super().__init__(min_interval_seconds=0.0, clock=self.fake_clock.now, **kwargs)
        self.quote_errors = list(quote_errors or [])
        self.refresh_error = refresh_error
        self.quote_seconds = quote_seconds
        self.logins = 0
        self.refresh_calls = 0
        self.quote_calls = 0

    def _login(self) -> None:
        self.logins += 1

    def _refresh_token(self) -> None:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error

    def _fetch_quote(self, symbol: str) -> Quote:
        self.quote_calls += 1
        self.fake_clock.advance(self.quote_seconds)
        if self.quote_errors:
            raise self.quote_errors.pop(0)
        return Quote(symbol=symbol, last_price=24_450.0, close=24_300.0)

    def _fetch_option_chain(self, symbol: str, expiry: date | None) -> dict[str, Any]:
        return chain_payload({24_400.0: (1_000, 2_000)})


def test_first_call_logs_in_lazily() -> None:
    gw = ScriptedGateway()
    assert not gw.is_authenticated

    quote = gw.get_quote("NIFTY")

    assert quote.last_price == 24_450.0
    assert gw.logins == 1
    assert gw.is_authenticated


def test_unauthorized_refreshes_once_and_retries() -> None:
    gw = ScriptedGateway(quote_errors=[AuthError("HTTP 401")])

    quote = gw.get_quote("NIFTY")

    assert quote.symbol == "NIFTY"
    assert gw.refresh_calls == 1
    assert gw.quote_calls == 2
    stats = gw.stats()
    assert stats.total_calls == 1
    assert stats.successful_calls == 1
    assert stats.auth_refreshes == 1


def test_second_unauthorized_after_refresh_is_not_retried_again() -> None:
    gw = ScriptedGateway(quote_errors=[AuthError("HTTP 401"), AuthError("HTTP 401")])

    with pytest.raises(AuthError):
        gw.get_quote("NIFTY")

    assert gw.refresh_calls == 1
    assert gw.quote_calls == 2
    assert gw.stats().failed_calls == 1


def test_failed_refresh_marks_gateway_unauthenticated_and_fails_fast() -> None:
    gw = ScriptedGateway(quote_errors=[AuthError("HTTP 401")], refresh_error=AuthError("refresh rejected"))

    with pytest.raises(AuthError):
        gw.get_quote("NIFTY")
    assert gw.is_unauthenticated
    assert not gw.is_authenticated

    with pytest.raises(AuthError, match="unauthenticated"):
        gw.get_quote("NIFTY")
    assert gw.quote_calls == 1
    assert gw.refresh_calls == 1
    assert gw.stats().failed_calls == 2

    gw.initialize()
    assert not gw.is_unauthenticated
    assert gw.get_quote("NIFTY").last_price == 24_450.0


def test_non_auth_errors_are_not_retried() -> None:
    gw = ScriptedGateway(quote_errors=[NetworkError("HTTP 503")])

    with pytest.raises(NetworkError):
        gw.get_quote("NIFTY")

    assert gw.refresh_calls == 0
    assert gw.quote_calls == 1
    assert gw.stats().last_error == "HTTP 503"


def test_slow_call_raises_timeout() -> None:
    gw = ScriptedGateway(quote_seconds=11.0, timeout_seconds=10.0)

    with pytest.raises(ProviderTimeoutError):
        gw.get_quote("NIFTY")

    assert gw.get_quote("NIFTY", timeout_seconds=20.0).last_price == 24_450.0


def test_hung_call_is_cut_off_at_the_deadline() -> None:
    gw = MockGateway(quote_by_symbol={"NIFTY": 24_450.0}, delay_seconds=1.5, timeout_seconds=0.1)

    started = time.monotonic()
    with pytest.raises(ProviderTimeoutError):
        gw.get_quote("NIFTY")
    assert time.monotonic() - started < 1.0

    gw.delay_seconds = 0.0
    assert gw.get_quote("NIFTY", timeout_seconds=1.0).last_price == 24_450.0
    assert gw.stats().failed_calls == 1


class StartRecordingGateway(MockGateway):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(quote_by_symbol={"NIFTY": 24_450.0}, **kwargs)
        self.starts: list[float] = []
        self._starts_lock = threading.Lock()

    def _fetch_quote(self, symbol: str) -> Quote:
        with self._starts_lock:
            self.starts.append(time.monotonic())
        return super()._fetch_quote(symbol)


def test_concurrent_callers_are_spaced_by_the_interval() -> None:
    interval = 0.05
    gw = StartRecordingGateway(min_interval_seconds=interval)
    gw.initialize()

    def _worker() -> None:
        for _ in range(2):
            gw.get_quote("NIFTY")

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    starts = sorted(gw.starts)
    assert len(starts) == 8
    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert min(gaps) >= interval - 0.01
    assert starts[-1] - starts[0] >= 7 * interval - 0.01


def test_get_option_chain_normalizes_payload() -> None:
    pairs = ScriptedGateway().get_option_chain("NIFTY")

    assert [p.strike for p in pairs] == [24_400.0]
    assert pairs[0].call is not None and pairs[0].call.open_interest == 1_000
    assert pairs[0].put is not None and pairs[0].put.open_interest == 2_000


def test_normalize_option_chain_sorts_and_keeps_last_duplicate() -> None:
    payload = {
        "data": [
            {"strikePrice": 24_500, "CE": {"openInterest": 10}},
            {"strikePrice": 24_400, "PE": {"openInterest": 20, "changeInOpenInterest": 5, "volume": 7}},
            {"strikePrice": 24_500, "CE": {"openInterest": 30}},
        ]
    }
    pairs = normalize_option_chain(payload, source="test")

    assert [p.strike for p in pairs] == [24_400.0, 24_500.0]
    assert pairs[0].call is None
    assert pairs[0].put is not None
    assert pairs[0].put.oi_change == 5
    assert pairs[0].put.volume == 7
    assert pairs[1].call is not None and pairs[1].call.open_interest == 30


@pytest.mark.parametrize(
    "payload",
    [
        None,
        {"records": []},
        {"data": [{"strikePrice": 0, "CE": {"openInterest": 1}}]},
        {"data": [{"strikePrice": 24_400, "CE": {"openInterest": -5}}]},
        {"data": ["not-a-row"]},
    ],
)
def test_normalize_option_chain_rejects_malformed_payloads(payload: Any) -> None:
    with pytest.raises(MalformedPayloadError):
        normalize_option_chain(payload, source="test")


def test_get_gateway_resolves_aliases_and_names() -> None:
    assert set(available_gateways()) == {"angel_one", "dhan", "mock", "simulated"}
    assert get_gateway("sim").name == "simulated"
    assert get_gateway("mock", name="backup").name == "backup"
    with pytest.raises(ValueError, match="Unknown gateway"):
        get_gateway("bloomberg")


def test_simulated_gateway_is_seeded_and_labelled() -> None:
    a = SimulatedGateway(seed=7)
    b = SimulatedGateway(seed=7, name="primary")

    assert b.name == "simulated"
    assert a.get_quote("NIFTY").last_price == b.get_quote("NIFTY").last_price
    assert a.get_option_chain("NIFTY") == b.get_option_chain("NIFTY")
    assert a.get_option_chain_raw("NIFTY")["simulated"] is True
