from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
import math
import threading
import time
from typing import Any, Callable, TypeVar

from oi_tracker.data.market_types import (
    AuthError,
    DataFetchError,
    MalformedPayloadError,
    OptionStrikeSnapshot,
    OptionType,
    ProviderTimeoutError,
    Quote,
    StrikePair,
)
from oi_tracker.data.rate_limits import DEFAULT_MIN_INTERVAL_SECONDS, SerialRateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CALL_TIMEOUT_SECONDS = 10.0

_SIDE_KEYS: dict[str, OptionType] = {"CE": "CALL", "PE": "PUT"}


@dataclass(frozen=True)
class GatewayStats:
    total_calls: int
    successful_calls: int
    failed_calls: int
    auth_refreshes: int
    last_success: datetime | None
    last_failure: datetime | None
    last_error: str | None


class ProviderGateway(ABC):
    """Authenticated fetch primitives for one upstream provider.

    Every outgoing request (login and refresh included) goes through one serialized
    queue with a minimum spacing between call starts. A 401 triggers one token
    refresh and one retry of the same call; a failed refresh leaves the gateway
    unauthenticated and later calls fail fast until `initialize()` succeeds again.
    """

    name: str = "provider"

    def __init__(
        self,
        *,
        name: str | None = None,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        limiter: SerialRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if name:
            self.name = name
        self.timeout_seconds = float(timeout_seconds)
        self._limiter = limiter or SerialRateLimiter(min_interval_seconds)
        self._clock = clock
        self._state_lock = threading.Lock()
        self._call_local = threading.local()
        self._authenticated = False
        self._auth_failed = False
        self._total = 0
        self._ok = 0
        self._failed = 0
        self._refreshes = 0
        self._last_success: datetime | None = None
        self._last_failure: datetime | None = None
        self._last_error: str | None = None

    # -- provider hooks -------------------------------------------------

    @abstractmethod
    def _login(self) -> None:
        """Obtain a session token. Raise AuthError on rejected credentials."""

    @abstractmethod
    def _refresh_token(self) -> None:
        """Exchange the refresh token for a new session token. Raise AuthError on failure."""

    @abstractmethod
    def _fetch_quote(self, symbol: str) -> Quote: ...

    @abstractmethod
    def _fetch_option_chain(self, symbol: str, expiry: date | None) -> dict[str, Any]: ...

    # -- public API -----------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    @property
    def is_unauthenticated(self) -> bool:
        """True once a token refresh has failed; cleared by `initialize()`."""
        return self._auth_failed

    def initialize(self) -> None:
        self._limiter.run(self._login)
        with self._state_lock:
            self._authenticated = True
            self._auth_failed = False

    def get_quote(self, symbol: str, *, timeout_seconds: float | None = None) -> Quote:
        return self._call("quote", self._fetch_quote, symbol, timeout_seconds=timeout_seconds)

    def get_option_chain(
        self,
        symbol: str,
        expiry: date | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> list[StrikePair]:
        payload = self.get_option_chain_raw(symbol, expiry, timeout_seconds=timeout_seconds)
        return normalize_option_chain(payload, source=self.name)

    def get_option_chain_raw(
        self,
        symbol: str,
        expiry: date | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        return self._call("option_chain", self._fetch_option_chain, symbol, expiry, timeout_seconds=timeout_seconds)

    def stats(self) -> GatewayStats:
        with self._state_lock:
            return GatewayStats(
                total_calls=self._total,
                successful_calls=self._ok,
                failed_calls=self._failed,
                auth_refreshes=self._refreshes,
                last_success=self._last_success,
                last_failure=self._last_failure,
                last_error=self._last_error,
            )

    # -- internals ------------------------------------------------------

    def _call(self, op: str, fn: Callable[..., T], *args: Any, timeout_seconds: float | None = None) -> T:
        timeout = self.timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        try:
            if self._auth_failed:
                raise AuthError(f"{self.name}: unauthenticated; re-initialize the gateway")
            if not self._authenticated:
                self.initialize()
            try:
                result = self._timed(op, timeout, fn, *args)
            except AuthError:
                self._refresh_or_fail()
                result = self._timed(op, timeout, fn, *args)
        except Exception as exc:  # noqa: BLE001
            self._record(ok=False, error=exc)
            raise
        self._record(ok=True)
        return result

    def _timed(self, op: str, timeout: float, fn: Callable[..., T], *args: Any) -> T:
        # Queue wait does not count against the timeout, only the request itself.
        elapsed = 0.0

        def _run() -> T:
            nonlocal elapsed
            self._call_local.timeout_seconds = timeout
            started = self._clock()
            try:
                return fn(*args)
            finally:
                elapsed = self._clock() - started

        def _run_with_deadline() -> T:
            pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.name}-{op}")
            future = pool.submit(_run)
            try:
                return future.result(timeout=timeout)
            except FuturesTimeoutError as exc:
                future.cancel()
                raise ProviderTimeoutError(f"{self.name} {op} exceeded {timeout:.1f}s") from exc
            finally:
                # An abandoned request finishes in the background; the queue moves on.
                pool.shutdown(wait=False)

        result = self._limiter.run(_run_with_deadline)
        if elapsed > timeout:
            raise ProviderTimeoutError(f"{self.name} {op} exceeded {timeout:.1f}s ({elapsed:.1f}s)")
        return result

    def current_timeout_seconds(self) -> float:
        """Timeout of the call running on this thread, else the gateway default."""
        return getattr(self._call_local, "timeout_seconds", self.timeout_seconds)

    def _refresh_or_fail(self) -> None:
        logger.info("%s: token rejected, refreshing once", self.name)
        with self._state_lock:
            self._refreshes += 1
        try:
            self._limiter.run(self._refresh_token)
        except DataFetchError as exc:
            with self._state_lock:
                self._authenticated = False
                self._auth_failed = True
            logger.warning("%s: token refresh failed: %s", self.name, exc)
            raise AuthError(f"{self.name}: token refresh failed: {exc}") from exc

    def _record(self, *, ok: bool, error: Exception | None = None) -> None:
        now = datetime.now(timezone.utc)
        with self._state_lock:
            self._total += 1
            if ok:
                self._ok += 1
                self._last_success = now
            else:
                self._failed += 1
                self._last_failure = now
                self._last_error = str(error) if error is not None else None


def coerce_float(value: Any) -> float:
    try:
        if value is None:
            return 0.0
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(out) or math.isinf(out):
        return 0.0
    return out


def coerce_int(value: Any) -> int:
    return int(round(coerce_float(value)))


def _parse_side(raw: Any, *, strike: float, option_type: OptionType) -> OptionStrikeSnapshot | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise MalformedPayloadError(f"{option_type} leg at strike {strike} is not an object")
    open_interest = coerce_int(raw.get("openInterest"))
    if open_interest < 0:
        raise MalformedPayloadError(f"negative open interest at strike {strike} {option_type}")
    oi_change = raw.get("changeinOpenInterest", raw.get("changeInOpenInterest"))
    volume = raw.get("totalTradedVolume", raw.get("volume"))
    return OptionStrikeSnapshot(
        strike=strike,
        option_type=option_type,
        open_interest=open_interest,
        oi_change=coerce_int(oi_change),
        last_price=max(0.0, coerce_float(raw.get("lastPrice"))),
        price_change=coerce_float(raw.get("change")),
        volume=max(0, coerce_int(volume)),
    )


def normalize_option_chain(payload: Any, *, source: str = "provider") -> list[StrikePair]:
    """Validate a `{"data": [{"strikePrice", "CE"?, "PE"?}, ...]}` payload into sorted strike pairs.

    Duplicate strikes keep the last entry seen.
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError(f"{source}: option chain payload is not an object")
    rows = payload.get("data")
    if not isinstance(rows, list):
        raise MalformedPayloadError(f"{source}: option chain payload has no 'data' list")

    by_strike: dict[float, StrikePair] = {}
    for row in rows:
        if not isinstance(row, dict):
            raise MalformedPayloadError(f"{source}: option chain row is not an object")
        strike = coerce_float(row.get("strikePrice"))
        if strike <= 0:
            raise MalformedPayloadError(f"{source}: invalid strikePrice {row.get('strikePrice')!r}")
        sides = {
            option_type: _parse_side(row.get(key), strike=strike, option_type=option_type)
            for key, option_type in _SIDE_KEYS.items()
        }
        by_strike[strike] = StrikePair(strike=strike, call=sides["CALL"], put=sides["PUT"])
    return [by_strike[strike] for strike in sorted(by_strike)]
