from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
import threading
import time
from typing import Any, Callable, Mapping, TypeVar

T = TypeVar("T")

DEFAULT_MIN_INTERVAL_SECONDS = 2.0


class SerialRateLimiter:
    """Runs calls one at a time, in arrival order, with a minimum spacing between call starts.

    Callers block until their turn; nothing is ever rejected. Spacing is measured from the
    start of the previous call, so N back-to-back calls take at least (N - 1) * interval.
    """

    def __init__(
        self,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._min_interval_seconds = max(0.0, float(min_interval_seconds))
        self._clock = clock
        self._sleep = sleep
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0
        self._last_started: float | None = None

    @property
    def min_interval_seconds(self) -> float:
        return self._min_interval_seconds

    @property
    def queued(self) -> int:
        with self._cond:
            return self._next_ticket - self._now_serving

    def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._cond.wait()
        try:
            self._wait_spacing()
            self._last_started = self._clock()
            return fn(*args, **kwargs)
        finally:
            with self._cond:
                self._now_serving += 1
                self._cond.notify_all()

    def _wait_spacing(self) -> None:
        if self._min_interval_seconds <= 0 or self._last_started is None:
            return
        while True:
            remaining = self._last_started + self._min_interval_seconds - self._clock()
            if remaining <= 0:
                return
            self._sleep(remaining)


@dataclass(frozen=True)
class RateLimitSnapshot:
    limit: int | None
    remaining: int | None
    reset_at: datetime | None
    retry_after_seconds: float | None

    def reset_in_seconds(self, *, now: datetime | None = None) -> float | None:
        if self.reset_at is None:
            return self.retry_after_seconds
        now_dt = now or datetime.now(timezone.utc)
        if now_dt.tzinfo is None:
            now_dt = now_dt.replace(tzinfo=timezone.utc)
        return max((self.reset_at - now_dt.astimezone(timezone.utc)).total_seconds(), 0.0)


def _coerce_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(float(str(value).strip()))
    except ValueError:
        return None


def _parse_reset(value: Any, *, now: datetime) -> datetime | None:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        num = float(raw)
    except ValueError:
        num = None
    if num is not None:
        if num <= 0:
            return None
        # Small values are "seconds from now", large ones are epoch seconds or millis.
        if num < 1_000_000_000:
            return now + timedelta(seconds=num)
        if num > 10_000_000_000:
            num = num / 1000
        return datetime.fromtimestamp(num, tz=timezone.utc)
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_rate_limit_headers(
    headers: Mapping[str, Any] | None,
    *,
    now: datetime | None = None,
) -> RateLimitSnapshot | None:
    if not headers:
        return None
    now_dt = now or datetime.now(timezone.utc)
    lowered = {str(k).lower(): v for k, v in dict(headers).items()}

    limit = _coerce_int(lowered.get("x-ratelimit-limit") or lowered.get("x-rate-limit-limit"))
    remaining = _coerce_int(lowered.get("x-ratelimit-remaining") or lowered.get("x-rate-limit-remaining"))
    reset_at = _parse_reset(lowered.get("x-ratelimit-reset") or lowered.get("x-rate-limit-reset"), now=now_dt)
    retry_after = _coerce_int(lowered.get("retry-after"))

    if limit is None and remaining is None and reset_at is None and retry_after is None:
        return None
    return RateLimitSnapshot(
        limit=limit,
        remaining=remaining,
        reset_at=reset_at,
        retry_after_seconds=float(retry_after) if retry_after is not None else None,
    )
