from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from oi_tracker.models import SessionConfig

WEEKLY_EXPIRY_WEEKDAY = 3  # Thursday


def next_weekly_expiry(today: date, *, weekday: int = WEEKLY_EXPIRY_WEEKDAY) -> date:
    """Nearest expiry on `weekday`, counting `today` itself."""
    return today + timedelta(days=(weekday - today.weekday()) % 7)


@dataclass(frozen=True)
class SessionCalendar:
    tz: ZoneInfo
    open: time
    close: time
    eod_cutoff: time
    weekdays: frozenset[int]

    @classmethod
    def from_config(cls, cfg: SessionConfig | None = None) -> "SessionCalendar":
        cfg = cfg or SessionConfig()
        return cls(
            tz=ZoneInfo(cfg.timezone),
            open=cfg.open,
            close=cfg.close,
            eod_cutoff=cfg.eod_cutoff,
            weekdays=frozenset(cfg.weekdays),
        )

    def local(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz)

    def trading_date(self, now: datetime) -> date:
        return self.local(now).date()

    def is_session_day(self, now: datetime) -> bool:
        return self.local(now).weekday() in self.weekdays

    def is_open(self, now: datetime) -> bool:
        local = self.local(now)
        return local.weekday() in self.weekdays and self.open <= local.time() < self.close

    def is_after_cutoff(self, now: datetime) -> bool:
        local = self.local(now)
        return local.weekday() in self.weekdays and local.time() >= self.eod_cutoff

    def next_expiry(self, now: datetime) -> date:
        return next_weekly_expiry(self.trading_date(now))
