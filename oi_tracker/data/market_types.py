from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

OptionType = Literal["CALL", "PUT"]
TriggerReason = Literal["scheduled", "manual_refresh", "alert_trigger"]
DeltaSeverity = Literal["large", "moderate"]

OPTION_TYPES: tuple[OptionType, ...] = ("CALL", "PUT")
TRIGGER_REASONS: tuple[TriggerReason, ...] = ("scheduled", "manual_refresh", "alert_trigger")


class DataFetchError(RuntimeError):
    pass


class AuthError(DataFetchError):
    """Credentials rejected or expired (HTTP 401), or the token refresh failed."""


class NetworkError(DataFetchError):
    pass


class ProviderTimeoutError(NetworkError):
    pass


class NotFoundError(DataFetchError):
    pass


class MalformedPayloadError(DataFetchError):
    """Provider answered, but the payload failed shape validation."""


class PersistenceConflictError(RuntimeError):
    pass


@dataclass(frozen=True)
class Quote:
    symbol: str
    last_price: float
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    volume: int = 0
    timestamp: datetime | None = None


@dataclass(frozen=True)
class OptionStrikeSnapshot:
    strike: float
    option_type: OptionType
    open_interest: int = 0
    oi_change: int = 0
    last_price: float = 0.0
    price_change: float = 0.0
    volume: int = 0


@dataclass(frozen=True)
class StrikePair:
    strike: float
    call: OptionStrikeSnapshot | None = None
    put: OptionStrikeSnapshot | None = None

    def sides(self) -> list[OptionStrikeSnapshot]:
        return [side for side in (self.call, self.put) if side is not None]


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    timestamp: datetime
    current_price: float
    previous_price: float
    chain: tuple[StrikePair, ...]
    data_source: str
    latency_ms: float = 0.0
    expiry: date | None = None
    raw: dict[str, Any] | None = field(default=None, compare=False, repr=False)

    def option_rows(self) -> list[OptionStrikeSnapshot]:
        return [side for pair in self.chain for side in pair.sides()]


@dataclass(frozen=True)
class OIDeltaRecord:
    symbol: str
    strike: float
    option_type: OptionType
    timestamp: datetime
    old_oi: int
    new_oi: int
    delta_oi: int
    percent_change: float
    trigger_reason: TriggerReason
    severity: DeltaSeverity
    data_source: str
    # Per-symbol observation counter; orders same-timestamp runs in the delta log.
    sequence: int = 0


@dataclass(frozen=True)
class RawArchiveRecord:
    archive_date: date
    symbol: str
    data_type: str
    location: str
    byte_size: int
    record_count: int
    checksum: str
    data_source: str
    compression: str = "gzip"
