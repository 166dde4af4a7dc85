from __future__ import annotations

from datetime import datetime
import logging
import threading
from typing import Mapping

from oi_tracker.data.market_types import (
    TRIGGER_REASONS,
    MarketSnapshot,
    OIDeltaRecord,
    OptionType,
    TriggerReason,
)

logger = logging.getLogger(__name__)

DEFAULT_LARGE_DELTA_THRESHOLD = 1000

OIKey = tuple[float, OptionType]


class _SymbolPartition:
    __slots__ = ("lock", "last_oi", "next_sequence")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.last_oi: dict[OIKey, int] = {}
        self.next_sequence = 0


class OIDeltaTracker:
    """Last-seen open interest per (symbol, strike, option type), emitting deltas on change.

    State is partitioned per symbol, each partition with its own lock, so pipelines for
    different symbols never contend. Unseen keys start at 0.
    """

    def __init__(
        self,
        *,
        significance_floor: int = 0,
        large_delta_threshold: int = DEFAULT_LARGE_DELTA_THRESHOLD,
    ) -> None:
        if significance_floor < 0:
            raise ValueError("significance_floor must be >= 0")
        self.significance_floor = int(significance_floor)
        self.large_delta_threshold = int(large_delta_threshold)
        self._partitions: dict[str, _SymbolPartition] = {}
        self._partitions_lock = threading.Lock()

    def _partition(self, symbol: str) -> _SymbolPartition:
        part = self._partitions.get(symbol)
        if part is None:
            # Only creation is guarded; lookups of existing partitions are lock-free.
            with self._partitions_lock:
                part = self._partitions.setdefault(symbol, _SymbolPartition())
        return part

    def observe(
        self,
        snapshot: MarketSnapshot,
        *,
        trigger_reason: TriggerReason = "scheduled",
        timestamp: datetime | None = None,
    ) -> list[OIDeltaRecord]:
        if trigger_reason not in TRIGGER_REASONS:
            raise ValueError(f"Invalid trigger_reason: {trigger_reason!r} (expected one of {TRIGGER_REASONS})")
        symbol = snapshot.symbol.upper()
        ts = timestamp or snapshot.timestamp
        part = self._partition(symbol)

        records: list[OIDeltaRecord] = []
        with part.lock:
            sequence = part.next_sequence
            part.next_sequence += 1
            for row in snapshot.option_rows():
                key: OIKey = (float(row.strike), row.option_type)
                old_oi = part.last_oi.get(key, 0)
                new_oi = int(row.open_interest)
                part.last_oi[key] = new_oi
                delta = new_oi - old_oi
                if delta == 0 or abs(delta) <= self.significance_floor:
                    continue
                records.append(
                    OIDeltaRecord(
                        symbol=symbol,
                        strike=float(row.strike),
                        option_type=row.option_type,
                        timestamp=ts,
                        old_oi=old_oi,
                        new_oi=new_oi,
                        delta_oi=delta,
                        percent_change=(delta / old_oi * 100.0) if old_oi > 0 else 0.0,
                        trigger_reason=trigger_reason,
                        severity="large" if abs(delta) > self.large_delta_threshold else "moderate",
                        data_source=snapshot.data_source,
                        sequence=sequence,
                    )
                )

        if records:
            large = sum(1 for r in records if r.severity == "large")
            logger.debug("%s: %d OI deltas (%d large) trigger=%s", symbol, len(records), large, trigger_reason)
        return records

    def prime(self, symbol: str, oi_by_key: Mapping[OIKey, int], *, last_sequence: int | None = None) -> int:
        """Seed last-seen OI (e.g. from the latest persisted intraday rows). Returns keys seeded."""
        part = self._partition(symbol.upper())
        with part.lock:
            for (strike, option_type), oi in oi_by_key.items():
                part.last_oi[(float(strike), option_type)] = int(oi)
            if last_sequence is not None:
                part.next_sequence = max(part.next_sequence, int(last_sequence) + 1)
        return len(oi_by_key)

    def last_oi(self, symbol: str, strike: float, option_type: OptionType) -> int:
        part = self._partitions.get(symbol.upper())
        if part is None:
            return 0
        with part.lock:
            return part.last_oi.get((float(strike), option_type), 0)

    def reset(self, symbol: str | None = None) -> None:
        with self._partitions_lock:
            if symbol is None:
                self._partitions.clear()
            else:
                self._partitions.pop(symbol.upper(), None)
