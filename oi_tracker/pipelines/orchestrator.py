from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
import logging
import threading
from typing import Callable, Sequence

import pandas as pd

from oi_tracker.analysis.patterns import PatternContext, PatternEngine
from oi_tracker.data.market_calendar import SessionCalendar
from oi_tracker.data.market_types import (
    TRIGGER_REASONS,
    MarketSnapshot,
    OIDeltaRecord,
    RawArchiveRecord,
    TriggerReason,
)
from oi_tracker.data.oi_delta import OIDeltaTracker
from oi_tracker.data.snapshot_acquirer import SnapshotAcquirer
from oi_tracker.data.source_registry import DataSourceHealth
from oi_tracker.data.timeseries_store import ReconciliationResult, ReferenceFeed, TimeSeriesPersister
from oi_tracker.pipelines.publish import SignalChannel
from oi_tracker.schemas.patterns import PatternSignal

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    EOD_ROLLUP = "EOD_ROLLUP"
    RECONCILIATION = "RECONCILIATION"


@dataclass(frozen=True)
class CycleResult:
    symbol: str
    trigger_reason: TriggerReason
    snapshot: MarketSnapshot | None = None
    deltas: tuple[OIDeltaRecord, ...] = ()
    signals: tuple[PatternSignal, ...] = ()
    rows_written: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None and self.error is None


class Orchestrator:
    """Drives polling, end-of-day rollup and weekly reconciliation for a fixed symbol set.

    Each symbol runs acquire -> deltas -> persist -> analyze -> publish on its own worker;
    one symbol failing never affects the others.
    """

    def __init__(
        self,
        *,
        acquirer: SnapshotAcquirer,
        tracker: OIDeltaTracker,
        persister: TimeSeriesPersister,
        symbols: Sequence[str],
        engine: PatternEngine | None = None,
        calendar: SessionCalendar | None = None,
        poll_interval_seconds: float = 60.0,
        max_workers: int = 4,
        reconciliation_weekday: int = 5,
        reconciliation_time: time = time(6, 0),
        reference_feed: ReferenceFeed | None = None,
        channel: SignalChannel[CycleResult] | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.acquirer = acquirer
        self.tracker = tracker
        self.persister = persister
        self.engine = engine or PatternEngine()
        self.calendar = calendar or SessionCalendar.from_config()
        self.symbols = [s.strip().upper() for s in symbols if s and s.strip()]
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.max_workers = max(1, int(max_workers))
        self.reconciliation_weekday = int(reconciliation_weekday)
        self.reconciliation_time = reconciliation_time
        self.reference_feed = reference_feed
        self.channel: SignalChannel[CycleResult] = channel or SignalChannel()
        self._now = now or (lambda: datetime.now(timezone.utc))

        self._state = OrchestratorState.IDLE
        self._state_lock = threading.Lock()
        self._snapshots_lock = threading.Lock()
        self._last_snapshots: dict[str, MarketSnapshot] = {}
        self._prime_lock = threading.Lock()
        self._primed: set[str] = set()
        self._last_poll_at: datetime | None = None
        self._rolled_up: set[date] = set()
        self._reconciled_weeks: set[tuple[int, int]] = set()

    @property
    def state(self) -> OrchestratorState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: OrchestratorState) -> None:
        with self._state_lock:
            if state != self._state:
                logger.info("Orchestrator %s -> %s", self._state.value, state.value)
            self._state = state

    # -- scheduling -------------------------------------------------------

    def tick(self, now: datetime | None = None) -> OrchestratorState:
        now = now or self._now()
        if self._reconciliation_due(now):
            self._set_state(OrchestratorState.RECONCILIATION)
            self.run_reconciliation(now)
        elif self.calendar.is_open(now):
            self._set_state(OrchestratorState.POLLING)
            if self._poll_due(now):
                self._last_poll_at = now
                self.run_cycle(trigger_reason="scheduled")
        elif self.calendar.is_after_cutoff(now) and self.calendar.trading_date(now) not in self._rolled_up:
            self._set_state(OrchestratorState.EOD_ROLLUP)
            self.run_eod_rollup(now)
        else:
            self._set_state(OrchestratorState.IDLE)
        return self.state

    def _poll_due(self, now: datetime) -> bool:
        if self._last_poll_at is None:
            return True
        return (now - self._last_poll_at).total_seconds() >= self.poll_interval_seconds

    def _reconciliation_due(self, now: datetime) -> bool:
        local = self.calendar.local(now)
        if local.weekday() != self.reconciliation_weekday or local.time() < self.reconciliation_time:
            return False
        iso = local.isocalendar()
        return (iso[0], iso[1]) not in self._reconciled_weeks

    def run_forever(self, stop_event: threading.Event | None = None, *, tick_seconds: float = 1.0) -> None:
        stop_event = stop_event or threading.Event()
        self.prime_from_store()
        logger.info(
            "Scheduler started: symbols=%s interval=%.0fs workers=%d",
            ",".join(self.symbols),
            self.poll_interval_seconds,
            self.max_workers,
        )
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(tick_seconds)
        self._set_state(OrchestratorState.IDLE)
        logger.info("Scheduler stopped")

    def prime_from_store(self) -> int:
        """Seed the delta tracker with the latest persisted OI so a restart does not re-emit it."""
        with self._prime_lock:
            return sum(self._prime_symbol(symbol) for symbol in self.symbols)

    def _ensure_primed(self, symbol: str) -> None:
        with self._prime_lock:
            if symbol not in self._primed:
                self._prime_symbol(symbol)

    def _prime_symbol(self, symbol: str) -> int:
        seeded = self.tracker.prime(
            symbol,
            self.persister.latest_intraday_oi(symbol),
            last_sequence=self.persister.latest_delta_sequence(symbol),
        )
        self._primed.add(symbol)
        return seeded

    # -- pipeline ---------------------------------------------------------

    def run_pipeline(self, symbol: str, *, trigger_reason: TriggerReason = "scheduled") -> CycleResult:
        sym = symbol.strip().upper()
        snapshot = self.acquirer.acquire(sym)
        if snapshot is None:
            return CycleResult(symbol=sym, trigger_reason=trigger_reason, error="no data source succeeded")

        self._ensure_primed(sym)
        deltas = self.tracker.observe(snapshot, trigger_reason=trigger_reason)
        rows = self.persister.upsert_intraday(snapshot)
        self.persister.upsert_snapshot_summary(snapshot)
        self.persister.record_deltas(deltas)
        signals = self.engine.analyze(
            list(snapshot.chain),
            PatternContext(
                underlying=sym,
                current_price=snapshot.current_price,
                previous_price=snapshot.previous_price,
                as_of=snapshot.timestamp,
            ),
        )
        with self._snapshots_lock:
            self._last_snapshots[sym] = snapshot

        logger.info(
            "%s: %d rows, %d deltas, %d signals from %s (trigger=%s)",
            sym,
            rows,
            len(deltas),
            len(signals),
            snapshot.data_source,
            trigger_reason,
        )
        return CycleResult(
            symbol=sym,
            trigger_reason=trigger_reason,
            snapshot=snapshot,
            deltas=tuple(deltas),
            signals=tuple(signals),
            rows_written=rows,
        )

    def _run_symbol(self, symbol: str, trigger_reason: TriggerReason) -> CycleResult:
        try:
            return self.run_pipeline(symbol, trigger_reason=trigger_reason)
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s: pipeline failed (trigger=%s)", symbol, trigger_reason)
            return CycleResult(symbol=symbol, trigger_reason=trigger_reason, error=str(exc))

    def run_cycle(
        self,
        symbols: Sequence[str] | None = None,
        *,
        trigger_reason: TriggerReason = "scheduled",
    ) -> list[CycleResult]:
        if trigger_reason not in TRIGGER_REASONS:
            raise ValueError(f"Invalid trigger_reason: {trigger_reason!r} (expected one of {TRIGGER_REASONS})")
        targets = [s.strip().upper() for s in (symbols or self.symbols) if s and s.strip()]
        if not targets:
            return []

        results: dict[str, CycleResult] = {}
        workers = min(self.max_workers, len(targets))
        if workers <= 1:
            for sym in targets:
                results[sym] = self._run_symbol(sym, trigger_reason)
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="oi-cycle") as executor:
                futures = {executor.submit(self._run_symbol, sym, trigger_reason): sym for sym in targets}
                for fut in as_completed(futures):
                    results[futures[fut]] = fut.result()

        ordered = [results[sym] for sym in targets]
        self._save_source_metrics()
        for result in ordered:
            self.channel.publish(result)
        return ordered

    def refresh_data(
        self,
        symbols: Sequence[str] | None = None,
        trigger_reason: TriggerReason = "manual_refresh",
    ) -> list[MarketSnapshot]:
        """Run the pipeline now, outside the polling cadence. Returns the snapshots acquired."""
        results = self.run_cycle(symbols, trigger_reason=trigger_reason)
        return [r.snapshot for r in results if r.snapshot is not None]

    def _save_source_metrics(self) -> None:
        try:
            self.persister.save_source_metrics(self.acquirer.registry.metrics())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to persist data source metrics: %s", exc)

    # -- end of day / weekly ----------------------------------------------

    def run_eod_rollup(self, now: datetime | None = None) -> list[RawArchiveRecord]:
        now = now or self._now()
        trading_day = self.calendar.trading_date(now)
        records: list[RawArchiveRecord] = []
        for sym in self.symbols:
            with self._snapshots_lock:
                snapshot = self._last_snapshots.get(sym)
            if snapshot is not None and self.calendar.trading_date(snapshot.timestamp) != trading_day:
                snapshot = None
            try:
                if snapshot is None:
                    logger.info("%s %s: no snapshot captured today; acquiring one for rollup", sym, trading_day)
                    snapshot = self.acquirer.acquire(sym)
                if snapshot is None:
                    logger.warning("%s %s: end-of-day rollup skipped, no data", sym, trading_day)
                    continue
                records.append(self.persister.rollup_end_of_day(snapshot))
            except Exception:  # noqa: BLE001
                logger.exception("%s %s: end-of-day rollup failed", sym, trading_day)
        self._rolled_up.add(trading_day)
        self._save_source_metrics()
        return records

    def _previous_session_day(self, day: date) -> date:
        candidate = day - timedelta(days=1)
        for _ in range(7):
            if candidate.weekday() in self.calendar.weekdays:
                return candidate
            candidate -= timedelta(days=1)
        return day - timedelta(days=1)

    def run_reconciliation(self, now: datetime | None = None) -> list[ReconciliationResult]:
        now = now or self._now()
        local = self.calendar.local(now)
        iso = local.isocalendar()
        self._reconciled_weeks.add((iso[0], iso[1]))
        as_of = self._previous_session_day(local.date())
        results = self.persister.reconcile(self.symbols, as_of=as_of, reference_feed=self.reference_feed)
        logger.info(
            "Reconciliation for %s: %s",
            as_of,
            ", ".join(f"{r.symbol}={r.status}" for r in results) or "no symbols",
        )
        return results

    # -- queries ----------------------------------------------------------

    def get_intraday_oi(
        self,
        symbol: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> pd.DataFrame:
        return self.persister.get_intraday_oi(symbol, start, end)

    def get_daily_oi(self, symbol: str, start: date | None = None, end: date | None = None) -> pd.DataFrame:
        return self.persister.get_daily_oi(symbol, start, end)

    def get_oi_deltas(
        self,
        symbol: str,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        severity: str | None = None,
    ) -> pd.DataFrame:
        return self.persister.get_oi_deltas(symbol, start, end, severity=severity)

    def get_data_source_metrics(self) -> list[DataSourceHealth]:
        return self.acquirer.registry.metrics()

    def analyze(self, chain, context: PatternContext) -> list[PatternSignal]:  # noqa: ANN001
        return self.engine.analyze(chain, context)
