from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
import gzip
import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence

import pandas as pd

from oi_tracker.analysis.chain_metrics import summarize_chain
from oi_tracker.data.market_calendar import SessionCalendar
from oi_tracker.data.market_types import MarketSnapshot, OIDeltaRecord, RawArchiveRecord
from oi_tracker.data.source_registry import DataSourceHealth
from oi_tracker.db.warehouse import DuckDBWarehouse

logger = logging.getLogger(__name__)

_ROW_COLUMNS = ["strike", "option_type", "open_interest", "oi_change", "volume", "last_price", "price_change"]


class ReferenceFeed(Protocol):
    """Authoritative end-of-day OI, used by the weekly reconciliation."""

    name: str

    def daily_oi(self, symbol: str, trading_date: date) -> pd.DataFrame:
        """Rows with `strike`, `option_type` and `open_interest`."""
        ...


@dataclass(frozen=True)
class ReconciliationResult:
    symbol: str
    as_of: date
    status: str
    checked_rows: int = 0
    missing_rows: int = 0
    mismatched_rows: int = 0
    notes: str | None = None


def _utc_naive(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def _atomic_write_bytes(path: Path, blob: bytes) -> None:
    # One temp file per writer; concurrent rollups of a day may race to replace.
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        tmp_path.write_bytes(blob)
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _snapshot_rows(snapshot: MarketSnapshot) -> pd.DataFrame:
    rows = [
        {
            "strike": float(r.strike),
            "option_type": r.option_type,
            "open_interest": int(r.open_interest),
            "oi_change": int(r.oi_change),
            "volume": int(r.volume),
            "last_price": float(r.last_price),
            "price_change": float(r.price_change),
        }
        for r in snapshot.option_rows()
    ]
    df = pd.DataFrame(rows, columns=_ROW_COLUMNS)
    # DuckDB cannot update the same conflicting row twice in one statement.
    return df.drop_duplicates(subset=["strike", "option_type"], keep="last")


def _range_clause(column: str, start: Any, end: Any, params: list[Any]) -> str:
    clause = ""
    if start is not None:
        clause += f" AND {column} >= ?"
        params.append(_utc_naive(start) if isinstance(start, datetime) else start)
    if end is not None:
        clause += f" AND {column} <= ?"
        params.append(_utc_naive(end) if isinstance(end, datetime) else end)
    return clause


class TimeSeriesPersister:
    """Idempotent open-interest time series in DuckDB plus gzip raw archives on disk.

    Every write is an upsert keyed on the natural key, so retried or concurrent cycles
    leave exactly one row per key holding the latest values.
    """

    def __init__(
        self,
        warehouse: DuckDBWarehouse,
        *,
        archive_root: Path | str = Path("data/archive"),
        calendar: SessionCalendar | None = None,
    ) -> None:
        self.warehouse = warehouse
        self.archive_root = Path(archive_root)
        self.calendar = calendar or SessionCalendar.from_config()

    # -- writes ---------------------------------------------------------

    def upsert_intraday(self, snapshot: MarketSnapshot) -> int:
        df = _snapshot_rows(snapshot)
        if df.empty:
            return 0
        df["symbol"] = snapshot.symbol.upper()
        df["ts"] = _utc_naive(snapshot.timestamp)
        df["data_source"] = snapshot.data_source
        df["updated_at"] = _utc_naive(datetime.now(timezone.utc))

        with self.warehouse.transaction() as tx:
            tx.register("tmp_intraday", df)
            tx.execute(
                """
                INSERT INTO intraday_option_oi(
                  symbol, ts, strike, option_type, open_interest, oi_change, volume,
                  last_price, price_change, data_source, updated_at
                )
                SELECT symbol, ts, strike, option_type, open_interest, oi_change, volume,
                       last_price, price_change, data_source, updated_at
                FROM tmp_intraday
                ON CONFLICT(symbol, ts, strike, option_type)
                DO UPDATE SET
                  open_interest = EXCLUDED.open_interest,
                  oi_change = EXCLUDED.oi_change,
                  volume = EXCLUDED.volume,
                  last_price = EXCLUDED.last_price,
                  price_change = EXCLUDED.price_change,
                  data_source = EXCLUDED.data_source,
                  updated_at = EXCLUDED.updated_at
                """
            )
            tx.unregister("tmp_intraday")
        return int(len(df))

    def upsert_snapshot_summary(self, snapshot: MarketSnapshot) -> None:
        summary = summarize_chain(list(snapshot.chain), snapshot.current_price)
        with self.warehouse.transaction() as tx:
            tx.execute(
                """
                INSERT INTO snapshot_summaries(
                  symbol, ts, expiry, current_price, previous_price, total_call_oi, total_put_oi,
                  put_call_ratio, max_pain_strike, strike_count, data_source, latency_ms, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(symbol, ts)
                DO UPDATE SET
                  expiry = EXCLUDED.expiry,
                  current_price = EXCLUDED.current_price,
                  previous_price = EXCLUDED.previous_price,
                  total_call_oi = EXCLUDED.total_call_oi,
                  total_put_oi = EXCLUDED.total_put_oi,
                  put_call_ratio = EXCLUDED.put_call_ratio,
                  max_pain_strike = EXCLUDED.max_pain_strike,
                  strike_count = EXCLUDED.strike_count,
                  data_source = EXCLUDED.data_source,
                  latency_ms = EXCLUDED.latency_ms,
                  updated_at = EXCLUDED.updated_at
                """,
                [
                    snapshot.symbol.upper(),
                    _utc_naive(snapshot.timestamp),
                    snapshot.expiry,
                    float(snapshot.current_price),
                    float(snapshot.previous_price),
                    summary.total_call_oi,
                    summary.total_put_oi,
                    summary.put_call_ratio,
                    summary.max_pain_strike,
                    summary.strike_count,
                    snapshot.data_source,
                    float(snapshot.latency_ms),
                    _utc_naive(datetime.now(timezone.utc)),
                ],
            )

    def record_deltas(self, records: Sequence[OIDeltaRecord]) -> int:
        if not records:
            return 0
        df = pd.DataFrame(
            [
                {
                    "symbol": r.symbol,
                    "strike": float(r.strike),
                    "option_type": r.option_type,
                    "ts": _utc_naive(r.timestamp),
                    "seq": int(r.sequence),
                    "old_oi": int(r.old_oi),
                    "new_oi": int(r.new_oi),
                    "delta_oi": int(r.delta_oi),
                    "percent_change": float(r.percent_change),
                    "severity": r.severity,
                    "trigger_reason": r.trigger_reason,
                    "data_source": r.data_source,
                }
                for r in records
            ]
        ).drop_duplicates(subset=["symbol", "ts", "seq", "strike", "option_type"], keep="last")
        with self.warehouse.transaction() as tx:
            tx.register("tmp_deltas", df)
            tx.execute(
                """
                INSERT INTO oi_delta_log(
                  symbol, strike, option_type, ts, seq, old_oi, new_oi, delta_oi,
                  percent_change, severity, trigger_reason, data_source
                )
                SELECT symbol, strike, option_type, ts, seq, old_oi, new_oi, delta_oi,
                       percent_change, severity, trigger_reason, data_source
                FROM tmp_deltas
                ON CONFLICT DO NOTHING
                """
            )
            tx.unregister("tmp_deltas")
        return int(len(df))

    def rollup_end_of_day(self, snapshot: MarketSnapshot) -> RawArchiveRecord:
        """Write the day's final snapshot to `daily_option_oi` and archive its raw payload."""
        trading_date = self.calendar.trading_date(snapshot.timestamp)
        df = _snapshot_rows(snapshot)
        if not df.empty:
            df["symbol"] = snapshot.symbol.upper()
            df["trading_date"] = pd.Timestamp(trading_date)
            df["data_source"] = snapshot.data_source
            df["snapshot_ts"] = _utc_naive(snapshot.timestamp)
            df["updated_at"] = _utc_naive(datetime.now(timezone.utc))
            with self.warehouse.transaction() as tx:
                tx.register("tmp_daily", df)
                tx.execute(
                    """
                    INSERT INTO daily_option_oi(
                      symbol, trading_date, strike, option_type, open_interest, oi_change, volume,
                      last_price, price_change, data_source, snapshot_ts, updated_at
                    )
                    SELECT symbol, CAST(trading_date AS DATE), strike, option_type, open_interest, oi_change, volume,
                           last_price, price_change, data_source, snapshot_ts, updated_at
                    FROM tmp_daily
                    ON CONFLICT(symbol, trading_date, strike, option_type)
                    DO UPDATE SET
                      open_interest = EXCLUDED.open_interest,
                      oi_change = EXCLUDED.oi_change,
                      volume = EXCLUDED.volume,
                      last_price = EXCLUDED.last_price,
                      price_change = EXCLUDED.price_change,
                      data_source = EXCLUDED.data_source,
                      snapshot_ts = EXCLUDED.snapshot_ts,
                      updated_at = EXCLUDED.updated_at
                    """
                )
                tx.unregister("tmp_daily")

        record = self.archive_raw(snapshot, trading_date=trading_date, record_count=int(len(df)))
        logger.info(
            "%s %s: rolled up %d rows, archived %d bytes to %s",
            snapshot.symbol,
            trading_date,
            len(df),
            record.byte_size,
            record.location,
        )
        return record

    def archive_raw(self, snapshot: MarketSnapshot, *, trading_date: date, record_count: int) -> RawArchiveRecord:
        sym = snapshot.symbol.upper()
        day_dir = self.archive_root / sym / trading_date.isoformat()
        day_dir.mkdir(parents=True, exist_ok=True)
        path = day_dir / "option_chain.json.gz"

        body = {k: v for k, v in asdict(snapshot).items() if k != "raw"}
        payload = {"snapshot": body, "raw": snapshot.raw}
        encoded = json.dumps(payload, default=str, sort_keys=True).encode("utf-8")
        # mtime=0 keeps the archive bytes (and checksum) stable across re-runs.
        blob = gzip.compress(encoded, mtime=0)
        _atomic_write_bytes(path, blob)

        record = RawArchiveRecord(
            archive_date=trading_date,
            symbol=sym,
            data_type="OPTION_CHAIN",
            location=str(path),
            byte_size=len(blob),
            record_count=int(record_count),
            checksum=hashlib.sha256(blob).hexdigest(),
            data_source=snapshot.data_source,
            compression="gzip",
        )
        with self.warehouse.transaction() as tx:
            tx.execute(
                """
                INSERT INTO raw_data_archive(
                  archive_date, symbol, data_type, location, byte_size, record_count,
                  checksum, data_source, compression, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(archive_date, symbol, data_type)
                DO UPDATE SET
                  location = EXCLUDED.location,
                  byte_size = EXCLUDED.byte_size,
                  record_count = EXCLUDED.record_count,
                  checksum = EXCLUDED.checksum,
                  data_source = EXCLUDED.data_source,
                  compression = EXCLUDED.compression,
                  updated_at = EXCLUDED.updated_at
                """,
                [
                    record.archive_date,
                    record.symbol,
                    record.data_type,
                    record.location,
                    record.byte_size,
                    record.record_count,
                    record.checksum,
                    record.data_source,
                    record.compression,
                    _utc_naive(datetime.now(timezone.utc)),
                ],
            )
        return record

    def save_source_metrics(self, metrics: Iterable[DataSourceHealth]) -> int:
        rows = [
            {
                "source_name": m.name,
                "priority": int(m.priority),
                "is_active": bool(m.is_active),
                "total_requests": int(m.total_requests),
                "successful_requests": int(m.successful_requests),
                "failed_requests": int(m.failed_requests),
                "last_success": _utc_naive(m.last_success) if m.last_success else None,
                "last_failure": _utc_naive(m.last_failure) if m.last_failure else None,
                "avg_response_time_ms": float(m.avg_response_time_ms),
                "updated_at": _utc_naive(datetime.now(timezone.utc)),
            }
            for m in metrics
        ]
        if not rows:
            return 0
        df = pd.DataFrame(rows)
        df["last_success"] = pd.to_datetime(df["last_success"])
        df["last_failure"] = pd.to_datetime(df["last_failure"])
        with self.warehouse.transaction() as tx:
            tx.register("tmp_sources", df)
            tx.execute(
                """
                INSERT INTO data_source_metrics(
                  source_name, priority, is_active, total_requests, successful_requests, failed_requests,
                  last_success, last_failure, avg_response_time_ms, updated_at
                )
                SELECT source_name, priority, is_active, total_requests, successful_requests, failed_requests,
                       last_success, last_failure, avg_response_time_ms, updated_at
                FROM tmp_sources
                ON CONFLICT(source_name)
                DO UPDATE SET
                  priority = EXCLUDED.priority,
                  is_active = EXCLUDED.is_active,
                  total_requests = EXCLUDED.total_requests,
                  successful_requests = EXCLUDED.successful_requests,
                  failed_requests = EXCLUDED.failed_requests,
                  last_success = EXCLUDED.last_success,
                  last_failure = EXCLUDED.last_failure,
                  avg_response_time_ms = EXCLUDED.avg_response_time_ms,
                  updated_at = EXCLUDED.updated_at
                """
            )
            tx.unregister("tmp_sources")
        return len(rows)

    # -- reads ----------------------------------------------------------

    def get_intraday_oi(
        self,
        symbol: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> pd.DataFrame:
        params: list[Any] = [symbol.upper()]
        where = _range_clause("ts", start, end, params)
        return self.warehouse.fetch_df(
            f"""
            SELECT symbol, ts, strike, option_type, open_interest, oi_change, volume,
                   last_price, price_change, data_source
            FROM intraday_option_oi
            WHERE symbol = ?{where}
            ORDER BY ts ASC, strike ASC, option_type ASC
            """,
            params,
        )

    def get_daily_oi(self, symbol: str, start: date | None = None, end: date | None = None) -> pd.DataFrame:
        params: list[Any] = [symbol.upper()]
        where = _range_clause("trading_date", start, end, params)
        return self.warehouse.fetch_df(
            f"""
            SELECT symbol, trading_date, strike, option_type, open_interest, oi_change, volume,
                   last_price, price_change, data_source
            FROM daily_option_oi
            WHERE symbol = ?{where}
            ORDER BY trading_date ASC, strike ASC, option_type ASC
            """,
            params,
        )

    def get_oi_deltas(
        self,
        symbol: str,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        severity: str | None = None,
    ) -> pd.DataFrame:
        params: list[Any] = [symbol.upper()]
        where = _range_clause("ts", start, end, params)
        if severity is not None:
            where += " AND severity = ?"
            params.append(severity)
        return self.warehouse.fetch_df(
            f"""
            SELECT symbol, strike, option_type, ts, seq, old_oi, new_oi, delta_oi, percent_change,
                   severity, trigger_reason, data_source
            FROM oi_delta_log
            WHERE symbol = ?{where}
            ORDER BY ts ASC, seq ASC, strike ASC, option_type ASC
            """,
            params,
        )

    def get_archive_records(self, symbol: str | None = None) -> pd.DataFrame:
        if symbol is None:
            return self.warehouse.fetch_df("SELECT * FROM raw_data_archive ORDER BY archive_date, symbol")
        return self.warehouse.fetch_df(
            "SELECT * FROM raw_data_archive WHERE symbol = ? ORDER BY archive_date",
            [symbol.upper()],
        )

    def load_source_metrics(self) -> pd.DataFrame:
        return self.warehouse.fetch_df("SELECT * FROM data_source_metrics ORDER BY priority, source_name")

    def latest_intraday_oi(self, symbol: str) -> dict[tuple[float, str], int]:
        df = self.warehouse.fetch_df(
            """
            SELECT strike, option_type, open_interest
            FROM intraday_option_oi
            WHERE symbol = ? AND ts = (SELECT max(ts) FROM intraday_option_oi WHERE symbol = ?)
            """,
            [symbol.upper(), symbol.upper()],
        )
        return {
            (float(row.strike), str(row.option_type)): int(row.open_interest)
            for row in df.itertuples(index=False)
        }

    def latest_delta_sequence(self, symbol: str) -> int | None:
        df = self.warehouse.fetch_df("SELECT max(seq) AS seq FROM oi_delta_log WHERE symbol = ?", [symbol.upper()])
        if df.empty or pd.isna(df["seq"].iloc[0]):
            return None
        return int(df["seq"].iloc[0])

    # -- reconciliation hook ----------------------------------------------

    def reconcile(
        self,
        symbols: Sequence[str],
        *,
        as_of: date,
        reference_feed: ReferenceFeed | None = None,
    ) -> list[ReconciliationResult]:
        """Compare persisted daily OI with a reference feed and record the outcome.

        Without a feed this only records a `skipped` run. Nothing is corrected here.
        """
        results: list[ReconciliationResult] = []
        for symbol in symbols:
            sym = symbol.upper()
            if reference_feed is None:
                results.append(ReconciliationResult(symbol=sym, as_of=as_of, status="skipped", notes="no reference feed"))
                continue
            try:
                reference = reference_feed.daily_oi(sym, as_of)
            except Exception as exc:  # noqa: BLE001
                logger.warning("%s %s: reference feed %s failed: %s", sym, as_of, reference_feed.name, exc)
                results.append(ReconciliationResult(symbol=sym, as_of=as_of, status="error", notes=str(exc)))
                continue
            results.append(self._compare_daily(sym, as_of, reference))

        run_at = _utc_naive(datetime.now(timezone.utc))
        if results:
            with self.warehouse.transaction() as tx:
                for r in results:
                    tx.execute(
                        """
                        INSERT INTO reconciliation_runs(
                          run_at, as_of, symbol, status, checked_rows, missing_rows, mismatched_rows, notes
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT DO NOTHING
                        """,
                        [run_at, r.as_of, r.symbol, r.status, r.checked_rows, r.missing_rows, r.mismatched_rows, r.notes],
                    )
        return results

    def _compare_daily(self, symbol: str, as_of: date, reference: pd.DataFrame) -> ReconciliationResult:
        persisted = self.get_daily_oi(symbol, as_of, as_of)
        ref = reference.copy() if reference is not None else pd.DataFrame()
        for col in ("strike", "option_type", "open_interest"):
            if col not in ref.columns:
                ref[col] = pd.Series(dtype="float64")
        ref = ref[["strike", "option_type", "open_interest"]].copy()
        ref["strike"] = pd.to_numeric(ref["strike"], errors="coerce").astype("float64")
        ref["option_type"] = ref["option_type"].astype(str).str.upper()
        mine = persisted[["strike", "option_type", "open_interest"]].copy()
        mine["strike"] = mine["strike"].astype("float64")

        merged = ref.merge(mine, on=["strike", "option_type"], how="left", suffixes=("_ref", "_db"))
        missing = int(merged["open_interest_db"].isna().sum())
        present = merged.dropna(subset=["open_interest_db"])
        mismatched = int(
            (pd.to_numeric(present["open_interest_ref"], errors="coerce") != present["open_interest_db"]).sum()
        )
        status = "ok" if missing == 0 and mismatched == 0 else "mismatch"
        if status != "ok":
            logger.warning("%s %s: reconciliation missing=%d mismatched=%d", symbol, as_of, missing, mismatched)
        return ReconciliationResult(
            symbol=symbol,
            as_of=as_of,
            status=status,
            checked_rows=int(len(merged)),
            missing_rows=missing,
            mismatched_rows=mismatched,
        )
