from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
import threading
from typing import Any, Iterator, Sequence

import duckdb
import pandas as pd


@dataclass(frozen=True)
class DuckDBWarehouse:
    """Thin wrapper around a DuckDB file connection.

    - Designed for *embedded* use (single machine, one process writing).
    - Write transactions are serialized per warehouse so concurrent pipelines upserting the
      same keys resolve last-writer-wins instead of raising DuckDB transaction conflicts.
    - Callers should prefer `transaction()` for multi-statement operations.
    """

    path: Path
    _write_lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False, compare=False)

    def connect(self) -> duckdb.DuckDBPyConnection:
        # Every connection uses the same (read-write) config so DuckDB can share one
        # in-process database instance between readers and writers.
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return duckdb.connect(str(self.path))

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._write_lock:
            conn = self.connect()
            try:
                conn.execute("BEGIN TRANSACTION")
                yield conn
                conn.execute("COMMIT")
            except Exception:  # noqa: BLE001
                try:
                    conn.execute("ROLLBACK")
                except Exception:  # noqa: BLE001
                    pass
                raise
            finally:
                try:
                    conn.close()
                except Exception:  # noqa: BLE001
                    pass

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> None:
        with self.transaction() as tx:
            if params is None:
                tx.execute(sql)
            else:
                tx.execute(sql, params)

    def fetch_df(self, sql: str, params: Sequence[Any] | None = None) -> pd.DataFrame:
        conn = self.connect()
        try:
            if params is None:
                return conn.execute(sql).df()
            return conn.execute(sql, params).df()
        finally:
            conn.close()
