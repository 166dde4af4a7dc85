from __future__ import annotations

from pathlib import Path
import threading

from oi_tracker.data.market_calendar import SessionCalendar
from oi_tracker.data.storage_runtime import get_storage_runtime_config
from oi_tracker.data.timeseries_store import TimeSeriesPersister
from oi_tracker.db.migrations import ensure_schema
from oi_tracker.db.warehouse import DuckDBWarehouse

_WAREHOUSE_CACHE: dict[Path, DuckDBWarehouse] = {}
_CACHE_LOCK = threading.Lock()


def get_warehouse(path: Path | None = None) -> DuckDBWarehouse:
    resolved = Path(path or get_storage_runtime_config().duckdb_path)
    with _CACHE_LOCK:
        wh = _WAREHOUSE_CACHE.get(resolved)
        if wh is None:
            wh = DuckDBWarehouse(resolved)
            ensure_schema(wh)
            _WAREHOUSE_CACHE[resolved] = wh
    return wh


def get_persister(
    *,
    duckdb_path: Path | None = None,
    archive_root: Path | None = None,
    calendar: SessionCalendar | None = None,
) -> TimeSeriesPersister:
    cfg = get_storage_runtime_config()
    return TimeSeriesPersister(
        get_warehouse(duckdb_path),
        archive_root=archive_root or cfg.archive_root,
        calendar=calendar,
    )


def close_warehouses() -> None:
    # Connections are opened per operation; this only drops cached (schema-checked) handles.
    with _CACHE_LOCK:
        _WAREHOUSE_CACHE.clear()
