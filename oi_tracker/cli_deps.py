from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from oi_tracker.data.source_registry import DataSourceRegistry
    from oi_tracker.data.timeseries_store import TimeSeriesPersister
    from oi_tracker.models import TrackerConfig
    from oi_tracker.pipelines.orchestrator import Orchestrator


def load_config(config_path: Path | None = None) -> TrackerConfig:
    from oi_tracker.config import DEFAULT_CONFIG_PATH, DEFAULT_SCHEMA_PATH, load_tracker_config

    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    schema_path = path.with_name("tracker.schema.json")
    if not schema_path.exists():
        schema_path = DEFAULT_SCHEMA_PATH
    return load_tracker_config(path, schema_path)


def build_registry(config: TrackerConfig, *, environ: Mapping[str, str] | None = None) -> DataSourceRegistry:
    from oi_tracker.config import credentials_from_env
    from oi_tracker.data.providers import get_gateway
    from oi_tracker.data.source_registry import DataSourceRegistry

    registry = DataSourceRegistry()
    for src in sorted(config.sources, key=lambda s: s.priority):
        kwargs: dict[str, object] = {
            "min_interval_seconds": src.min_interval_ms / 1000.0,
            "timeout_seconds": config.polling.call_timeout_seconds,
        }
        if src.kind == "simulated":
            kwargs["seed"] = src.seed
        credentials = None
        if src.kind in {"angel_one", "dhan"}:
            credentials = credentials_from_env(src.name, dict(environ) if environ is not None else None)
        gateway = get_gateway(src.kind, name=src.name, credentials=credentials, **kwargs)
        registry.register(gateway, priority=src.priority, active=src.active)
    return registry


def build_persister(config: TrackerConfig | None = None) -> TimeSeriesPersister:
    from oi_tracker.data.market_calendar import SessionCalendar
    from oi_tracker.data.store_factory import get_persister

    if config is None:
        return get_persister()
    return get_persister(
        duckdb_path=config.storage.duckdb_path,
        archive_root=config.storage.archive_root,
        calendar=SessionCalendar.from_config(config.session),
    )


def build_orchestrator(
    config: TrackerConfig,
    *,
    registry: DataSourceRegistry | None = None,
    persister: TimeSeriesPersister | None = None,
) -> Orchestrator:
    from oi_tracker.analysis.patterns import PatternEngine
    from oi_tracker.data.market_calendar import SessionCalendar
    from oi_tracker.data.oi_delta import OIDeltaTracker
    from oi_tracker.data.snapshot_acquirer import SnapshotAcquirer
    from oi_tracker.pipelines.orchestrator import Orchestrator

    calendar = SessionCalendar.from_config(config.session)
    acquirer = SnapshotAcquirer(
        registry or build_registry(config),
        calendar=calendar,
        call_timeout_seconds=config.polling.call_timeout_seconds,
    )
    return Orchestrator(
        acquirer=acquirer,
        tracker=OIDeltaTracker(
            significance_floor=config.deltas.significance_floor,
            large_delta_threshold=config.deltas.large_delta_threshold,
        ),
        persister=persister or build_persister(config),
        engine=PatternEngine(config.patterns),
        symbols=config.symbols,
        calendar=calendar,
        poll_interval_seconds=config.polling.interval_seconds,
        max_workers=config.polling.max_workers,
        reconciliation_weekday=config.reconciliation.weekday,
        reconciliation_time=config.reconciliation.run_at,
    )
