from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import os
from pathlib import Path
import time
from zoneinfo import ZoneInfo

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_LOG_PARTITION_TZ = ZoneInfo("Asia/Kolkata")
RUN_LOGGER_NAME = "oi_tracker"


@dataclass(frozen=True)
class RunLogger:
    logger: logging.Logger
    log_path: Path | None
    started_at: datetime
    start_perf: float
    command_name: str


def _safe_name(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in value.strip())
    return cleaned or "oi_tracker"


def build_log_path(log_dir: Path, command_name: str, *, now: datetime | None = None) -> Path:
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    return log_dir / f"{_safe_name(command_name)}_{timestamp}_{os.getpid()}.log"


def setup_run_logger(
    log_dir: Path,
    command_name: str,
    *,
    level: int = logging.INFO,
    log_path: Path | None = None,
) -> RunLogger | None:
    """Attach a per-run file handler to the package logger.

    Logs land in `<log_dir>/<YYYY-MM-DD>/` partitioned by the exchange's local date.
    Returns None when the log directory cannot be created.
    """
    effective_log_path = log_path
    if effective_log_path is None:
        now_utc = datetime.now(timezone.utc)
        run_day = now_utc.astimezone(_LOG_PARTITION_TZ).strftime("%Y-%m-%d")
        effective_log_dir = log_dir / run_day
        try:
            effective_log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            return None
        effective_log_path = build_log_path(effective_log_dir, command_name, now=now_utc)
    else:
        try:
            effective_log_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return None

    # Module loggers (`oi_tracker.data...`) propagate up to this one.
    logger = logging.getLogger(RUN_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    _reset_file_handlers(logger)

    handler = logging.FileHandler(effective_log_path, mode="a", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)

    started_at = datetime.now(timezone.utc)
    start_perf = time.perf_counter()
    logger.info("Start %s", command_name)
    return RunLogger(
        logger=logger,
        log_path=effective_log_path,
        started_at=started_at,
        start_perf=start_perf,
        command_name=command_name,
    )


def finalize_run_logger(run_logger: RunLogger) -> None:
    elapsed = time.perf_counter() - run_logger.start_perf
    run_logger.logger.info("End %s duration=%.2fs", run_logger.command_name, elapsed)
    for handler in list(run_logger.logger.handlers):
        if isinstance(handler, logging.FileHandler):
            handler.flush()


def _reset_file_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler):
            handler.close()
            logger.removeHandler(handler)
