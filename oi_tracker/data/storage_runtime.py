from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DUCKDB_PATH = Path("data/warehouse/oi_tracker.duckdb")
DEFAULT_ARCHIVE_ROOT = Path("data/archive")

_DEFAULT_DUCKDB_PATH: ContextVar[Path] = ContextVar("oi_tracker_default_duckdb_path", default=DEFAULT_DUCKDB_PATH)
_DEFAULT_ARCHIVE_ROOT: ContextVar[Path] = ContextVar("oi_tracker_default_archive_root", default=DEFAULT_ARCHIVE_ROOT)


@dataclass(frozen=True)
class StorageRuntimeConfig:
    duckdb_path: Path
    archive_root: Path


def get_default_duckdb_path() -> Path:
    return _DEFAULT_DUCKDB_PATH.get()


def set_default_duckdb_path(path: Path | str | None) -> Token[Path]:
    return _DEFAULT_DUCKDB_PATH.set(Path(path) if path is not None else DEFAULT_DUCKDB_PATH)


def reset_default_duckdb_path(token: Token[Path]) -> None:
    _DEFAULT_DUCKDB_PATH.reset(token)


def get_default_archive_root() -> Path:
    return _DEFAULT_ARCHIVE_ROOT.get()


def set_default_archive_root(path: Path | str | None) -> Token[Path]:
    return _DEFAULT_ARCHIVE_ROOT.set(Path(path) if path is not None else DEFAULT_ARCHIVE_ROOT)


def reset_default_archive_root(token: Token[Path]) -> None:
    _DEFAULT_ARCHIVE_ROOT.reset(token)


def get_storage_runtime_config() -> StorageRuntimeConfig:
    return StorageRuntimeConfig(duckdb_path=get_default_duckdb_path(), archive_root=get_default_archive_root())
