from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
from typing import Sequence

from oi_tracker.db.warehouse import DuckDBWarehouse

logger = logging.getLogger(__name__)

_SCHEMA_FILE_RE = re.compile(r"^schema_v(\d+)\.sql$")

_MIGRATIONS_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  schema_version INTEGER PRIMARY KEY,
  source_file VARCHAR,
  applied_at TIMESTAMP NOT NULL DEFAULT current_timestamp
);
"""


@dataclass(frozen=True)
class SchemaInfo:
    path: Path
    schema_version: int
    applied: tuple[int, ...] = field(default=())


def discover_migrations(directory: Path | None = None) -> list[tuple[int, Path]]:
    """`schema_v<N>.sql` files next to this module (or in `directory`), ordered by N."""
    root = directory or Path(__file__).parent
    found: list[tuple[int, Path]] = []
    for path in root.glob("schema_v*.sql"):
        match = _SCHEMA_FILE_RE.match(path.name)
        if match:
            found.append((int(match.group(1)), path))
    return sorted(found)


def applied_versions(warehouse: DuckDBWarehouse) -> list[int]:
    with warehouse.transaction() as tx:
        tx.execute(_MIGRATIONS_DDL)
        rows = tx.execute("SELECT schema_version FROM schema_migrations ORDER BY schema_version").fetchall()
    return [int(r[0]) for r in rows]


def current_schema_version(warehouse: DuckDBWarehouse) -> int:
    """Highest applied schema version, 0 for a fresh database."""
    return max(applied_versions(warehouse), default=0)


def ensure_schema(
    warehouse: DuckDBWarehouse,
    *,
    migrations: Sequence[tuple[int, Path]] | None = None,
) -> SchemaInfo:
    """Apply every pending migration in one transaction; a failing script leaves nothing applied."""
    pending = list(migrations) if migrations is not None else discover_migrations()
    applied: list[int] = []
    with warehouse.transaction() as tx:
        tx.execute(_MIGRATIONS_DDL)
        done = {int(r[0]) for r in tx.execute("SELECT schema_version FROM schema_migrations").fetchall()}
        for version, script in pending:
            if version in done:
                continue
            logger.info("Applying schema v%d (%s) to %s", version, script.name, warehouse.path)
            tx.execute(script.read_text(encoding="utf-8"))
            tx.execute(
                "INSERT INTO schema_migrations(schema_version, source_file) VALUES (?, ?)",
                [version, script.name],
            )
            applied.append(version)
    return SchemaInfo(
        path=warehouse.path,
        schema_version=max(done | set(applied), default=0),
        applied=tuple(applied),
    )
