from __future__ import annotations

import json
from pathlib import Path
import shutil

from typer.testing import CliRunner

from oi_tracker.cli import app
from oi_tracker.data.storage_runtime import (
    DEFAULT_ARCHIVE_ROOT,
    DEFAULT_DUCKDB_PATH,
    get_default_archive_root,
    get_default_duckdb_path,
)

REPO_ROOT = Path(__file__).resolve().parents[1]

SIMULATED_CONFIG = """\
schema_version: 1
symbols: [NIFTY]
polling:
  interval_seconds: 60
  max_workers: 1
sources:
  - name: simulated
    kind: simulated
    priority: 1
    min_interval_ms: 0
    seed: 11
"""


def _config(tmp_path: Path, text: str = SIMULATED_CONFIG) -> Path:
    path = tmp_path / "tracker.yaml"
    path.write_text(text, encoding="utf-8")
    shutil.copy(REPO_ROOT / "config" / "tracker.schema.json", tmp_path / "tracker.schema.json")
    return path


def _base_args(tmp_path: Path) -> list[str]:
    return [
        "--log-dir",
        str(tmp_path / "logs"),
        "--duckdb-path",
        str(tmp_path / "oi.duckdb"),
        "--archive-root",
        str(tmp_path / "archive"),
    ]


def test_analyze_reads_flat_chain_file_and_logs_run(tmp_path: Path) -> None:
    chain_path = tmp_path / "chain.json"
    chain_path.write_text(
        json.dumps(
            {
                "underlying": "nifty",
                "currentPrice": 24_450,
                "previousPrice": 24_300,
                "chain": [
                    {
                        "strike": 24_400,
                        "callOI": 80_000,
                        "callOIChange": 15_000,
                        "callLTP": 120,
                        "callLTPChange": 8,
                        "callVolume": 20_000,
                    }
                ],
            }
        ),
        encoding="utf-8",
    )

    result = CliRunner().invoke(
        app,
        [*_base_args(tmp_path), "analyze", str(chain_path), "--json", "--config", str(tmp_path / "absent.yaml")],
    )

    assert result.exit_code == 0, result.output
    signals = json.loads(result.output)
    assert [(s["type"], s["direction"], s["underlying"]) for s in signals] == [
        ("CALL_LONG_BUILDUP", "BULLISH", "NIFTY")
    ]

    logs = list((tmp_path / "logs").rglob("*.log"))
    assert logs, "expected log file in log dir"
    content = logs[0].read_text(encoding="utf-8")
    assert "Start analyze" in content
    assert "End analyze" in content


def test_analyze_requires_a_price(tmp_path: Path) -> None:
    chain_path = tmp_path / "chain.json"
    chain_path.write_text(json.dumps([{"strike": 24_400, "callOI": 10}]), encoding="utf-8")

    result = CliRunner().invoke(
        app,
        [*_base_args(tmp_path), "analyze", str(chain_path), "--config", str(tmp_path / "absent.yaml")],
    )

    assert result.exit_code == 2


def test_oi_intraday_on_empty_warehouse(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        app,
        [*_base_args(tmp_path), "oi", "intraday", "NIFTY", "--config", str(tmp_path / "absent.yaml")],
    )

    assert result.exit_code == 0, result.output
    assert "No intraday rows." in result.output


def test_oi_deltas_rejects_unknown_severity(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        app,
        [*_base_args(tmp_path), "oi", "deltas", "NIFTY", "--severity", "huge", "--config", str(tmp_path / "absent.yaml")],
    )

    assert result.exit_code == 2


def test_refresh_then_query_with_simulated_source(tmp_path: Path) -> None:
    config = _config(tmp_path)
    runner = CliRunner()

    refreshed = runner.invoke(app, [*_base_args(tmp_path), "refresh", "--config", str(config)])
    assert refreshed.exit_code == 0, refreshed.output
    assert "Refresh" in refreshed.output

    intraday = runner.invoke(app, [*_base_args(tmp_path), "oi", "intraday", "nifty", "--json", "--limit", "0", "--config", str(config)])
    assert intraday.exit_code == 0, intraday.output
    rows = json.loads(intraday.output)
    assert rows and {r["data_source"] for r in rows} == {"simulated"}

    deltas = runner.invoke(app, [*_base_args(tmp_path), "oi", "deltas", "NIFTY", "--json", "--config", str(config)])
    assert deltas.exit_code == 0, deltas.output
    assert {r["trigger_reason"] for r in json.loads(deltas.output)} == {"manual_refresh"}

    sources = runner.invoke(app, [*_base_args(tmp_path), "sources", "--config", str(config)])
    assert sources.exit_code == 0, sources.output
    assert "Data sources" in sources.output


def test_refresh_without_sources_exits_with_config_error(tmp_path: Path) -> None:
    config = _config(tmp_path, "schema_version: 1\nsymbols: [NIFTY]\nsources: []\n")

    result = CliRunner().invoke(app, [*_base_args(tmp_path), "refresh", "--config", str(config)])

    assert result.exit_code == 2


def test_invalid_config_exits_with_code_2(tmp_path: Path) -> None:
    config = _config(tmp_path, "schema_version: 2\nsymbols: [NIFTY]\nsources: []\n")

    result = CliRunner().invoke(app, [*_base_args(tmp_path), "sources", "--config", str(config)])

    assert result.exit_code == 2


def test_second_refresh_does_not_reemit_the_stored_chain(tmp_path: Path) -> None:
    config = _config(tmp_path)
    runner = CliRunner()
    deltas_args = [*_base_args(tmp_path), "oi", "deltas", "NIFTY", "--json", "--config", str(config)]

    assert runner.invoke(app, [*_base_args(tmp_path), "refresh", "--config", str(config)]).exit_code == 0
    first = json.loads(runner.invoke(app, deltas_args).output)
    assert first and all(r["old_oi"] == 0 for r in first)

    # Same seed, so the second process sees the same chain the store already holds.
    assert runner.invoke(app, [*_base_args(tmp_path), "refresh", "--config", str(config)]).exit_code == 0
    second = json.loads(runner.invoke(app, deltas_args).output)
    assert len(second) == len(first)

    intraday = json.loads(
        runner.invoke(
            app, [*_base_args(tmp_path), "oi", "intraday", "NIFTY", "--json", "--limit", "0", "--config", str(config)]
        ).output
    )
    assert len({r["ts"] for r in intraday}) == 2


def test_storage_overrides_do_not_outlive_the_command(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        app,
        [*_base_args(tmp_path), "oi", "intraday", "NIFTY", "--config", str(tmp_path / "absent.yaml")],
    )

    assert result.exit_code == 0, result.output
    assert get_default_duckdb_path() == DEFAULT_DUCKDB_PATH
    assert get_default_archive_root() == DEFAULT_ARCHIVE_ROOT
