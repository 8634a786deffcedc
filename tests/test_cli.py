from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from creator_sync.cli import app
from creator_sync.models import UpdateEvent
from creator_sync.reconciler import MergeOutcome, UpdateSummary

runner = CliRunner()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path: Path):
    for name in ("CREATOR_SYNC_CONFIG", "CACHE_DB_PATH", "BASELINE_PATH", "LOG_LEVEL", "SCRAPE_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    # run from an empty directory so relative paths land in tmp_path
    monkeypatch.chdir(tmp_path)
    # wide enough that table cells are never wrapped
    monkeypatch.setattr("creator_sync.cli.console", Console(width=200))


def test_show_json(baseline_file: Path) -> None:
    result = runner.invoke(app, ["show", "--baseline", str(baseline_file), "--json"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "totalFollowers" in result.output


def test_show_table(baseline_file: Path) -> None:
    result = runner.invoke(app, ["show", "--baseline", str(baseline_file)], catch_exceptions=False)
    assert result.exit_code == 0
    assert "instagram" in result.output
    assert "Total followers" in result.output


def test_missing_baseline_exits_nonzero(tmp_path: Path) -> None:
    result = runner.invoke(app, ["show", "--baseline", str(tmp_path / "missing.json")])
    assert result.exit_code == 1
    assert "Baseline error" in result.output


def test_set_writes_override(baseline_file: Path) -> None:
    result = runner.invoke(
        app, ["set", "instagram", "followers", "512", "--baseline", str(baseline_file)], catch_exceptions=False
    )
    assert result.exit_code == 0

    doc = json.loads(baseline_file.read_text())
    assert doc["instagram"]["followers"] == 512
    assert doc["metadata"]["dataQuality"]["instagram"] == "hybrid-override"
    assert doc["metadata"]["sources"]["instagram"] == "manual_override"


def test_set_string_value(baseline_file: Path) -> None:
    result = runner.invoke(
        app, ["set", "tiktok", "niche", "travel food", "--baseline", str(baseline_file)], catch_exceptions=False
    )
    assert result.exit_code == 0
    assert json.loads(baseline_file.read_text())["tiktok"]["niche"] == "travel food"


def test_set_rejects_invalid_value(baseline_file: Path) -> None:
    result = runner.invoke(app, ["set", "instagram", "followers", "lots", "--baseline", str(baseline_file)])
    assert result.exit_code == 1
    assert json.loads(baseline_file.read_text())["instagram"]["followers"] == 100


def test_export(baseline_file: Path, tmp_path: Path) -> None:
    out = tmp_path / "exports" / "creator.json"
    result = runner.invoke(
        app, ["export", "--baseline", str(baseline_file), "--output", str(out)], catch_exceptions=False
    )
    assert result.exit_code == 0
    exported = json.loads(out.read_text())
    assert exported["metrics"]["totalFollowers"] == 300
    assert "exportedAt" in exported


def test_status_lists_relays() -> None:
    result = runner.invoke(app, ["status"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "AllOrigins" in result.output
    assert "in-memory only" in result.output


def test_clear_cache(tmp_path: Path, monkeypatch) -> None:
    from creator_sync.cache import SQLiteStore

    db = tmp_path / "cache.db"
    SQLiteStore(db).set("cache_instagram_jane_profile", {"payload": {}, "writtenAt": 0, "ttl": 60})
    monkeypatch.setenv("CACHE_DB_PATH", str(db))

    result = runner.invoke(app, ["clear-cache"], catch_exceptions=False)
    assert result.exit_code == 0
    assert SQLiteStore(db).keys() == []


def test_bad_config_exits_nonzero(tmp_path: Path) -> None:
    config = tmp_path / "config.yaml"
    config.write_text("relays: []\n")
    result = runner.invoke(app, ["status", "--config", str(config)])
    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_update_reports_outcomes(baseline_file: Path, monkeypatch) -> None:
    async def fake_update_all(self):
        self._notify(UpdateEvent.UPDATE_STARTED)
        summary = UpdateSummary(started_at=self.record.metadata.last_updated)
        summary.outcomes = {"instagram": MergeOutcome.ACCEPTED, "tiktok": MergeOutcome.SKIPPED}
        return summary

    monkeypatch.setattr("creator_sync.reconciler.Reconciler.update_all", fake_update_all)
    result = runner.invoke(app, ["update", "--baseline", str(baseline_file)], catch_exceptions=False)
    assert result.exit_code == 0
    assert "accepted" in result.output
    assert "skipped" in result.output


def test_watch_prints_cycle_results(baseline_file: Path, monkeypatch) -> None:
    def fake_start(self, interval_minutes=60.0):
        async def cycle():
            payload = {"summary": {"outcomes": {"instagram": "accepted"}}, "data": {}}
            self._notify(UpdateEvent.UPDATE_COMPLETED, payload)

        return asyncio.ensure_future(cycle())

    monkeypatch.setattr("creator_sync.reconciler.Reconciler.start_auto_update", fake_start)
    result = runner.invoke(
        app, ["watch", "--baseline", str(baseline_file), "--interval", "5"], catch_exceptions=False
    )
    assert result.exit_code == 0
    assert "every 5 minutes" in result.output
    assert "instagram: accepted" in result.output


def test_clear_cache_with_unusable_database(tmp_path: Path, monkeypatch) -> None:
    db = tmp_path / "cache.db"
    db.write_text("this file is not a SQLite database\n" * 200)
    monkeypatch.setenv("CACHE_DB_PATH", str(db))

    result = runner.invoke(app, ["clear-cache"])
    assert result.exit_code == 1
    assert "Cannot open cache" in result.output


def test_status_with_unusable_database(tmp_path: Path, monkeypatch) -> None:
    db = tmp_path / "cache.db"
    db.write_text("this file is not a SQLite database\n" * 200)
    monkeypatch.setenv("CACHE_DB_PATH", str(db))

    result = runner.invoke(app, ["status"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "unusable" in result.output


def test_status_shows_request_limits() -> None:
    result = runner.invoke(app, ["status"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "5/60s" in result.output
    assert "200" in result.output
