"""Tests for baseline persistence."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from creator_sync.errors import BaselineError
from creator_sync.store import atomic_write, load_baseline, save_baseline

PLATFORMS = ("instagram", "tiktok")


def test_atomic_write_replaces_file(tmp_path: Path):
    target = tmp_path / "nested" / "doc.json"
    atomic_write(target, b"first")
    atomic_write(target, b"second")
    assert target.read_bytes() == b"second"
    assert [p.name for p in target.parent.iterdir()] == ["doc.json"]


def test_load_defaults_provenance_to_manual(baseline_file: Path):
    record = load_baseline(baseline_file, PLATFORMS)
    assert record.metadata.data_quality == {"instagram": "manual", "tiktok": "manual", "overall": "manual"}
    assert record.metadata.sources == {"instagram": "manual_data", "tiktok": "manual_data"}


def test_round_trip_preserves_unknown_fields(baseline_file: Path, tmp_path: Path):
    record = load_baseline(baseline_file, PLATFORMS)
    out = tmp_path / "saved.json"
    save_baseline(record, out)
    doc = json.loads(out.read_text())

    assert doc["profile"] == {"name": "Jane Doe", "bio": "Travel and food"}
    assert doc["instagram"]["engagementRate"] == 4.2
    assert doc["instagram"]["monthlyGrowth"][-1] == {"month": "2024-02", "followers": 100}
    assert doc["brandPartners"] == ["Acme"]
    assert doc["metadata"]["sources"]["tiktok"] == "manual_data"


def test_unconfigured_platform_sections_are_extras(tmp_path: Path, baseline_doc: dict):
    path = tmp_path / "baseline.json"
    path.write_text(json.dumps(baseline_doc))
    record = load_baseline(path, ("instagram",))
    assert list(record.platforms) == ["instagram"]
    assert record.to_document()["tiktok"] == {"handle": "jane.doe", "followers": 200}


class TestLoadErrors:
    """A baseline that cannot be used is fatal."""

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(BaselineError) as exc_info:
            load_baseline(tmp_path / "nope.json", PLATFORMS)
        assert exc_info.value.path.endswith("nope.json")

    def test_invalid_json(self, tmp_path: Path):
        path = tmp_path / "baseline.json"
        path.write_text("{not json")
        with pytest.raises(BaselineError):
            load_baseline(path, PLATFORMS)

    def test_missing_profile(self, tmp_path: Path):
        path = tmp_path / "baseline.json"
        path.write_text(json.dumps({"instagram": {"handle": "jane", "followers": 1}}))
        with pytest.raises(BaselineError) as exc_info:
            load_baseline(path, PLATFORMS)
        assert exc_info.value.path == str(path)

    def test_no_platform_sections(self, tmp_path: Path):
        path = tmp_path / "baseline.json"
        path.write_text(json.dumps({"profile": {}}))
        with pytest.raises(BaselineError):
            load_baseline(path, PLATFORMS)

    def test_negative_followers(self, tmp_path: Path):
        path = tmp_path / "baseline.json"
        path.write_text(json.dumps({"profile": {}, "instagram": {"handle": "jane", "followers": -3}}))
        with pytest.raises(BaselineError):
            load_baseline(path, PLATFORMS)
