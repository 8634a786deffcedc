"""Tests for structlog configuration."""
from __future__ import annotations

import json

import pytest
import structlog

from creator_sync.logging import configure_logging


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    structlog.reset_defaults()
    configure_logging()


def test_json_lines(capsys):
    configure_logging("INFO", "json")
    structlog.get_logger("creator_sync.test").info("scrape.started", platform="instagram")
    line = capsys.readouterr().out.strip().splitlines()[-1]
    event = json.loads(line)
    assert event["event"] == "scrape.started"
    assert event["platform"] == "instagram"
    assert event["level"] == "info"
    assert "timestamp" in event


def test_console_format(capsys):
    configure_logging("INFO", "console")
    structlog.get_logger("creator_sync.test").warning("gate.daily_limit_reached", domain="tiktok.com")
    out = capsys.readouterr().out
    assert "gate.daily_limit_reached" in out
    assert "domain=tiktok.com" in out


def test_level_filtering(capsys):
    configure_logging("WARNING")
    structlog.get_logger("creator_sync.test").info("cache.cleared")
    assert capsys.readouterr().out == ""


def test_unknown_format():
    with pytest.raises(ValueError):
        configure_logging("INFO", "xml")
