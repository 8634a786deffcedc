"""Structlog-based logging for creator-sync.

Library code logs through structlog only; no print() outside the CLI.
Events are JSON lines by default so scheduled runs can be shipped to a log
store; ``console`` renders them for a person watching a terminal.
"""
from __future__ import annotations

import logging
from typing import Literal

import structlog

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["json", "console"]


def _render_chain(fmt: str) -> list:
    if fmt == "console":
        # ConsoleRenderer formats exc_info itself
        return [structlog.dev.ConsoleRenderer(colors=False)]
    if fmt == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer(sort_keys=True)]
    raise ValueError(f"unknown log format: {fmt}")


def configure_logging(level: LogLevel | str = "INFO", fmt: LogFormat | str = "json") -> None:
    """Configure structlog for the process.

    Args:
        level: Minimum level name; unknown names fall back to INFO
        fmt: ``json`` for one JSON object per line, ``console`` for key=value text
    """
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=numeric)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO", utc=True),
            *_render_chain(fmt),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        cache_logger_on_first_use=True,
    )


# Initialize default config
configure_logging()
