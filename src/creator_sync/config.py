"""Configuration for polite scraping and reconciliation.

Defaults mirror the conservative limits the project has always shipped with
(2 s between Instagram requests and 200 a day, 3 s and 150 a day for
TikTok, short bursts capped per minute, one-hour cache). A YAML file
can override any section, and a handful of environment variables override
the values operators most often tune:

    RATE_<PLATFORM>_DELAY        minimum seconds between requests
    RATE_<PLATFORM>_MAX_RETRIES  fetch attempts before falling back
    RATE_<PLATFORM>_DAILY_LIMIT  requests allowed per 24 hours
    SCRAPE_TIMEOUT               per-request timeout in seconds
    CACHE_DB_PATH                SQLite file for the durable cache tier
    BASELINE_PATH                manual baseline JSON document
    LOG_LEVEL                    structlog filtering level
    LOG_FORMAT                   "json" (default) or "console"
    CREATOR_SYNC_CONFIG          YAML file to load when no path is given
"""
from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from .errors import ConfigError

logger = structlog.get_logger(__name__)

RELAY_MODES = ("raw", "encoded")
LOG_FORMATS = ("json", "console")

# Anything below these is treated as too aggressive for the platform
RECOMMENDED_MIN_DELAYS = {"instagram": 2.0, "tiktok": 3.0}

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass
class PlatformConfig:
    """Per-platform scraping parameters."""

    name: str
    domain: str
    base_url: str
    profile_path: str
    request_delay: float = 2.0
    max_retries: int = 3
    retry_delay: float = 1.0
    backoff_multiplier: float = 2.0
    # None means unlimited
    daily_limit: int | None = None
    burst_limit: int | None = None
    burst_window: float = 60.0
    verified_indicators: tuple[str, ...] = ("verified",)
    cache_ttls: dict[str, float] = field(default_factory=dict)

    def profile_url(self, username: str) -> str:
        return self.base_url.rstrip("/") + self.profile_path.format(username=username)


@dataclass
class RelayConfig:
    """A third-party relay that fetches a target URL on our behalf.

    ``mode`` is ``"encoded"`` when the relay expects the target percent-encoded
    as a query parameter, ``"raw"`` when it is appended verbatim.
    ``response_field`` names the JSON field holding the fetched body for
    relays that wrap their response.
    """

    name: str
    url: str
    mode: str = "raw"
    response_field: str | None = None
    min_interval: float = 1.0
    priority: int = 1


@dataclass
class NetworkConfig:
    timeout: float = 10.0
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = "en-US,en;q=0.9,es;q=0.8"
    max_redirects: int = 3

    def headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": self.accept_language,
            "DNT": "1",
            "Upgrade-Insecure-Requests": "1",
        }


@dataclass
class CacheConfig:
    default_ttl: float = 3600.0
    max_entries: int = 100
    cleanup_interval: float = 1800.0
    db_path: Path | None = None


@dataclass
class ErrorPolicy:
    """Consecutive-failure circuit breaker applied per platform."""

    max_consecutive_errors: int = 5
    failure_window: float = 3600.0
    error_cooldown: float = 1800.0


@dataclass
class ValidationConfig:
    min_followers: int = 0
    max_followers: int = 100_000_000
    max_deviation: float = 0.5


@dataclass
class ComplianceConfig:
    respect_robots_txt: bool = True
    allowed_domains: tuple[str, ...] = (
        "instagram.com",
        "www.instagram.com",
        "tiktok.com",
        "www.tiktok.com",
    )
    # None disables memoization; otherwise clamped to the profile TTL
    recheck_interval: float | None = None


def _default_platforms() -> dict[str, PlatformConfig]:
    return {
        "instagram": PlatformConfig(
            name="instagram",
            domain="instagram.com",
            base_url="https://www.instagram.com",
            profile_path="/{username}/",
            request_delay=2.0,
            daily_limit=200,
            burst_limit=5,
            verified_indicators=("verified", "blue-tick"),
            cache_ttls={"profile": 7200.0, "posts": 3600.0, "stories": 900.0, "engagement": 1800.0},
        ),
        "tiktok": PlatformConfig(
            name="tiktok",
            domain="tiktok.com",
            base_url="https://www.tiktok.com",
            profile_path="/@{username}",
            request_delay=3.0,
            daily_limit=150,
            burst_limit=3,
            verified_indicators=("verified", "verify-badge"),
            cache_ttls={"profile": 7200.0, "videos": 3600.0, "engagement": 1800.0},
        ),
    }


def _default_relays() -> list[RelayConfig]:
    return [
        RelayConfig(
            name="AllOrigins",
            url="https://api.allorigins.win/get?url=",
            mode="encoded",
            response_field="contents",
            min_interval=1.0,
            priority=1,
        ),
        RelayConfig(name="CORS Anywhere", url="https://cors-anywhere.herokuapp.com/", min_interval=2.0, priority=2),
        RelayConfig(name="ThingProxy", url="https://thingproxy.freeboard.io/fetch/", min_interval=1.5, priority=3),
    ]


@dataclass
class SyncConfig:
    """Top-level configuration handed to ``ScrapingContext`` and ``Reconciler``."""

    platforms: dict[str, PlatformConfig] = field(default_factory=_default_platforms)
    relays: list[RelayConfig] = field(default_factory=_default_relays)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    errors: ErrorPolicy = field(default_factory=ErrorPolicy)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    compliance: ComplianceConfig = field(default_factory=ComplianceConfig)
    baseline_path: Path = Path("data/baseline.json")
    log_level: str = "INFO"
    log_format: str = "json"
    auto_update_minutes: float = 60.0

    def platform(self, name: str) -> PlatformConfig:
        try:
            return self.platforms[name]
        except KeyError:
            raise ConfigError(f"unknown platform: {name}") from None

    def ttl_for(self, platform: str, kind: str = "profile") -> float:
        cfg = self.platforms.get(platform)
        if cfg is not None and kind in cfg.cache_ttls:
            return cfg.cache_ttls[kind]
        return self.cache.default_ttl

    def relays_by_priority(self) -> list[RelayConfig]:
        return sorted(self.relays, key=lambda r: r.priority)


# =============================================================================
# Loading
# =============================================================================


def _apply(obj: Any, data: Mapping[str, Any], section: str) -> Any:
    known = {f.name for f in dataclasses.fields(obj)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown keys in {section}: {', '.join(sorted(unknown))}")
    updates = dict(data)
    for key, value in updates.items():
        if isinstance(value, list) and isinstance(getattr(obj, key), tuple):
            updates[key] = tuple(value)
        elif key.endswith("path") and value is not None:
            updates[key] = Path(value)
    return dataclasses.replace(obj, **updates)


def apply_mapping(cfg: SyncConfig, data: Mapping[str, Any]) -> SyncConfig:
    """Overlay a parsed YAML/JSON mapping onto ``cfg``."""
    if not isinstance(data, Mapping):
        raise ConfigError("configuration document must be a mapping")

    platforms = data.get("platforms") or {}
    if not isinstance(platforms, Mapping):
        raise ConfigError("platforms must be a mapping of platform name to settings")
    for name, overrides in platforms.items():
        overrides = overrides or {}
        if not isinstance(overrides, Mapping):
            raise ConfigError(f"platforms.{name} must be a mapping")
        if name in cfg.platforms:
            cfg.platforms[name] = _apply(cfg.platforms[name], overrides, f"platforms.{name}")
        else:
            try:
                cfg.platforms[name] = PlatformConfig(name=name, **overrides)
            except TypeError as e:
                raise ConfigError(f"platforms.{name}: {e}") from e

    if "relays" in data:
        try:
            cfg.relays = [RelayConfig(**r) for r in data["relays"]]
        except TypeError as e:
            raise ConfigError(f"relays: {e}") from e

    for section in ("network", "cache", "errors", "validation", "compliance"):
        if section in data:
            setattr(cfg, section, _apply(getattr(cfg, section), data[section] or {}, section))

    if "baseline_path" in data:
        cfg.baseline_path = Path(data["baseline_path"])
    if "log_level" in data:
        cfg.log_level = str(data["log_level"])
    if "log_format" in data:
        cfg.log_format = str(data["log_format"])
    if "auto_update_minutes" in data:
        cfg.auto_update_minutes = float(data["auto_update_minutes"])
    return cfg


def apply_env(cfg: SyncConfig, env: Mapping[str, str]) -> SyncConfig:
    """Apply environment overrides (see module docstring)."""
    try:
        for name, platform in cfg.platforms.items():
            key = name.upper()
            if f"RATE_{key}_DELAY" in env:
                platform.request_delay = float(env[f"RATE_{key}_DELAY"])
            if f"RATE_{key}_MAX_RETRIES" in env:
                platform.max_retries = int(env[f"RATE_{key}_MAX_RETRIES"])
            if f"RATE_{key}_DAILY_LIMIT" in env:
                platform.daily_limit = int(env[f"RATE_{key}_DAILY_LIMIT"])
        if "SCRAPE_TIMEOUT" in env:
            cfg.network.timeout = float(env["SCRAPE_TIMEOUT"])
    except ValueError as e:
        raise ConfigError(f"invalid numeric environment override: {e}") from e
    if env.get("CACHE_DB_PATH"):
        cfg.cache.db_path = Path(env["CACHE_DB_PATH"])
    if env.get("BASELINE_PATH"):
        cfg.baseline_path = Path(env["BASELINE_PATH"])
    if env.get("LOG_LEVEL"):
        cfg.log_level = env["LOG_LEVEL"]
    if env.get("LOG_FORMAT"):
        cfg.log_format = env["LOG_FORMAT"]
    return cfg


def validate_config(cfg: SyncConfig) -> SyncConfig:
    """Reject unusable settings and warn about aggressive rate limits."""
    if not cfg.platforms:
        raise ConfigError("at least one platform must be configured")
    if not cfg.relays:
        raise ConfigError("at least one relay must be configured")
    if cfg.network.timeout <= 0:
        raise ConfigError("network.timeout must be positive")

    for name, platform in cfg.platforms.items():
        if platform.request_delay < 0 or platform.retry_delay < 0:
            raise ConfigError(f"{name}: delays must not be negative")
        if platform.max_retries < 1:
            raise ConfigError(f"{name}: max_retries must be at least 1")
        for limit in ("daily_limit", "burst_limit"):
            value = getattr(platform, limit)
            if value is not None and value < 1:
                raise ConfigError(f"{name}: {limit} must be at least 1")
        if platform.burst_window <= 0:
            raise ConfigError(f"{name}: burst_window must be positive")
        recommended = RECOMMENDED_MIN_DELAYS.get(name)
        if recommended is not None and platform.request_delay < recommended:
            logger.warning(
                "config.aggressive_rate_limit",
                platform=name,
                request_delay=platform.request_delay,
                recommended=recommended,
            )

    for relay in cfg.relays:
        if relay.mode not in RELAY_MODES:
            raise ConfigError(f"relay {relay.name}: mode must be one of {RELAY_MODES}")
        if relay.min_interval < 0:
            raise ConfigError(f"relay {relay.name}: min_interval must not be negative")

    if cfg.validation.max_deviation <= 0:
        raise ConfigError("validation.max_deviation must be positive")
    if cfg.log_format not in LOG_FORMATS:
        raise ConfigError(f"log_format must be one of {LOG_FORMATS}")

    interval = cfg.compliance.recheck_interval
    if interval is not None:
        ceiling = min(cfg.ttl_for(p) for p in cfg.platforms)
        if interval > ceiling:
            logger.warning("config.compliance_interval_clamped", requested=interval, clamped_to=ceiling)
            cfg.compliance.recheck_interval = ceiling
    return cfg


def load_config(path: Path | str | None = None, env: Mapping[str, str] | None = None) -> SyncConfig:
    """Build a validated ``SyncConfig`` from defaults, YAML and environment."""
    env = os.environ if env is None else env
    cfg = SyncConfig()

    path = path or env.get("CREATOR_SYNC_CONFIG")
    if path:
        path = Path(path)
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read configuration {path}: {e}") from e
        apply_mapping(cfg, data)

    apply_env(cfg, env)
    return validate_config(cfg)
