"""Merges scraped snapshots into the trusted baseline record.

The baseline is the source of truth. A scraped follower count only replaces
it when it is close enough to the current figure to be believable, and the
platform's provenance only turns ``live`` when such a replacement actually
happens.
"""
from __future__ import annotations

import asyncio
import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from . import __version__
from .config import ValidationConfig
from .errors import ValidationRejection
from .models import BaselineRecord, PlatformQuality, PlatformRecord, ProfileSnapshot, SourceLabel, UpdateEvent
from .orchestrator import ScrapingOrchestrator
from .store import load_baseline, save_baseline

logger = structlog.get_logger(__name__)

UpdateCallback = Callable[[UpdateEvent, Any], None]
AnalyticsFunction = Callable[[dict], float]

# JSON key -> model attribute for the declared section fields
_FIELD_NAMES = {f.alias or name: name for name, f in PlatformRecord.model_fields.items()}


class MergeOutcome(str, Enum):
    ACCEPTED = "accepted"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"
    SKIPPED = "skipped"


@dataclass
class UpdateSummary:
    """What one ``update_all`` cycle did, per platform."""

    started_at: datetime
    finished_at: datetime | None = None
    outcomes: dict[str, MergeOutcome] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    data_quality: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "outcomes": {k: v.value for k, v in self.outcomes.items()},
            "errors": dict(self.errors),
            "dataQuality": dict(self.data_quality),
        }


# Engagement assumed for TikTok when the record has no averageLikes figure
DEFAULT_TIKTOK_ENGAGEMENT = 3.5
TOP_CONTENT_LIMIT = 5

# platform -> record field holding its ranked content, and its headline figure
_CONTENT_FIELDS = {"instagram": "topPosts", "tiktok": "topVideos"}
_PLATFORM_FIGURES = {"instagram": "engagementRate", "tiktok": "averageViews"}


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round to ``ndigits`` places with halves going up (``2.5 -> 3``, ``-2.5 -> -2``)."""
    scale = 10**ndigits
    return math.floor(value * scale + 0.5) / scale


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _monthly_growth(section: PlatformRecord) -> float:
    series = (section.model_extra or {}).get("monthlyGrowth") or []
    if len(series) < 2:
        return 0.0
    try:
        latest = float(series[-1]["followers"])
        previous = float(series[-2]["followers"])
    except (KeyError, TypeError, ValueError):
        return 0.0
    if previous <= 0:
        return 0.0
    return (latest - previous) / previous * 100


def _engagement(name: str, section: PlatformRecord) -> float:
    extra = section.model_extra or {}
    if name == "tiktok":
        likes = _number(extra.get("averageLikes"))
        if likes and section.followers:
            return likes / section.followers * 100
        return DEFAULT_TIKTOK_ENGAGEMENT
    return _number(extra.get("engagementRate"))


def _content_url(name: str, section: PlatformRecord, item: Mapping[str, Any]) -> str:
    if name == "instagram":
        return f"https://instagram.com/p/{item.get('id') or ''}"
    return f"https://tiktok.com/@{section.handle}"


def top_content(record: BaselineRecord, limit: int = TOP_CONTENT_LIMIT) -> list[dict[str, Any]]:
    """Best performing posts and videos across platforms.

    Items are ranked by ``likes + views * 0.1`` and tagged with their platform
    and a link back to the content.

    Args:
        record: Baseline record holding ``topPosts``/``topVideos`` lists
        limit: How many items to keep

    Returns:
        Up to ``limit`` content dicts, best first
    """
    items: list[dict[str, Any]] = []
    for name, section in record.platforms.items():
        field_name = _CONTENT_FIELDS.get(name)
        if field_name is None:
            continue
        for item in (section.model_extra or {}).get(field_name) or []:
            if not isinstance(item, Mapping):
                continue
            items.append({**item, "platform": name, "url": _content_url(name, section, item)})
    items.sort(key=lambda c: _number(c.get("likes")) + _number(c.get("views")) * 0.1, reverse=True)
    return items[:limit]


def derive_metrics(record: BaselineRecord) -> dict[str, Any]:
    """Totals, platform shares, engagement, growth and top content from the record.

    Args:
        record: The current baseline record

    Returns:
        A camelCase dict ready for the presentation layer
    """
    followers = {name: section.followers for name, section in record.platforms.items()}
    total = sum(followers.values())

    platforms: dict[str, dict[str, Any]] = {}
    for name, section in record.platforms.items():
        entry: dict[str, Any] = {
            "followers": followers[name],
            "percentage": int(round_half_up(followers[name] / total * 100)) if total else 0,
        }
        figure = _PLATFORM_FIGURES.get(name)
        if figure is not None:
            entry[figure] = (section.model_extra or {}).get(figure) or 0
        platforms[name] = entry

    total_engagement = sum(
        _engagement(name, section) * platforms[name]["percentage"] / 100
        for name, section in record.platforms.items()
    )

    # every platform counts towards the average, a missing series as 0
    rates = {name: _monthly_growth(section) for name, section in record.platforms.items()}
    average = sum(rates.values()) / len(rates) if rates else 0.0
    if not any((s.model_extra or {}).get("monthlyGrowth") for s in record.platforms.values()):
        growth: dict[str, Any] = {"monthlyGrowthRate": 0, "trend": "stable"}
    else:
        if average > 2:
            trend = "growing"
        elif average < -1:
            trend = "declining"
        else:
            trend = "stable"
        growth = {
            "monthlyGrowthRate": round_half_up(average, 2),
            **{name: round_half_up(rate, 2) for name, rate in rates.items()},
            "trend": trend,
        }

    return {
        "totalFollowers": total,
        "totalEngagement": total_engagement,
        "platforms": platforms,
        "growth": growth,
        "topContent": top_content(record),
        "audience": record.extras.get("audience") or {},
        "pricing": record.extras.get("pricing") or {},
        "dataQuality": dict(record.metadata.data_quality),
    }


class Reconciler:
    """Sole writer of the baseline record."""

    def __init__(
        self,
        record: BaselineRecord,
        orchestrator: ScrapingOrchestrator | None = None,
        *,
        validation: ValidationConfig | None = None,
        baseline_path: Path | str | None = None,
        analytics: Mapping[str, AnalyticsFunction] | None = None,
    ) -> None:
        self.record = record
        self.orchestrator = orchestrator
        self.validation = validation or ValidationConfig()
        self.baseline_path = Path(baseline_path) if baseline_path else None
        self.analytics: dict[str, AnalyticsFunction] = dict(analytics or {})
        self._callbacks: list[UpdateCallback] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._auto_task: asyncio.Task | None = None
        self._auto_stop: asyncio.Event | None = None

    @classmethod
    def from_file(cls, path: Path | str, platform_names: Iterable[str], **kwargs: Any) -> Reconciler:
        """Load the baseline from ``path``; raises ``BaselineError`` if unusable."""
        record = load_baseline(path, platform_names)
        kwargs.setdefault("baseline_path", path)
        return cls(record, **kwargs)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def on_update(self, callback: UpdateCallback) -> None:
        """Subscribe to lifecycle events.

        Args:
            callback: Called as ``callback(event, payload)``. Exceptions it
                raises are logged and do not affect the update cycle.
        """
        self._callbacks.append(callback)

    def _notify(self, event: UpdateEvent, payload: Any = None) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event, payload)
            except Exception:
                # subscriber errors are logged, never propagated
                logger.exception("reconcile.callback_failed", update_event=event.value)

    # -------------------------------------------------------------------------
    # Merging
    # -------------------------------------------------------------------------

    def _lock(self, platform: str) -> asyncio.Lock:
        lock = self._locks.get(platform)
        if lock is None:
            lock = self._locks[platform] = asyncio.Lock()
        return lock

    def check_candidate(self, platform: str, current: int, candidate: int) -> float | None:
        """Return the relative deviation, or raise ``ValidationRejection``."""
        bounds = self.validation
        if not bounds.min_followers <= candidate <= bounds.max_followers:
            raise ValidationRejection(platform, current, candidate, None)
        if current == 0:
            return None
        deviation = abs(candidate - current) / current
        if deviation >= bounds.max_deviation:
            raise ValidationRejection(platform, current, candidate, deviation)
        return deviation

    async def merge(self, platform: str, snapshot: ProfileSnapshot) -> MergeOutcome:
        """Fold one scraped snapshot into the baseline.

        Merges for the same platform are serialized. A failed snapshot only
        updates the scrape bookkeeping; a successful one replaces the follower
        count when ``check_candidate`` accepts it.

        Args:
            platform: Baseline section to update
            snapshot: Result of ``ScrapingOrchestrator.fetch_profile``

        Returns:
            What happened to the section

        Raises:
            ValueError: If the platform is not in the baseline
        """
        if platform not in self.record.platforms:
            raise ValueError(f"platform not in baseline: {platform}")

        async with self._lock(platform):
            section = self.record.platforms[platform]
            section.last_scraped = snapshot.retrieved_at
            section.scraped_successfully = snapshot.retrieved_successfully

            if not snapshot.retrieved_successfully:
                logger.info("reconcile.skipped", platform=platform, reason=snapshot.error_reason)
                return MergeOutcome.SKIPPED

            current = section.followers
            candidate = snapshot.follower_count
            try:
                deviation = self.check_candidate(platform, current, candidate)
            except ValidationRejection as e:
                logger.warning(
                    "reconcile.rejected",
                    platform=platform,
                    current=current,
                    candidate=candidate,
                    deviation=e.deviation,
                    max_deviation=self.validation.max_deviation,
                )
                return MergeOutcome.REJECTED

            if candidate == current and self.record.quality(platform) is PlatformQuality.LIVE:
                return MergeOutcome.UNCHANGED

            section.followers = candidate
            self.record.set_provenance(platform, PlatformQuality.LIVE, SourceLabel.LIVE_SCRAPING)
            logger.info("reconcile.accepted", platform=platform, previous=current, followers=candidate, deviation=deviation)
            return MergeOutcome.ACCEPTED

    async def _refresh(self, platform: str) -> MergeOutcome:
        if self.orchestrator is None:
            raise RuntimeError("refreshing a platform needs a ScrapingOrchestrator")
        handle = self.record.platforms[platform].handle
        snapshot = await self.orchestrator.fetch_profile(platform, handle)
        return await self.merge(platform, snapshot)

    async def update_all(self) -> UpdateSummary:
        """Refresh every platform concurrently; partial success is normal."""
        if self.orchestrator is None:
            raise RuntimeError("update_all needs a ScrapingOrchestrator")

        summary = UpdateSummary(started_at=datetime.now(UTC))
        logger.info("reconcile.update_started", platforms=list(self.record.platforms))
        self._notify(UpdateEvent.UPDATE_STARTED)
        try:
            names = list(self.record.platforms)
            results = await asyncio.gather(*(self._refresh(n) for n in names), return_exceptions=True)
            for name, result in zip(names, results):
                if isinstance(result, BaseException):
                    logger.error("reconcile.platform_failed", platform=name, error=repr(result))
                    summary.errors[name] = str(result) or type(result).__name__
                else:
                    summary.outcomes[name] = result

            self.record.metadata.last_updated = datetime.now(UTC)
            self.record.refresh_overall()
            if self.baseline_path is not None:
                self.save()
        except Exception as e:
            logger.exception("reconcile.update_failed")
            self._notify(UpdateEvent.UPDATE_FAILED, e)
            raise

        summary.finished_at = datetime.now(UTC)
        summary.data_quality = dict(self.record.metadata.data_quality)
        logger.info(
            "reconcile.update_completed",
            outcomes=summary.to_dict()["outcomes"],
            errors=summary.errors,
            overall=summary.data_quality.get("overall"),
        )
        self._notify(UpdateEvent.UPDATE_COMPLETED, {"summary": summary.to_dict(), "data": self.record.to_document()})
        return summary

    # -------------------------------------------------------------------------
    # Manual edits
    # -------------------------------------------------------------------------

    def update_manual_field(self, platform: str, field_name: str, value: Any) -> None:
        """Overwrite one field by hand and mark the platform as overridden.

        Raises:
            ValueError: for an unknown platform or a value the field rejects
        """
        if platform not in self.record.platforms:
            raise ValueError(f"platform not in baseline: {platform}")
        section = self.record.platforms[platform]
        attr = _FIELD_NAMES.get(field_name, field_name)
        if attr in PlatformRecord.model_fields:
            try:
                setattr(section, attr, value)
            except ValidationError as e:
                raise ValueError(f"invalid value for {platform}.{field_name}: {value!r}") from e
        else:
            section.model_extra[field_name] = value

        self.record.set_provenance(platform, PlatformQuality.OVERRIDE, SourceLabel.MANUAL_OVERRIDE)
        logger.info("reconcile.manual_update", platform=platform, field=field_name, value=value)
        self._notify(UpdateEvent.MANUAL_UPDATE, {"platform": platform, "field": field_name, "value": value})

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def get_snapshot(self) -> dict[str, Any]:
        """Baseline document plus derived metrics for the presentation layer."""
        doc = self.record.to_document()
        return {
            "data": doc,
            "metrics": derive_metrics(self.record),
            "analytics": {name: self._evaluate(name, fn, doc) for name, fn in self.analytics.items()},
        }

    @staticmethod
    def _evaluate(name: str, fn: AnalyticsFunction, doc: dict) -> float:
        try:
            return fn(doc)
        except Exception as e:
            logger.warning("reconcile.analytics_failed", function=name, error=str(e))
            return 0

    def export_data(self) -> dict[str, Any]:
        snapshot = self.get_snapshot()
        return {
            "data": snapshot["data"],
            "metrics": snapshot["metrics"],
            "exportedAt": datetime.now(UTC).isoformat(),
            "version": __version__,
        }

    def data_quality(self) -> dict[str, str]:
        return dict(self.record.metadata.data_quality)

    def save(self, path: Path | str | None = None) -> Path:
        target = path or self.baseline_path
        if target is None:
            raise ValueError("no baseline path configured")
        return save_baseline(self.record, target)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    @property
    def auto_update_running(self) -> bool:
        return self._auto_task is not None and not self._auto_task.done()

    def start_auto_update(self, interval_minutes: float = 60.0) -> asyncio.Task:
        """Run ``update_all`` every ``interval_minutes`` until stopped."""
        if self.auto_update_running:
            raise RuntimeError("auto-update already running")
        self._auto_stop = asyncio.Event()
        self._auto_task = asyncio.create_task(self._auto_loop(interval_minutes * 60, self._auto_stop))
        self.record.metadata.auto_update_enabled = True
        logger.info("reconcile.auto_update_started", interval_minutes=interval_minutes)
        return self._auto_task

    async def stop_auto_update(self) -> None:
        """Stop scheduling; a cycle already in flight runs to completion."""
        if self._auto_task is None or self._auto_stop is None:
            return
        self._auto_stop.set()
        await self._auto_task
        self._auto_task = None
        self.record.metadata.auto_update_enabled = False
        logger.info("reconcile.auto_update_stopped")

    async def _auto_loop(self, interval_seconds: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.update_all()
            except Exception:
                # already reported through update_failed; keep the schedule alive
                logger.warning("reconcile.auto_update_cycle_failed")
