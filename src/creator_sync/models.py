"""Snapshot, provenance and baseline record models."""
from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import BaselineError


class PlatformQuality(str, Enum):
    """Where a platform's current follower figure came from."""

    MANUAL = "manual"
    LIVE = "live"
    OVERRIDE = "hybrid-override"


class OverallQuality(str, Enum):
    MANUAL = "manual"
    LIVE = "live"
    HYBRID = "hybrid"


class SourceLabel(str, Enum):
    MANUAL_DATA = "manual_data"
    LIVE_SCRAPING = "live_scraping"
    MANUAL_OVERRIDE = "manual_override"
    FALLBACK = "fallback"


class UpdateEvent(str, Enum):
    """Lifecycle events delivered to ``Reconciler.on_update`` subscribers."""

    UPDATE_STARTED = "update_started"
    UPDATE_COMPLETED = "update_completed"
    UPDATE_FAILED = "update_failed"
    MANUAL_UPDATE = "manual_update"


def aggregate_quality(qualities: Iterable[PlatformQuality | str]) -> OverallQuality:
    """Combine per-platform tags: all live -> live, some live -> hybrid, else manual."""
    values = [PlatformQuality(q) for q in qualities]
    if values and all(q is PlatformQuality.LIVE for q in values):
        return OverallQuality.LIVE
    if any(q is PlatformQuality.LIVE for q in values):
        return OverallQuality.HYBRID
    return OverallQuality.MANUAL


class ProfileSnapshot(BaseModel):
    """One retrieval attempt's result for one platform. Immutable."""

    model_config = ConfigDict(frozen=True)

    platform: str
    username: str
    follower_count: int = Field(default=0, ge=0)
    verified: bool = False
    retrieved_successfully: bool
    retrieved_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    source_label: str = SourceLabel.LIVE_SCRAPING.value
    error_reason: str | None = None
    display_name: str | None = None
    profile_url: str | None = None

    @classmethod
    def fallback(cls, platform: str, username: str, reason: str, profile_url: str | None = None) -> ProfileSnapshot:
        return cls(
            platform=platform,
            username=username,
            follower_count=0,
            verified=False,
            retrieved_successfully=False,
            source_label=SourceLabel.FALLBACK.value,
            error_reason=reason,
            profile_url=profile_url,
        )


# =============================================================================
# Baseline record
# =============================================================================


class PlatformRecord(BaseModel):
    """One platform section of the baseline.

    Only the fields the reconciler reasons about are declared; everything
    else in the section (engagement rate, monthly growth series, top posts)
    is carried through untouched.
    """

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
        validate_assignment=True,
    )

    handle: str = Field(min_length=1)
    followers: int = Field(default=0, ge=0)
    last_scraped: datetime | None = None
    scraped_successfully: bool | None = None


class RecordMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    last_updated: datetime | None = None
    data_quality: dict[str, str] = Field(default_factory=dict)
    sources: dict[str, str] = Field(default_factory=dict)
    auto_update_enabled: bool = True


_RESERVED_KEYS = {"profile", "metadata"}


class BaselineRecord(BaseModel):
    """The trusted per-creator record owned by the reconciler."""

    profile: dict[str, Any]
    platforms: dict[str, PlatformRecord]
    metadata: RecordMetadata = Field(default_factory=RecordMetadata)
    extras: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Any, platform_names: Iterable[str]) -> BaselineRecord:
        """Parse the JSON interchange document.

        Raises:
            BaselineError: if the document is not a usable baseline
        """
        if not isinstance(doc, dict):
            raise BaselineError("baseline document must be a JSON object")
        if not isinstance(doc.get("profile"), dict):
            raise BaselineError("baseline document has no 'profile' section")

        names = [n for n in platform_names if isinstance(doc.get(n), dict)]
        if not names:
            raise BaselineError("baseline document has no configured platform sections")

        try:
            platforms = {n: PlatformRecord.model_validate(doc[n]) for n in names}
            metadata = RecordMetadata.model_validate(doc.get("metadata") or {})
        except ValidationError as e:
            raise BaselineError(f"baseline document is malformed: {e}") from e

        for name in names:
            quality = metadata.data_quality.get(name)
            if quality not in {q.value for q in PlatformQuality}:
                metadata.data_quality[name] = PlatformQuality.MANUAL.value
                metadata.sources[name] = SourceLabel.MANUAL_DATA.value
            metadata.sources.setdefault(name, SourceLabel.MANUAL_DATA.value)

        extras = {k: v for k, v in doc.items() if k not in _RESERVED_KEYS and k not in names}
        record = cls(profile=doc["profile"], platforms=platforms, metadata=metadata, extras=extras)
        record.refresh_overall()
        return record

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"profile": self.profile}
        for name, section in self.platforms.items():
            doc[name] = section.model_dump(mode="json", by_alias=True, exclude_none=True)
        doc.update(self.extras)
        doc["metadata"] = self.metadata.model_dump(mode="json", by_alias=True)
        return doc

    def quality(self, platform: str) -> PlatformQuality:
        return PlatformQuality(self.metadata.data_quality.get(platform, PlatformQuality.MANUAL.value))

    def set_provenance(self, platform: str, quality: PlatformQuality, source: SourceLabel) -> None:
        self.metadata.data_quality[platform] = quality.value
        self.metadata.sources[platform] = source.value
        self.refresh_overall()

    def refresh_overall(self) -> OverallQuality:
        overall = aggregate_quality(self.quality(p) for p in self.platforms)
        self.metadata.data_quality["overall"] = overall.value
        return overall
