"""Error taxonomy for scraping and reconciliation.

Everything except ``BaselineError`` and ``ConfigError`` is recoverable: the
orchestrator turns it into a fallback snapshot and the reconciler keeps the
manual value.
"""
from __future__ import annotations


class CreatorSyncError(Exception):
    """Base exception for creator-sync."""


class ConfigError(CreatorSyncError):
    """Configuration is missing a section or holds an unusable value."""


class BaselineError(CreatorSyncError):
    """The manual baseline record is missing or corrupt.

    There is nothing beneath the baseline to fall back on, so this is raised
    to the caller at initialization time.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class ComplianceBlocked(CreatorSyncError):
    """The target domain's crawl policy (or the allow-list) forbids retrieval."""

    def __init__(self, domain: str) -> None:
        super().__init__(f"retrieval disallowed for {domain}")
        self.domain = domain


class NetworkFailure(CreatorSyncError):
    """Timeout, connection error or non-2xx response from a relay."""

    def __init__(self, message: str, relay: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.relay = relay
        self.status_code = status_code


class ExtractionFailure(CreatorSyncError):
    """No heuristic produced a follower count from the fetched markup."""

    def __init__(self, platform: str, reason: str) -> None:
        super().__init__(f"{platform}: {reason}")
        self.platform = platform
        self.reason = reason


class DurableWriteFailure(CreatorSyncError):
    """The durable cache tier refused a write (disk full, locked database)."""

    def __init__(self, key: str, cause: Exception) -> None:
        super().__init__(f"durable write failed for {key}: {cause}")
        self.key = key
        self.cause = cause


class ValidationRejection(CreatorSyncError):
    """A scraped value deviates too far from the baseline to be trusted."""

    def __init__(self, platform: str, current: int, candidate: int, deviation: float | None) -> None:
        detail = f"deviation={deviation:.2f}" if deviation is not None else "out of bounds"
        super().__init__(f"{platform}: candidate {candidate} rejected against {current} ({detail})")
        self.platform = platform
        self.current = current
        self.candidate = candidate
        self.deviation = deviation


class RateLimitExceeded(CreatorSyncError):
    """A domain has used up its daily request allowance."""

    def __init__(self, domain: str, limit: int, retry_after: float) -> None:
        super().__init__(f"daily limit of {limit} requests reached for {domain}; retry in {retry_after:.0f}s")
        self.domain = domain
        self.limit = limit
        self.retry_after = retry_after
