"""Heuristic profile extraction from fetched markup.

Each platform adapter tries its heuristics in order and stops at the first
one that yields a follower count. Nothing raises out of ``extract``: a parse
problem just means that heuristic did not produce a value.
"""
from __future__ import annotations

import json
import math
import re
from collections.abc import Callable, Iterator
from typing import Any

import structlog
from bs4 import BeautifulSoup

from .config import PlatformConfig
from .errors import ExtractionFailure
from .models import ProfileSnapshot, SourceLabel

logger = structlog.get_logger(__name__)

SUFFIX_MULTIPLIERS = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}

_COUNT_RE = re.compile(r"^\s*(\d[\d.,]*)\s*([KMB])?\s*$", re.IGNORECASE)
_FOLLOWERS_RE = re.compile(r"(\d[\d.,]*\s*[KMB]?)\s*Followers\b", re.IGNORECASE)


def parse_count(token: str) -> int:
    """Parse ``"1.2K"``, ``"3M"``, ``"46,200"`` style counts, rounding half up.

    Raises:
        ValueError: if ``token`` is not a count
    """
    match = _COUNT_RE.match(str(token))
    if not match:
        raise ValueError(f"not a count: {token!r}")
    value = float(match.group(1).replace(",", ""))
    value *= SUFFIX_MULTIPLIERS.get((match.group(2) or "").upper(), 1)
    return int(math.floor(value + 0.5))


def followers_from_text(text: str) -> int | None:
    match = _FOLLOWERS_RE.search(text or "")
    if not match:
        return None
    try:
        return parse_count(match.group(1))
    except ValueError:
        return None


def meta_content(soup: BeautifulSoup, key: str) -> str | None:
    """Content of ``<meta property=key>`` or ``<meta name=key>``."""
    for attr in ("property", "name"):
        tag = soup.find("meta", attrs={attr: key})
        if tag is not None and tag.get("content"):
            return str(tag["content"])
    return None


def _walk(node: Any) -> Iterator[dict]:
    if isinstance(node, dict):
        yield node
        for value in node.values():
            yield from _walk(value)
    elif isinstance(node, list):
        for value in node:
            yield from _walk(value)


Heuristic = Callable[[BeautifulSoup, str], "int | None"]


class ExtractionAdapter:
    """Base adapter: ordered heuristics plus verification and name parsing."""

    platform: str = "base"

    def __init__(self, config: PlatformConfig) -> None:
        self.config = config
        self.verified_indicators = tuple(i.lower() for i in config.verified_indicators)

    def heuristics(self) -> list[tuple[str, Heuristic]]:
        return [("meta_description", self._from_meta_description)]

    def extract(self, markup: str, username: str) -> ProfileSnapshot:
        """Run the heuristics in order and return the first follower count found.

        Args:
            markup: Profile page HTML
            username: Handle the page belongs to

        Returns:
            A live snapshot, or a fallback snapshot naming why extraction failed
        """
        profile_url = self.config.profile_url(username)
        try:
            return self._extract(markup, username, profile_url)
        except Exception as e:  # adapters never raise past this point
            logger.warning("extract.failed", platform=self.config.name, username=username, error=str(e))
            return ProfileSnapshot.fallback(self.config.name, username, f"extraction error: {e}", profile_url)

    def _extract(self, markup: str, username: str, profile_url: str) -> ProfileSnapshot:
        if not markup or not markup.strip():
            raise ExtractionFailure(self.config.name, "empty response body")
        soup = BeautifulSoup(markup, "html.parser")

        followers: int | None = None
        used = None
        for name, heuristic in self.heuristics():
            try:
                followers = heuristic(soup, markup)
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.debug("extract.heuristic_error", platform=self.config.name, heuristic=name, error=str(e))
                followers = None
            if followers is not None:
                used = name
                break

        verified = self.is_verified(markup)
        display_name = self.display_name(soup, username)
        if followers is None:
            logger.info("extract.no_count", platform=self.config.name, username=username)
            return ProfileSnapshot(
                platform=self.config.name,
                username=username,
                follower_count=0,
                verified=verified,
                retrieved_successfully=False,
                source_label=SourceLabel.FALLBACK.value,
                error_reason="no heuristic produced a follower count",
                display_name=display_name,
                profile_url=profile_url,
            )

        logger.info("extract.ok", platform=self.config.name, username=username, heuristic=used, followers=followers)
        return ProfileSnapshot(
            platform=self.config.name,
            username=username,
            follower_count=followers,
            verified=verified,
            retrieved_successfully=True,
            source_label=SourceLabel.LIVE_SCRAPING.value,
            display_name=display_name,
            profile_url=profile_url,
        )

    def is_verified(self, markup: str) -> bool:
        lowered = markup.lower()
        return any(indicator in lowered for indicator in self.verified_indicators)

    def display_name(self, soup: BeautifulSoup, username: str) -> str:
        title = soup.find("title")
        text = title.get_text(strip=True) if title else ""
        if "(@" in text:
            text = text.split("(@", 1)[0]
        elif "|" in text:
            text = text.split("|", 1)[0]
        return text.strip() or username

    def _from_meta_description(self, soup: BeautifulSoup, markup: str) -> int | None:
        for key in ("og:description", "description"):
            count = followers_from_text(meta_content(soup, key) or "")
            if count is not None:
                return count
        return None


class InstagramAdapter(ExtractionAdapter):
    """JSON-LD interaction statistics, then the og:description phrase."""

    platform = "instagram"

    def heuristics(self) -> list[tuple[str, Heuristic]]:
        return [("json_ld", self._from_json_ld), ("meta_description", self._from_meta_description)]

    def _from_json_ld(self, soup: BeautifulSoup, markup: str) -> int | None:
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            try:
                data = json.loads(script.string or "")
            except json.JSONDecodeError:
                logger.debug("extract.json_ld_malformed", platform=self.config.name)
                continue
            for node in _walk(data):
                stats = node.get("interactionStatistic")
                if stats is None:
                    continue
                for stat in stats if isinstance(stats, list) else [stats]:
                    if not isinstance(stat, dict):
                        continue
                    kind = stat.get("interactionType")
                    if isinstance(kind, dict):
                        kind = kind.get("@type")
                    if kind and "FollowAction" in str(kind) and stat.get("userInteractionCount") is not None:
                        return parse_count(str(stat["userInteractionCount"]))
        return None


class TikTokAdapter(ExtractionAdapter):
    """Rehydration state JSON, then the meta description phrase."""

    platform = "tiktok"
    STATE_SCRIPT_IDS = ("__UNIVERSAL_DATA_FOR_REHYDRATION__", "SIGI_STATE")

    def heuristics(self) -> list[tuple[str, Heuristic]]:
        return [("rehydration_state", self._from_state), ("meta_description", self._from_meta_description)]

    def _state(self, soup: BeautifulSoup) -> Any | None:
        for script_id in self.STATE_SCRIPT_IDS:
            script = soup.find("script", attrs={"id": script_id})
            if script is None or not script.string:
                continue
            try:
                return json.loads(script.string)
            except json.JSONDecodeError:
                logger.debug("extract.state_malformed", platform=self.config.name, script=script_id)
        return None

    def _from_state(self, soup: BeautifulSoup, markup: str) -> int | None:
        state = self._state(soup)
        if state is None:
            return None
        for node in _walk(state):
            value = node.get("followerCount")
            if isinstance(value, (int, str)) and not isinstance(value, bool):
                return parse_count(str(value))
        return None

    def is_verified(self, markup: str) -> bool:
        # The state blob carries an explicit flag; only fall back to text markers without one
        state = self._state(BeautifulSoup(markup, "html.parser"))
        flags = [node["verified"] for node in _walk(state) if isinstance(node.get("verified"), bool)]
        if flags:
            return any(flags)
        return super().is_verified(markup)


ADAPTERS: dict[str, type[ExtractionAdapter]] = {
    "instagram": InstagramAdapter,
    "tiktok": TikTokAdapter,
}


def adapter_for(config: PlatformConfig) -> ExtractionAdapter:
    """Adapter registered for the platform, or the meta-description-only base."""
    return ADAPTERS.get(config.name, ExtractionAdapter)(config)
