"""Relay rotation with failure tracking."""
from __future__ import annotations

import json
from dataclasses import dataclass
from urllib.parse import quote

import httpx
import structlog

from .config import RelayConfig
from .errors import NetworkFailure

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RelayRequest:
    relay: RelayConfig
    url: str
    target_url: str


def build_request(relay: RelayConfig, target_url: str) -> RelayRequest:
    """Compose the relay URL for ``target_url`` using the relay's convention."""
    if relay.mode == "encoded":
        url = relay.url + quote(target_url, safe="")
    else:
        url = relay.url + target_url
    return RelayRequest(relay=relay, url=url, target_url=target_url)


def unwrap(relay: RelayConfig, response: httpx.Response) -> str:
    """Return the fetched page body, unwrapping JSON-wrapping relays.

    Raises:
        NetworkFailure: if a wrapping relay sent something other than the
            expected JSON envelope
    """
    if not relay.response_field:
        return response.text
    try:
        envelope = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise NetworkFailure(f"{relay.name} returned a non-JSON envelope", relay=relay.name) from e
    if not isinstance(envelope, dict) or not isinstance(envelope.get(relay.response_field), str):
        raise NetworkFailure(f"{relay.name} envelope has no '{relay.response_field}' field", relay=relay.name)
    return envelope[relay.response_field]


class RelayRotator:
    """Round-robin over relays, skipping ones that recently failed.

    Failures are hints, not bans: once every relay has failed the failed set
    is cleared and the rotation starts over.
    """

    def __init__(self, relays: list[RelayConfig]) -> None:
        if not relays:
            raise ValueError("RelayRotator needs at least one relay")
        self.relays = list(relays)
        self._cursor = 0
        self._failed: set[int] = set()

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def failed(self) -> frozenset[int]:
        return frozenset(self._failed)

    def current(self) -> RelayConfig:
        """Return the relay the next request should go through."""
        return self.relays[self._cursor]

    def advance(self, failed: RelayConfig | None = None) -> RelayConfig:
        """Mark a relay failed (the current one by default) and move past it.

        Passing the relay a request actually used keeps concurrent callers
        from blaming whichever relay the cursor happens to point at now.
        """
        idx = self._cursor if failed is None else self.relays.index(failed)
        self._failed.add(idx)
        if len(self._failed) >= len(self.relays):
            logger.warning("relay.all_failed", relays=len(self.relays))
            self._failed.clear()

        if idx == self._cursor or self._cursor in self._failed:
            n = len(self.relays)
            nxt = (idx + 1) % n
            for _ in range(n):
                if nxt not in self._failed:
                    break
                nxt = (nxt + 1) % n
            self._cursor = nxt
        logger.info("relay.advanced", failed=self.relays[idx].name, current=self.current().name)
        return self.current()

    def build_request(self, target_url: str, relay: RelayConfig | None = None) -> RelayRequest:
        """Build the relay request for ``target_url``.

        Args:
            target_url: Profile page to fetch
            relay: Relay to use; defaults to ``current()``

        Returns:
            The relay URL paired with the relay it belongs to
        """
        return build_request(relay or self.current(), target_url)

    def reset(self) -> None:
        """Forget every failure and start again from the highest priority relay."""
        self._cursor = 0
        self._failed.clear()

    def status(self) -> dict:
        """Describe the rotation for status displays.

        Returns:
            Dict with the ``current`` relay name, the ``cursor`` index, the
            names of ``failed`` relays and every configured relay in order
        """
        return {
            "current": self.current().name,
            "cursor": self._cursor,
            "failed": sorted(self.relays[i].name for i in self._failed),
            "relays": [r.name for r in self.relays],
        }
