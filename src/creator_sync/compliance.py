"""robots.txt compliance checking."""
from __future__ import annotations

import time
from collections.abc import Callable

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .config import ComplianceConfig

logger = structlog.get_logger(__name__)


def blanket_disallow(robots_txt: str) -> bool:
    """True when a ``User-agent: *`` group disallows the whole site.

    Consecutive ``User-agent`` lines share one group. A matching ``Allow: /``
    in the same group cancels the blanket rule.
    """
    groups: list[tuple[set[str], list[tuple[str, str]]]] = []
    agents: set[str] = set()
    rules: list[tuple[str, str]] = []
    in_rules = False

    for raw in robots_txt.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        name, value = (part.strip() for part in line.split(":", 1))
        name = name.lower()
        if name == "user-agent":
            if in_rules:
                groups.append((agents, rules))
                agents, rules, in_rules = set(), [], False
            agents.add(value)
        elif name in ("allow", "disallow"):
            in_rules = True
            rules.append((name, value))
    if agents:
        groups.append((agents, rules))

    for group_agents, group_rules in groups:
        if "*" not in group_agents:
            continue
        disallowed = any(n == "disallow" and v == "/" for n, v in group_rules)
        allowed = any(n == "allow" and v == "/" for n, v in group_rules)
        if disallowed and not allowed:
            return True
    return False


class ComplianceChecker:
    """Decides whether a domain may be scraped at all.

    Domains outside the allow-list are always refused. Otherwise the domain's
    robots.txt is fetched and checked for a blanket disallow; if it cannot be
    fetched the answer is "allowed".
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: ComplianceConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.config = config or ComplianceConfig()
        self._clock = clock
        self._memo: dict[str, tuple[bool, float]] = {}

    def domain_permitted(self, domain: str) -> bool:
        allowed = self.config.allowed_domains
        return not allowed or domain.lower() in allowed

    async def is_allowed(self, domain: str) -> bool:
        """Check the allow-list and the domain's robots.txt.

        Args:
            domain: Bare domain, e.g. ``instagram.com``

        Returns:
            False if the domain is not allow-listed or robots.txt blocks every
            path for every agent. An unreachable robots.txt counts as allowed.
        """
        domain = domain.lower()
        if not self.domain_permitted(domain):
            logger.warning("compliance.domain_not_allowlisted", domain=domain)
            return False
        if not self.config.respect_robots_txt:
            return True

        interval = self.config.recheck_interval
        if interval is not None:
            cached = self._memo.get(domain)
            if cached is not None and self._clock() - cached[1] < interval:
                return cached[0]

        try:
            robots = await self._fetch_robots(domain)
        except httpx.HTTPError as e:
            logger.warning("compliance.robots_unavailable", domain=domain, error=str(e))
            return True

        verdict = not blanket_disallow(robots)
        if not verdict:
            logger.info("compliance.disallowed", domain=domain)
        if interval is not None:
            self._memo[domain] = (verdict, self._clock())
        return verdict

    @retry(
        reraise=True,
        stop=stop_after_attempt(2),
        wait=wait_exponential_jitter(initial=0.2, max=1.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def _fetch_robots(self, domain: str) -> str:
        resp = await self._client.get(f"https://{domain}/robots.txt")
        if resp.status_code == 404:
            return ""
        resp.raise_for_status()
        return resp.text
