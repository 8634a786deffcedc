"""Fetch-a-profile state machine.

    COMPLIANCE_CHECK -> CACHE_LOOKUP -> RATE_LIMIT -> FETCH -> EXTRACT -> CACHE_WRITE -> DONE

Any state can end in FALLBACK, which always yields a placeholder snapshot
with ``retrieved_successfully=False``. Callers never see an exception for
the degraded path.
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum

import httpx
import structlog
from pydantic import ValidationError

from .cache import CacheKey, TieredCache
from .compliance import ComplianceChecker
from .config import PlatformConfig, SyncConfig
from .errors import ComplianceBlocked, CreatorSyncError, NetworkFailure
from .extraction import ExtractionAdapter, adapter_for
from .models import ProfileSnapshot
from .net import CircuitBreaker, PolitenessGate
from .relay import RelayRequest, RelayRotator, unwrap

logger = structlog.get_logger(__name__)


class ScrapeState(str, Enum):
    COMPLIANCE_CHECK = "compliance_check"
    CACHE_LOOKUP = "cache_lookup"
    RATE_LIMIT = "rate_limit"
    FETCH = "fetch"
    EXTRACT = "extract"
    CACHE_WRITE = "cache_write"
    DONE = "done"
    FALLBACK = "fallback"


TERMINAL_STATES = frozenset({ScrapeState.DONE, ScrapeState.FALLBACK})


@dataclass
class ScrapeRun:
    """Mutable working state for one ``fetch_profile`` call."""

    platform: PlatformConfig
    username: str
    kind: str = "profile"
    state: ScrapeState = ScrapeState.COMPLIANCE_CHECK
    history: list[ScrapeState] = field(default_factory=list)
    markup: str | None = None
    snapshot: ProfileSnapshot | None = None
    reason: str | None = None
    attempts: int = 0
    relays_tried: list[str] = field(default_factory=list)

    @property
    def target_url(self) -> str:
        return self.platform.profile_url(self.username)

    @property
    def cache_key(self) -> CacheKey:
        return CacheKey(self.platform.name, self.username, self.kind)


@dataclass
class ScrapeStats:
    requests_total: int = 0
    requests_successful: int = 0
    requests_failed: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    compliance_blocks: int = 0
    fallbacks: int = 0


Handler = Callable[[ScrapeRun], Awaitable[ScrapeState]]


class ScrapingOrchestrator:
    """Composes compliance, cache, gate, relays and extraction into one fetch."""

    def __init__(
        self,
        config: SyncConfig,
        client: httpx.AsyncClient,
        gate: PolitenessGate,
        rotator: RelayRotator,
        compliance: ComplianceChecker,
        cache: TieredCache,
        *,
        adapters: dict[str, ExtractionAdapter] | None = None,
        breakers: dict[str, CircuitBreaker] | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.gate = gate
        self.rotator = rotator
        self.compliance = compliance
        self.cache = cache
        self.adapters = adapters or {name: adapter_for(p) for name, p in config.platforms.items()}
        self.breakers = breakers or {name: CircuitBreaker.from_policy(name, config.errors) for name in config.platforms}
        self.stats = ScrapeStats()
        self._handlers: dict[ScrapeState, Handler] = {
            ScrapeState.COMPLIANCE_CHECK: self._compliance_check,
            ScrapeState.CACHE_LOOKUP: self._cache_lookup,
            ScrapeState.RATE_LIMIT: self._rate_limit,
            ScrapeState.FETCH: self._fetch,
            ScrapeState.EXTRACT: self._extract,
            ScrapeState.CACHE_WRITE: self._cache_write,
        }

    async def fetch_profile(self, platform: str, username: str) -> ProfileSnapshot:
        """Return a live, cached or fallback snapshot for ``username``."""
        run = ScrapeRun(platform=self.config.platform(platform), username=username)
        await self.run(run)
        if run.snapshot is None:
            raise RuntimeError(f"scrape of {platform}/{username} ended without a snapshot")
        return run.snapshot

    async def run(self, run: ScrapeRun) -> ScrapeRun:
        log = logger.bind(platform=run.platform.name, username=run.username)
        log.info("scrape.started")
        while run.state not in TERMINAL_STATES:
            run.history.append(run.state)
            try:
                run.state = await self._handlers[run.state](run)
            except CreatorSyncError as e:
                run.reason = str(e)
                run.state = ScrapeState.FALLBACK
            except Exception as e:
                log.exception("scrape.unexpected_error", state=run.history[-1].value)
                run.reason = f"unexpected error in {run.history[-1].value}: {e}"
                run.state = ScrapeState.FALLBACK
        run.history.append(run.state)

        if run.state is ScrapeState.FALLBACK:
            self._fallback(run)
        log.info("scrape.finished", state=run.state.value, attempts=run.attempts)
        return run

    # -------------------------------------------------------------------------
    # States
    # -------------------------------------------------------------------------

    async def _compliance_check(self, run: ScrapeRun) -> ScrapeState:
        if not await self.compliance.is_allowed(run.platform.domain):
            self.stats.compliance_blocks += 1
            raise ComplianceBlocked(run.platform.domain)
        return ScrapeState.CACHE_LOOKUP

    async def _cache_lookup(self, run: ScrapeRun) -> ScrapeState:
        payload = self.cache.get(run.cache_key)
        if payload is not None:
            try:
                run.snapshot = ProfileSnapshot.model_validate(payload)
            except ValidationError:
                logger.warning("scrape.cache_payload_invalid", key=str(run.cache_key))
                self.cache.invalidate(run.cache_key)
            else:
                self.stats.cache_hits += 1
                logger.info("scrape.cache_hit", key=str(run.cache_key))
                return ScrapeState.DONE
        self.stats.cache_misses += 1
        return ScrapeState.RATE_LIMIT

    async def _rate_limit(self, run: ScrapeRun) -> ScrapeState:
        await self.gate.acquire(run.platform.domain)
        return ScrapeState.FETCH

    async def _fetch(self, run: ScrapeRun) -> ScrapeState:
        platform = run.platform
        breaker = self.breakers.get(platform.name)
        if breaker is not None and not breaker.allow_call():
            run.reason = f"{platform.name} paused after repeated failures"
            return ScrapeState.FALLBACK

        last_error: NetworkFailure | None = None
        for attempt in range(platform.max_retries):
            if attempt:
                await self.gate.backoff(platform.domain, attempt - 1, platform.retry_delay, platform.backoff_multiplier)
            relay = self.rotator.current()
            await self.gate.acquire(f"relay:{relay.name}")
            request = self.rotator.build_request(run.target_url, relay)
            run.attempts += 1
            run.relays_tried.append(relay.name)
            self.stats.requests_total += 1
            try:
                run.markup = await self._get(request)
            except NetworkFailure as e:
                self.stats.requests_failed += 1
                last_error = e
                logger.warning(
                    "scrape.fetch_failed",
                    platform=platform.name,
                    relay=relay.name,
                    attempt=attempt + 1,
                    max_retries=platform.max_retries,
                    error=str(e),
                )
                self.rotator.advance(relay)
                continue
            self.stats.requests_successful += 1
            if breaker is not None:
                breaker.record_success()
            return ScrapeState.EXTRACT

        if breaker is not None:
            breaker.record_failure()
        run.reason = f"all {platform.max_retries} fetch attempts failed; last error: {last_error}"
        return ScrapeState.FALLBACK

    async def _get(self, request: RelayRequest) -> str:
        network = self.config.network
        try:
            resp = await self.client.get(request.url, headers=network.headers(), timeout=network.timeout)
        except httpx.HTTPError as e:
            raise NetworkFailure(f"{type(e).__name__}: {e}", relay=request.relay.name) from e
        if not resp.is_success:
            raise NetworkFailure(
                f"HTTP {resp.status_code} from {request.relay.name}",
                relay=request.relay.name,
                status_code=resp.status_code,
            )
        return unwrap(request.relay, resp)

    async def _extract(self, run: ScrapeRun) -> ScrapeState:
        snapshot = self.adapters[run.platform.name].extract(run.markup or "", run.username)
        if not snapshot.retrieved_successfully:
            run.reason = snapshot.error_reason or "extraction failed"
            return ScrapeState.FALLBACK
        run.snapshot = snapshot
        return ScrapeState.CACHE_WRITE

    async def _cache_write(self, run: ScrapeRun) -> ScrapeState:
        if run.snapshot is not None and run.snapshot.retrieved_successfully:
            ttl = self.config.ttl_for(run.platform.name, run.kind)
            self.cache.put(run.cache_key, run.snapshot.model_dump(mode="json"), ttl)
        return ScrapeState.DONE

    def _fallback(self, run: ScrapeRun) -> None:
        self.stats.fallbacks += 1
        reason = run.reason or "scraping failed, manual data needed"
        logger.warning("scrape.fallback", platform=run.platform.name, username=run.username, reason=reason)
        run.snapshot = ProfileSnapshot.fallback(run.platform.name, run.username, reason, run.target_url)

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def status(self) -> dict:
        """Counters, relay rotation, gate timers, breaker states and cache size."""
        return {
            "stats": asdict(self.stats),
            "relays": self.rotator.status(),
            "rate_limits": self.gate.report(),
            "breakers": {name: b.report() for name, b in self.breakers.items()},
            "cache_size": self.cache.size,
        }

    def clear_cache(self) -> None:
        self.cache.clear()
