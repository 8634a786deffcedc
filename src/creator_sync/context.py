"""Process-scoped owner of the shared scraping machinery."""
from __future__ import annotations

import asyncio
import sqlite3

import httpx
import structlog

from .cache import KeyValueStore, MemoryStore, SQLiteStore, TieredCache
from .compliance import ComplianceChecker
from .config import SyncConfig
from .net import PolitenessGate, RequestLimits
from .orchestrator import ScrapingOrchestrator
from .relay import RelayRotator

logger = structlog.get_logger(__name__)


class ScrapingContext:
    """Builds and tears down the gate, relays, cache, HTTP client and orchestrator.

    Everything that used to be a shared global lives here, so two contexts
    never see each other's timers or cache entries.

    Example:
        async with ScrapingContext(load_config()) as ctx:
            snapshot = await ctx.orchestrator.fetch_profile("instagram", "someone")
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        durable: KeyValueStore | None = None,
        gate: PolitenessGate | None = None,
        run_cleanup: bool = True,
    ) -> None:
        self.config = config or SyncConfig()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.config.network.timeout,
            headers=self.config.network.headers(),
            follow_redirects=True,
            max_redirects=self.config.network.max_redirects,
        )

        if gate is None:
            gate = PolitenessGate(default_delay=0.0)
            for platform in self.config.platforms.values():
                gate.set_delay(platform.domain, platform.request_delay)
                gate.set_limits(
                    platform.domain,
                    RequestLimits(platform.burst_limit, platform.burst_window, platform.daily_limit),
                )
            for relay in self.config.relays:
                gate.set_delay(f"relay:{relay.name}", relay.min_interval)
        self.gate = gate

        if durable is None:
            durable = self._durable_store()
        self.cache = TieredCache(MemoryStore(self.config.cache.max_entries), durable)

        self.rotator = RelayRotator(self.config.relays_by_priority())
        self.compliance = ComplianceChecker(self.client, self.config.compliance)
        self.orchestrator = ScrapingOrchestrator(
            self.config,
            self.client,
            self.gate,
            self.rotator,
            self.compliance,
            self.cache,
        )
        self._run_cleanup = run_cleanup
        self._cleanup_task: asyncio.Task | None = None

    def _durable_store(self) -> KeyValueStore:
        db_path = self.config.cache.db_path
        if db_path is None:
            return MemoryStore()
        try:
            return SQLiteStore(db_path)
        except (sqlite3.Error, OSError) as e:
            logger.warning("cache.durable_unavailable", db_path=str(db_path), error=str(e))
            return MemoryStore()

    async def __aenter__(self) -> ScrapingContext:
        if self._run_cleanup and self.config.cache.cleanup_interval > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        await self.close()
        return False

    async def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        if self._owns_client:
            await self.client.aclose()

    async def _cleanup_loop(self) -> None:
        interval = self.config.cache.cleanup_interval
        while True:
            await asyncio.sleep(interval)
            try:
                self.cache.cleanup()
            except sqlite3.Error as e:
                logger.warning("cache.cleanup_failed", error=str(e))
