from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from .errors import RateLimitExceeded

if TYPE_CHECKING:
    from .config import ErrorPolicy

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

DAY_SECONDS = 86400.0


@dataclass
class RequestLimits:
    """Request allowance for one domain on top of the minimum spacing.

    ``burst_limit`` grants fit in any ``burst_window`` span; callers past it
    wait. ``daily_limit`` grants fit in any 24 hour span; callers past it get
    ``RateLimitExceeded``.
    """

    burst_limit: int | None = None
    burst_window: float = 60.0
    daily_limit: int | None = None

    @property
    def horizon(self) -> float:
        """How far back grant timestamps matter."""
        if self.daily_limit is not None:
            return max(DAY_SECONDS, self.burst_window)
        if self.burst_limit is not None:
            return self.burst_window
        return 0.0


class PolitenessGate:
    """Per-domain minimum spacing between requests, plus retry backoff.

    Each domain has its own lock, held while waiting, so the read of the last
    timestamp and the write of the new one can never be split by another
    caller for the same domain. ``asyncio.Lock`` wakes waiters in FIFO order,
    so nobody starves.
    """

    def __init__(
        self,
        delays: Mapping[str, float] | None = None,
        default_delay: float = 2.0,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._delays: dict[str, float] = {k.lower(): v for k, v in (delays or {}).items()}
        self.default_delay = default_delay
        self._clock = clock
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._last: dict[str, float] = {}
        self._waits: dict[str, int] = {}
        self._limits: dict[str, RequestLimits] = {}
        self._grants: dict[str, deque[float]] = {}

    def set_delay(self, domain: str, delay: float) -> None:
        """Set the minimum spacing for a domain.

        Args:
            domain: Domain or gate key, e.g. ``instagram.com`` or ``relay:AllOrigins``
            delay: Seconds that must pass between two grants
        """
        self._delays[domain.lower()] = delay

    def delay_for(self, domain: str) -> float:
        """Return the spacing in seconds for ``domain``, or the default."""
        return self._delays.get(domain.lower(), self.default_delay)

    def set_limits(self, domain: str, limits: RequestLimits) -> None:
        """Cap how many requests ``domain`` may receive per burst window and per day.

        Args:
            domain: Domain or gate key
            limits: Burst and daily allowance; ``None`` fields are unlimited
        """
        self._limits[domain.lower()] = limits

    def limits_for(self, domain: str) -> RequestLimits | None:
        return self._limits.get(domain.lower())

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _recent(self, key: str, window: float) -> list[float]:
        now = self._clock()
        return [t for t in self._grants.get(key, ()) if t + window > now]

    def _check_daily(self, key: str, limits: RequestLimits) -> None:
        if limits.daily_limit is None:
            return
        today = self._recent(key, DAY_SECONDS)
        if len(today) >= limits.daily_limit:
            retry_after = today[-limits.daily_limit] + DAY_SECONDS - self._clock()
            logger.warning("gate.daily_limit_reached", domain=key, limit=limits.daily_limit)
            raise RateLimitExceeded(key, limits.daily_limit, retry_after)

    async def _wait_for_burst(self, key: str, limits: RequestLimits) -> None:
        if limits.burst_limit is None:
            return
        while len(recent := self._recent(key, limits.burst_window)) >= limits.burst_limit:
            # wait for the oldest grant that keeps the window full to age out
            remaining = recent[-limits.burst_limit] + limits.burst_window - self._clock()
            logger.debug("gate.burst_waiting", domain=key, wait_seconds=round(remaining, 3))
            self._waits[key] = self._waits.get(key, 0) + 1
            await self._sleep(remaining)

    def _record(self, key: str, granted: float, limits: RequestLimits | None) -> None:
        if limits is None or limits.horizon <= 0:
            return
        grants = self._grants.setdefault(key, deque())
        grants.append(granted)
        while grants and grants[0] + limits.horizon <= granted:
            grants.popleft()

    async def acquire(self, domain: str) -> float:
        """Wait until ``domain`` may be hit again.

        Args:
            domain: Domain or gate key to acquire

        Returns:
            The clock reading the request was granted at

        Raises:
            RateLimitExceeded: If the domain's daily allowance is used up
        """
        key = domain.lower()
        delay = self.delay_for(key)
        limits = self._limits.get(key)
        async with self._lock(key):
            if limits is not None:
                self._check_daily(key, limits)
            last = self._last.get(key)
            if last is not None:
                waited = False
                # Loop because a sleep may end a hair before the deadline
                while (remaining := delay - (self._clock() - last)) > 0:
                    if not waited:
                        logger.debug("gate.waiting", domain=key, wait_seconds=round(remaining, 3))
                        self._waits[key] = self._waits.get(key, 0) + 1
                        waited = True
                    await self._sleep(remaining)
            if limits is not None:
                await self._wait_for_burst(key, limits)
            granted = max(self._clock(), last or 0.0)
            self._last[key] = granted
            self._record(key, granted, limits)
            return granted

    def last_request(self, domain: str) -> float | None:
        return self._last.get(domain.lower())

    @staticmethod
    def backoff_delay(attempt: int, base: float = 1.0, multiplier: float = 2.0) -> float:
        """Exponential backoff for the zero-based retry ``attempt``."""
        return base * (multiplier**attempt)

    async def backoff(self, domain: str, attempt: int, base: float = 1.0, multiplier: float = 2.0) -> float:
        """Sleep the retry backoff, then re-acquire the gate for ``domain``."""
        wait = self.backoff_delay(attempt, base, multiplier)
        if wait > 0:
            logger.info("gate.backoff", domain=domain.lower(), attempt=attempt + 1, wait_seconds=wait)
            await self._sleep(wait)
        return await self.acquire(domain)

    def report(self) -> dict:
        """Snapshot of per-domain timers for status displays.

        Returns:
            Mapping of gate key to its ``delay``, ``seconds_since_last``,
            ``waits`` and, for limited domains, ``requests_today``
        """
        now = self._clock()
        out: dict[str, dict] = {}
        for key, last in self._last.items():
            entry = {
                "delay": self.delay_for(key),
                "seconds_since_last": round(now - last, 3),
                "waits": self._waits.get(key, 0),
            }
            limits = self._limits.get(key)
            if limits is not None and limits.daily_limit is not None:
                entry["requests_today"] = len(self._recent(key, DAY_SECONDS))
                entry["daily_limit"] = limits.daily_limit
            out[key] = entry
        return out

    def clear(self) -> None:
        self._last.clear()
        self._waits.clear()
        self._grants.clear()


class CircuitBreaker:
    """Pauses one platform after repeated failed fetch cycles.

    ``max_failures`` failures inside ``window_seconds`` open the breaker for
    ``cooldown_seconds``. The first call after the cooldown is let through
    (half-open); its outcome closes the breaker or starts counting again.
    """

    def __init__(
        self,
        max_failures: int = 5,
        window_seconds: float = 3600.0,
        cooldown_seconds: float = 1800.0,
        *,
        name: str = "",
        clock: Clock = time.monotonic,
    ) -> None:
        self.name = name
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._failures: list[float] = []
        self._opened_at: float | None = None
        self._trips = 0

    @classmethod
    def from_policy(cls, name: str, policy: ErrorPolicy, *, clock: Clock = time.monotonic) -> CircuitBreaker:
        """Build the breaker for platform ``name`` from the configured error policy."""
        return cls(
            policy.max_consecutive_errors,
            policy.failure_window,
            policy.error_cooldown,
            name=name,
            clock=clock,
        )

    @property
    def is_open(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at < self.cooldown_seconds

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        return "open" if self.is_open else "half_open"

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        self._failures = [t for t in self._failures if t >= cutoff]

    def allow_call(self) -> bool:
        """Return whether a fetch may go ahead right now."""
        now = self._clock()
        if self._opened_at is not None:
            if now - self._opened_at < self.cooldown_seconds:
                return False
            logger.info("breaker.half_open", platform=self.name)
            self._opened_at = None
            self._failures.clear()
        self._prune(now)
        return True

    def record_success(self) -> None:
        if self._failures:
            logger.info("breaker.reset", platform=self.name, failures=len(self._failures))
        self._failures.clear()
        self._opened_at = None

    def record_failure(self) -> None:
        now = self._clock()
        self._prune(now)
        self._failures.append(now)
        if len(self._failures) >= self.max_failures and self._opened_at is None:
            self._opened_at = now
            self._trips += 1
            logger.warning(
                "breaker.opened",
                platform=self.name,
                failures=len(self._failures),
                cooldown_seconds=self.cooldown_seconds,
            )

    def report(self) -> dict:
        """State, failures in the current window and how often the breaker has tripped."""
        opened_for = None if self._opened_at is None else round(self._clock() - self._opened_at, 3)
        return {
            "state": self.state,
            "recent_failures": len(self._failures),
            "trips": self._trips,
            "seconds_open": opened_for,
        }
