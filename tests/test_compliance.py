"""Tests for robots.txt compliance."""
from __future__ import annotations

import httpx
import pytest

from creator_sync.compliance import ComplianceChecker, blanket_disallow
from creator_sync.config import ComplianceConfig


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestBlanketDisallow:
    """Tests for robots.txt parsing."""

    def test_wildcard_disallow_all(self):
        assert blanket_disallow("User-agent: *\nDisallow: /\n")

    def test_path_disallow_is_not_blanket(self):
        assert not blanket_disallow("User-agent: *\nDisallow: /private/\n")

    def test_other_agent_disallow_is_ignored(self):
        assert not blanket_disallow("User-agent: BadBot\nDisallow: /\n\nUser-agent: *\nDisallow: /tmp/\n")

    def test_allow_root_cancels_disallow(self):
        assert not blanket_disallow("User-agent: *\nDisallow: /\nAllow: /\n")

    def test_grouped_user_agents_share_rules(self):
        robots = "User-agent: Googlebot\nUser-agent: *\nDisallow: / # everything\n"
        assert blanket_disallow(robots)

    def test_empty(self):
        assert not blanket_disallow("")


class TestComplianceChecker:
    """Tests for the compliance gate."""

    @pytest.mark.asyncio
    async def test_disallowed_by_robots(self):
        async def handler(request):
            return httpx.Response(200, text="User-agent: *\nDisallow: /\n")

        async with _client(handler) as client:
            checker = ComplianceChecker(client)
            assert await checker.is_allowed("instagram.com") is False

    @pytest.mark.asyncio
    async def test_allowed_when_robots_permits(self):
        seen = []

        async def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, text="User-agent: *\nDisallow: /accounts/\n")

        async with _client(handler) as client:
            checker = ComplianceChecker(client)
            assert await checker.is_allowed("instagram.com") is True
        assert seen == ["https://instagram.com/robots.txt"]

    @pytest.mark.asyncio
    async def test_missing_robots_means_allowed(self):
        async def handler(request):
            return httpx.Response(404)

        async with _client(handler) as client:
            assert await ComplianceChecker(client).is_allowed("tiktok.com") is True

    @pytest.mark.asyncio
    async def test_unreachable_robots_means_allowed(self):
        async def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            assert await ComplianceChecker(client).is_allowed("tiktok.com") is True

    @pytest.mark.asyncio
    async def test_domain_outside_allowlist_is_refused_without_fetching(self):
        calls = []

        async def handler(request):
            calls.append(request)
            return httpx.Response(404)

        async with _client(handler) as client:
            assert await ComplianceChecker(client).is_allowed("example.com") is False
        assert calls == []

    @pytest.mark.asyncio
    async def test_robots_ignored_when_disabled(self):
        calls = []

        async def handler(request):
            calls.append(request)
            return httpx.Response(200, text="User-agent: *\nDisallow: /\n")

        async with _client(handler) as client:
            checker = ComplianceChecker(client, ComplianceConfig(respect_robots_txt=False))
            assert await checker.is_allowed("instagram.com") is True
        assert calls == []

    @pytest.mark.asyncio
    async def test_rechecked_every_call_by_default(self):
        calls = []

        async def handler(request):
            calls.append(request)
            return httpx.Response(404)

        async with _client(handler) as client:
            checker = ComplianceChecker(client)
            await checker.is_allowed("instagram.com")
            await checker.is_allowed("instagram.com")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_memoized_within_recheck_interval(self, clock):
        calls = []

        async def handler(request):
            calls.append(request)
            return httpx.Response(404)

        async with _client(handler) as client:
            checker = ComplianceChecker(client, ComplianceConfig(recheck_interval=60.0), clock=clock)
            await checker.is_allowed("instagram.com")
            await checker.is_allowed("instagram.com")
            assert len(calls) == 1
            clock.advance(61)
            await checker.is_allowed("instagram.com")
        assert len(calls) == 2
