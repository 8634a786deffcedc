"""Shared fixtures for creator-sync tests."""
from __future__ import annotations

import json
from pathlib import Path

import pytest


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


INSTAGRAM_HTML = """
<html>
<head>
<title>Jane Doe (@jane.doe) &#8226; Instagram photos and videos</title>
<meta property="og:description" content="46.2K Followers, 512 Following, 300 Posts - See Instagram photos and videos from Jane Doe (@jane.doe)">
</head>
<body><main>profile</main></body>
</html>
"""

TIKTOK_HTML = """
<html>
<head>
<title>Jane Doe | TikTok</title>
<meta name="description" content="Jane Doe on TikTok | 1.2M Likes. 87.5K Followers.">
</head>
<body>
<script id="__UNIVERSAL_DATA_FOR_REHYDRATION__" type="application/json">
{"__DEFAULT_SCOPE__": {"webapp.user-detail": {"userInfo": {"user": {"uniqueId": "jane.doe", "verified": false},
 "stats": {"followerCount": 88012, "heartCount": 1200000}}}}}
</script>
</body>
</html>
"""


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def baseline_doc() -> dict:
    return {
        "profile": {"name": "Jane Doe", "bio": "Travel and food"},
        "instagram": {
            "handle": "jane.doe",
            "followers": 100,
            "engagementRate": 4.2,
            "monthlyGrowth": [
                {"month": "2024-01", "followers": 90},
                {"month": "2024-02", "followers": 100},
            ],
        },
        "tiktok": {"handle": "jane.doe", "followers": 200},
        "brandPartners": ["Acme"],
        "metadata": {"lastUpdated": "2024-02-01T00:00:00+00:00"},
    }


@pytest.fixture
def baseline_file(tmp_path: Path, baseline_doc: dict) -> Path:
    path = tmp_path / "baseline.json"
    path.write_text(json.dumps(baseline_doc))
    return path
