import os

# Keep spans in-process and out of the test output
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest
import pytest_asyncio

from config import config
from models import DatabaseQueue


VALID_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Blog</title>
    <link>https://example.com/</link>
    <description>Posts from the example blog</description>
    <item>
      <title>First post</title>
      <link>https://example.com/posts/1</link>
      <description>The first post</description>
      <pubDate>Mon, 06 Jan 2025 10:00:00 +0000</pubDate>
    </item>
    <item>
      <title>Undated post</title>
      <link>https://example.com/posts/undated</link>
      <description>This one has no date</description>
    </item>
    <item>
      <title>Second post</title>
      <link>https://example.com/posts/2</link>
      <description>The second post</description>
      <pubDate>Tue, 07 Jan 2025 10:00:00 +0000</pubDate>
    </item>
  </channel>
</rss>
"""


class StubResponse:
    """Minimal stand-in for an aiohttp response used as an async context manager."""

    def __init__(self, body: bytes = b"", status: int = 200, reason: str = "OK"):
        self.body = body
        self.status = status
        self.reason = reason

    async def read(self) -> bytes:
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class StubSession:
    """Serves canned responses per URL and records every request."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def stub_session():
    return StubSession


@pytest.fixture
def stub_response():
    return StubResponse


@pytest.fixture
def valid_feed():
    return VALID_FEED


@pytest.fixture
def isolated_config(monkeypatch, tmp_path):
    """Point the database and the session file at a temporary directory."""
    monkeypatch.setattr(config, 'DATABASE_PATH', str(tmp_path / "test.db"))
    monkeypatch.setattr(config, 'SESSION_FILE', str(tmp_path / "gatorconfig.yaml"))
    return config


@pytest_asyncio.fixture
async def db(isolated_config):
    queue = DatabaseQueue(isolated_config.DATABASE_PATH)
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()
