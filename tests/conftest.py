"""Shared test fixtures for the Feed Sync tests."""

import asyncio
import os

os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from feed_client import ParsedEntry, ParsedFeed
from models import DatabaseQueue


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>Description of the first article</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <id>urn:uuid:feed</id>
  <updated>2026-02-13T10:00:00Z</updated>
  <entry>
    <title>Atom Entry 1</title>
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <summary>Summary of entry 1</summary>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_RSS_NO_GUID_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>No Guid Feed</title>
    <link>https://example.com</link>
    <description>Items without identifiers</description>
    <item>
      <title>Anonymous</title>
      <description>No guid, no link</description>
    </item>
  </channel>
</rss>"""

SAMPLE_TRUNCATED_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Truncated Feed</title>
    <link>https://example.com</link>
    <description>Cut off mid-transfer</description>
    <item><title>One</title><guid>one</guid></item>
    <item><title>Two</title><guid>two</gu"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the lock manager uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed


class UnreachableRedis(FakeRedis):
    """Every command fails as if the server were down."""

    async def set(self, key, value, nx=False, ex=None):
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def get(self, key):
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")


class StubFeedClient:
    """Returns canned ParsedFeeds (or raises canned errors) per URL."""

    def __init__(self, responses=None, delay: float = 0.0):
        self.responses = dict(responses or {})
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_and_parse(self, url):
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            response = self.responses[url]
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self.in_flight -= 1


def make_feed(*guids, title="Stub Feed", published=1770976800):
    """Build a ParsedFeed with one entry per guid."""
    entries = [
        ParsedEntry(
            guid=guid,
            title=f"Entry {guid}",
            link=f"https://example.com/{guid}" if guid else None,
            summary=f"Body of {guid}",
            published=published,
        )
        for guid in guids
    ]
    return ParsedFeed(title=title, version="rss20", entries=entries)


@pytest_asyncio.fixture
async def db(tmp_path):
    """A started DatabaseQueue on a fresh temporary database."""
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def fake_redis():
    return FakeRedis()
