import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import (
    SAMPLE_ATOM_XML,
    SAMPLE_NOT_A_FEED_XML,
    SAMPLE_RSS_NO_GUID_XML,
    SAMPLE_RSS_XML,
    SAMPLE_TRUNCATED_RSS_XML,
)
from errors import ParseFailure, StatusCodeError, TransportError
from feed_client import FeedClient


class DummyEntry(dict):
    """Dict that also exposes attributes like feedparser entries."""

    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as exc:
            raise AttributeError(item) from exc


def _xml(body):
    async def handler(request):
        return web.Response(text=body, content_type="application/rss+xml")
    return handler


@pytest_asyncio.fixture
async def feed_server():
    seen_user_agents = []

    async def rss(request):
        seen_user_agents.append(request.headers.get("User-Agent"))
        return web.Response(text=SAMPLE_RSS_XML, content_type="application/rss+xml")

    async def server_error(request):
        return web.Response(status=500, text="Internal Server Error")

    async def not_found(request):
        return web.Response(status=404, text="gone")

    async def slow(request):
        await asyncio.sleep(2)
        return web.Response(text=SAMPLE_RSS_XML, content_type="application/rss+xml")

    app = web.Application()
    app.router.add_get("/feed.xml", rss)
    app.router.add_get("/atom.xml", _xml(SAMPLE_ATOM_XML))
    app.router.add_get("/no-guid.xml", _xml(SAMPLE_RSS_NO_GUID_XML))
    app.router.add_get("/page.html", _xml(SAMPLE_NOT_A_FEED_XML))
    app.router.add_get("/truncated.xml", _xml(SAMPLE_TRUNCATED_RSS_XML))
    app.router.add_get("/error", server_error)
    app.router.add_get("/missing", not_found)
    app.router.add_get("/slow", slow)

    server = TestServer(app)
    await server.start_server()
    server.seen_user_agents = seen_user_agents
    yield server
    await server.close()


@pytest.mark.asyncio
async def test_fetch_and_parse_rss(feed_server):
    async with FeedClient(user_agent="FeedSyncTest/1.0") as client:
        feed = await client.fetch_and_parse(str(feed_server.make_url("/feed.xml")))

    assert feed.title == "Test Feed"
    assert feed.version == "rss20"
    assert [e.guid for e in feed.entries] == ["article-1", "article-2"]
    first = feed.entries[0]
    assert first.title == "First Article"
    assert first.link == "https://example.com/article-1"
    assert first.summary == "Description of the first article"
    assert first.published == int(datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc).timestamp())
    assert feed_server.seen_user_agents == ["FeedSyncTest/1.0"]


@pytest.mark.asyncio
async def test_fetch_and_parse_atom(feed_server):
    async with FeedClient() as client:
        feed = await client.fetch_and_parse(str(feed_server.make_url("/atom.xml")))

    assert feed.version.startswith("atom")
    assert len(feed.entries) == 1
    assert feed.entries[0].guid == "urn:uuid:entry-1"
    assert feed.entries[0].link == "https://example.com/entry-1"


@pytest.mark.asyncio
async def test_entry_without_guid_or_date(feed_server):
    async with FeedClient() as client:
        feed = await client.fetch_and_parse(str(feed_server.make_url("/no-guid.xml")))

    assert len(feed.entries) == 1
    entry = feed.entries[0]
    assert entry.guid is None
    assert entry.link is None
    assert entry.published is None
    assert entry.summary == "No guid, no link"


@pytest.mark.asyncio
async def test_http_500_raises_status_code_error(feed_server):
    async with FeedClient() as client:
        with pytest.raises(StatusCodeError) as excinfo:
            await client.fetch_and_parse(str(feed_server.make_url("/error")))

    assert excinfo.value.status_code == 500
    assert "500" in str(excinfo.value)


@pytest.mark.asyncio
async def test_http_404_raises_status_code_error(feed_server):
    async with FeedClient() as client:
        with pytest.raises(StatusCodeError) as excinfo:
            await client.fetch_and_parse(str(feed_server.make_url("/missing")))
    assert excinfo.value.status_code == 404


@pytest.mark.asyncio
async def test_html_page_raises_parse_failure(feed_server):
    async with FeedClient() as client:
        with pytest.raises(ParseFailure):
            await client.fetch_and_parse(str(feed_server.make_url("/page.html")))


@pytest.mark.asyncio
async def test_truncated_body_raises_parse_failure(feed_server):
    async with FeedClient() as client:
        with pytest.raises(ParseFailure) as excinfo:
            await client.fetch_and_parse(str(feed_server.make_url("/truncated.xml")))
    assert "malformed XML" in str(excinfo.value)


@pytest.mark.asyncio
async def test_client_can_fetch_again_after_close(feed_server):
    client = FeedClient()
    await client.open()
    first = await client.fetch_and_parse(str(feed_server.make_url("/feed.xml")))
    await client.close()
    assert client.executor is None

    second = await client.fetch_and_parse(str(feed_server.make_url("/feed.xml")))
    await client.close()

    assert [e.guid for e in second.entries] == [e.guid for e in first.entries]


@pytest.mark.asyncio
async def test_executor_errors_are_not_parse_failures(feed_server):
    async with FeedClient() as client:
        client.executor.shutdown(wait=False)
        with pytest.raises(RuntimeError):
            await client.fetch_and_parse(str(feed_server.make_url("/feed.xml")))


@pytest.mark.asyncio
async def test_timeout_raises_transport_error(feed_server):
    async with FeedClient(timeout=1) as client:
        with pytest.raises(TransportError):
            await client.fetch_and_parse(str(feed_server.make_url("/slow")))


@pytest.mark.asyncio
async def test_connection_refused_raises_transport_error():
    async with FeedClient(timeout=5) as client:
        with pytest.raises(TransportError) as excinfo:
            await client.fetch_and_parse("http://127.0.0.1:1/feed.xml")
    assert "Could not fetch the feed" in str(excinfo.value)


def test_parse_published_without_weekday():
    client = FeedClient()
    entry = DummyEntry(published="17 Nov 2025 00:00:00 +0000")
    expected = int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())
    assert client.parse_published(entry) == expected


def test_parse_published_prefers_parsed_struct():
    client = FeedClient()
    entry = DummyEntry(
        published="garbage",
        updated_parsed=(2025, 11, 15, 16, 0, 0, 5, 319, 0),
    )
    expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
    assert client.parse_published(entry) == expected


def test_extract_summary_falls_back_to_content():
    client = FeedClient()
    entry = DummyEntry(content=[{"type": "text/html", "value": "<p>Body</p>"}])
    assert client.extract_summary(entry) == "<p>Body</p>"


def test_first_link_from_links_list():
    client = FeedClient()
    entry = DummyEntry(links=[{"rel": "alternate", "href": "https://example.com/x"}])
    assert client._first_link(entry) == "https://example.com/x"
