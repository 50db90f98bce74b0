#!/usr/bin/env python3
"""
RSS/Atom feed client.

Downloads a channel's feed over HTTP with a bounded timeout and parses it into
``ParsedFeed``/``ParsedEntry`` records. A single call is a single attempt: no
retries happen here, the next scheduled cycle is the retry policy.
"""

from asyncio import get_running_loop, TimeoutError
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, List, Optional
from xml.sax import SAXException

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import ParseFailure, StatusCodeError, TransportError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("feed_client")

# Fields checked for a publication date, in priority order
DATE_FIELDS = ('published', 'updated', 'created', 'issued', 'date')


@dataclass
class ParsedEntry:
    """One entry of a parsed feed."""

    guid: Optional[str]
    title: Optional[str]
    link: Optional[str]
    summary: Optional[str]
    published: Optional[int] = None


@dataclass
class ParsedFeed:
    """A successfully parsed RSS/Atom document."""

    title: Optional[str]
    version: str
    entries: List[ParsedEntry] = field(default_factory=list)


class FeedClient:
    """HTTP + feedparser client used by the sync orchestrator.

    The client owns an aiohttp session; use it as an async context manager or
    call ``open()``/``close()`` explicitly.
    """

    def __init__(self, timeout: Optional[int] = None, user_agent: Optional[str] = None) -> None:
        self.timeout = ClientTimeout(total=timeout or config.HTTP_TIMEOUT)
        self.user_agent = user_agent or config.USER_AGENT
        self.session: Optional[ClientSession] = None
        # feedparser is synchronous; keep it off the event loop
        self.executor: Optional[ThreadPoolExecutor] = None

    async def open(self) -> None:
        if self.session is None or self.session.closed:
            self.session = ClientSession(timeout=self.timeout, headers={'User-Agent': self.user_agent})
        if self.executor is None:
            self.executor = ThreadPoolExecutor(max_workers=config.FETCH_CONCURRENCY)

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
        if self.executor is not None:
            self.executor.shutdown(wait=False)
            self.executor = None

    async def __aenter__(self) -> "FeedClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @trace_span(
        "feed.fetch_and_parse",
        tracer_name="feed_client",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def fetch_and_parse(self, url: str) -> ParsedFeed:
        """Fetch a feed and parse it.

        Raises:
            StatusCodeError: the server answered with a non-2xx status.
            TransportError: connection failure or timeout.
            ParseFailure: the body is not a usable RSS/Atom document.
        """
        content = await self._download(url)
        return await self._parse(url, content)

    async def _download(self, url: str) -> bytes:
        if self.session is None or self.executor is None:
            await self.open()
        try:
            async with self.session.get(url) as response:
                if not 200 <= response.status < 300:
                    logger.warning(f"Error fetching {url}: HTTP {response.status}")
                    raise StatusCodeError(response.status)
                return await response.read()
        except TimeoutError as e:
            raise TransportError(f"Timed out after {self.timeout.total}s fetching {url}") from e
        except ClientError as e:
            raise TransportError(f"Could not fetch the feed: {self._format_client_error(e)}") from e

    async def _parse(self, url: str, content: bytes) -> ParsedFeed:
        loop = get_running_loop()
        try:
            feed = await loop.run_in_executor(self.executor, feedparser.parse, content)
        except (ValueError, TypeError, LookupError, SAXException) as e:
            raise ParseFailure(f"Parsing error: {e}") from e

        bozo_exception = feed.get('bozo_exception')
        # feedparser salvages entries from broken XML; those lose fields
        # (guids included), so a malformed document is rejected outright
        if isinstance(bozo_exception, SAXException):
            raise ParseFailure(f"Parsing error: malformed XML: {bozo_exception}")

        version = getattr(feed, 'version', '') or ''
        entries = feed.get('entries') or []
        if not version or (feed.bozo and not entries):
            raise ParseFailure(f"Parsing error: {bozo_exception or 'not an RSS or Atom document'}")

        if feed.bozo:
            logger.debug(f"Feed {url} parsed with warnings: {bozo_exception}")

        parsed_entries = [self.to_parsed_entry(entry) for entry in entries]
        title = feed.feed.get('title') if 'feed' in feed else None
        logger.debug(f"Feed {url} parsed as {version} with {len(parsed_entries)} entries")
        return ParsedFeed(title=title, version=version, entries=parsed_entries)

    def to_parsed_entry(self, entry) -> ParsedEntry:
        """Normalise a feedparser entry."""
        guid = self._get_entry_value(entry, 'id')
        guid = guid.strip() if isinstance(guid, str) else None
        return ParsedEntry(
            guid=guid or None,
            title=self._get_entry_value(entry, 'title'),
            link=self._first_link(entry),
            summary=self.extract_summary(entry),
            published=self.parse_published(entry),
        )

    def extract_summary(self, entry) -> Optional[str]:
        """Return the entry summary, falling back to description then content."""
        summary = self._get_entry_value(entry, 'summary') or self._get_entry_value(entry, 'description')
        if summary:
            return summary
        content = self._get_entry_value(entry, 'content')
        if content:
            for content_item in content:
                value = content_item.get('value') if hasattr(content_item, 'get') else None
                if value:
                    return value
        return None

    def parse_published(self, entry) -> Optional[int]:
        """Best-effort publication timestamp; None when the feed gives none."""
        for name in DATE_FIELDS:
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{name}_parsed"))
            if timestamp:
                return timestamp
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, name))
            if timestamp:
                return timestamp
        return None

    def _first_link(self, entry) -> Optional[str]:
        link = self._get_entry_value(entry, 'link')
        if link:
            return link
        links = self._get_entry_value(entry, 'links') or []
        for candidate in links:
            href = candidate.get('href') if hasattr(candidate, 'get') else None
            if href:
                return href
        return None

    def _get_entry_value(self, entry, name: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if entry is None:
            return None
        getter = getattr(entry, 'get', None)
        if callable(getter):
            value = getter(name)
            if value is not None:
                return value
        return getattr(entry, name, None)

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ''):
            return None

        if isinstance(value, datetime):
            dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())

        if isinstance(value, (list, tuple)):
            # feedparser's *_parsed values are UTC struct_time tuples
            try:
                return int(timegm(tuple(value)))
            except (OverflowError, ValueError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value)

        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return int(timegm(time_struct))
        except (ValueError, TypeError, AttributeError, OverflowError):
            pass
        try:
            dt = parsedate_to_datetime(date_str)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        except (TypeError, ValueError, OverflowError):
            return None

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available errno."""
        parts: List[str] = [error.__class__.__name__]
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
