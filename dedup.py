#!/usr/bin/env python3
"""Deduplication of freshly parsed entries against a channel's stored guids."""

from time import time
from typing import Iterable, List, Optional, Set

from config import get_logger
from feed_client import ParsedEntry
from models import DatabaseQueue, NewEntry
from telemetry import trace_span

logger = get_logger("dedup")


class DedupFilter:
    """Keeps only the entries a channel has not stored yet.

    Entries without a guid cannot be matched against anything and are always
    accepted, so a feed that omits ids will re-deliver those entries on every
    cycle.
    """

    def __init__(self, db: DatabaseQueue) -> None:
        self.db = db

    @trace_span(
        "dedup.filter_new",
        tracer_name="dedup",
        attr_from_args=lambda self, channel_id, entries, now=None: {"channel.id": channel_id},
    )
    async def filter_new(self, channel_id: int, entries: Iterable[ParsedEntry],
                         now: Optional[int] = None) -> List[NewEntry]:
        """Return the entries of ``entries`` that are new for ``channel_id``."""
        known_guids: Set[str] = await self.db.execute('get_channel_guids', channel_id=channel_id)
        fetched_at = now if now is not None else int(time())

        new_entries: List[NewEntry] = []
        batch_guids: Set[str] = set()
        for entry in entries:
            if entry.guid is not None:
                if entry.guid in known_guids or entry.guid in batch_guids:
                    continue
                batch_guids.add(entry.guid)
            new_entries.append(to_new_entry(channel_id, entry, fetched_at))

        logger.debug(f"Channel {channel_id}: {len(new_entries)} new entries ({len(known_guids)} already known)")
        return new_entries


def to_new_entry(channel_id: int, entry: ParsedEntry, fetched_at: int) -> NewEntry:
    """Build the persistable form of a parsed entry."""
    return NewEntry(
        channel_id=channel_id,
        guid=entry.guid,
        title=entry.title,
        url=entry.link,
        content=entry.summary,
        fetch_timestamp=fetched_at,
        publish_timestamp=entry.published if entry.published is not None else fetched_at,
    )
