#!/usr/bin/env python3
"""Transactional persistence of new entries and their per-subscriber state."""

from typing import List

from config import get_logger
from models import DatabaseQueue, FanoutResult, NewEntry
from telemetry import trace_span

logger = get_logger("fanout")


class FanoutWriter:
    """Writes new entries and fans them out to the channel's subscribers.

    The whole write is one ``commit_new_entries`` database operation, so the
    entry inserts, the user-entry rows and the ``last_update`` stamp either all
    land or none do. Storage failures surface as ``StorageError``.
    """

    def __init__(self, db: DatabaseQueue) -> None:
        self.db = db

    @trace_span(
        "fanout.commit_new_entries",
        tracer_name="fanout",
        attr_from_args=lambda self, channel_id, new_entries, now: {
            "channel.id": channel_id,
            "entries.count": len(new_entries),
        },
    )
    async def commit_new_entries(self, channel_id: int, new_entries: List[NewEntry], now: int) -> FanoutResult:
        result = await self.db.execute(
            'commit_new_entries',
            channel_id=channel_id,
            entries=list(new_entries),
            now=now,
        )
        if result.entries_inserted:
            logger.info(
                f"Channel {channel_id}: stored {result.entries_inserted} new entries, "
                f"{result.states_created} user states for {result.subscriber_count} subscribers"
            )
        if result.entries_inserted < len(new_entries):
            logger.debug(
                f"Channel {channel_id}: {len(new_entries) - result.entries_inserted} entries "
                "were already stored by a concurrent writer"
            )
        return result
