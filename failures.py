#!/usr/bin/env python3
"""
Channel health tracking.

Every failed sync adds one to the channel's failure counter and a row to the
failure log. A disable pass at the end of each cycle switches off channels
whose counter reached the threshold. Successful syncs leave the counter as it
is; only an explicit re-enable resets it.
"""

from time import time
from typing import List, Optional

from config import config, get_logger
from models import ChannelError, DatabaseQueue
from telemetry import trace_span
from utils import truncate_string

logger = get_logger("failures")

MAX_REASON_LENGTH = 2000


class FailureTracker:
    """Failure counter, failure log and threshold-based circuit breaker."""

    def __init__(self, db: DatabaseQueue, threshold: Optional[int] = None) -> None:
        self.db = db
        self.threshold = config.FAILURE_THRESHOLD if threshold is None else threshold

    @trace_span(
        "failures.record",
        tracer_name="failures",
        attr_from_args=lambda self, channel_id, reason, now=None: {"channel.id": channel_id},
    )
    async def record_failure(self, channel_id: int, reason: str, now: Optional[int] = None) -> int:
        """Count one failure for the channel and log its reason.

        Returns:
            The channel's failure count after the increment.
        """
        reason = truncate_string(reason or "Unknown error", MAX_REASON_LENGTH)
        failure_count = await self.db.execute(
            'record_channel_failure',
            channel_id=channel_id,
            reason=reason,
            now=now if now is not None else int(time()),
        )
        logger.warning(f"Channel {channel_id} failure count increased to {failure_count}: {reason}")
        return failure_count

    @trace_span("failures.disable_above_threshold", tracer_name="failures")
    async def disable_above_threshold(self, threshold: Optional[int] = None) -> int:
        """Disable every enabled channel whose failure count reached ``threshold``.

        A threshold of 0 turns the pass into a no-op.

        Returns:
            Number of channels disabled by this pass.
        """
        threshold = self.threshold if threshold is None else threshold
        if threshold <= 0:
            logger.debug("Failure threshold is 0; automatic disabling is off")
            return 0
        disabled = await self.db.execute('disable_channels_above', threshold=threshold)
        if disabled:
            logger.warning(f"Disabled {disabled} channel(s) with at least {threshold} failures")
        else:
            logger.debug(f"No channel reached the failure threshold ({threshold})")
        return disabled

    async def reenable(self, channel_id: int) -> bool:
        """Re-enable a channel and reset its failure counter to zero."""
        found = await self.db.execute('enable_channel', channel_id=channel_id)
        if found:
            logger.info(f"Channel {channel_id} re-enabled, failure count reset")
        return found

    async def list_errors(self, channel_id: int, limit: int = 50) -> List[ChannelError]:
        """Most recent failure log rows of a channel."""
        return await self.db.execute('list_channel_errors', channel_id=channel_id, limit=limit)
