#!/usr/bin/env python3
"""
Sync orchestrator.

One cycle visits every enabled channel with bounded parallelism. Each channel
runs strictly in order: lock, fetch and parse, dedup, fan-out commit, unlock.
A failing channel is recorded by the failure tracker and never stops the rest
of the cycle; once every channel is done the threshold disable pass runs.
"""

from asyncio import CancelledError, Semaphore, create_task, gather, shield, wait
from dataclasses import dataclass, field
from enum import Enum
from time import time
from typing import Callable, List, Optional

from redis.exceptions import RedisError

from config import config, get_logger
from dedup import DedupFilter
from errors import FetchError, LockUnavailable, StorageError
from fanout import FanoutWriter
from failures import FailureTracker
from feed_client import FeedClient
from locks import ChannelLockManager
from models import Channel, DatabaseQueue
from telemetry import trace_span
from utils import format_duration

logger = get_logger("sync")


class SyncState(Enum):
    IDLE = "idle"
    LOCK_ACQUIRED = "lock_acquired"
    FETCHING = "fetching"
    SUCCESS = "success"
    FAILED = "failed"
    LOCK_RELEASED = "lock_released"
    DONE = "done"


class ChannelOutcome(Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ChannelResult:
    """What happened to one channel during a cycle."""

    channel_id: int
    outcome: ChannelOutcome = ChannelOutcome.SKIPPED
    new_entries: int = 0
    states_created: int = 0
    error: Optional[str] = None
    states: List[SyncState] = field(default_factory=lambda: [SyncState.IDLE])

    @property
    def state(self) -> SyncState:
        return self.states[-1]

    def advance(self, state: SyncState) -> None:
        self.states.append(state)


@dataclass
class CycleReport:
    """Aggregate of a whole cycle."""

    results: List[ChannelResult] = field(default_factory=list)
    disabled: int = 0
    duration: float = 0.0

    def count(self, outcome: ChannelOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def synced(self) -> int:
        return self.count(ChannelOutcome.SYNCED)

    @property
    def skipped(self) -> int:
        return self.count(ChannelOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(ChannelOutcome.FAILED)

    @property
    def new_entries(self) -> int:
        return sum(r.new_entries for r in self.results)


class SyncOrchestrator:
    """Drives sync cycles over the channel registry."""

    def __init__(
        self,
        db: DatabaseQueue,
        lock_manager: ChannelLockManager,
        feed_client: FeedClient,
        failure_tracker: Optional[FailureTracker] = None,
        dedup_filter: Optional[DedupFilter] = None,
        fanout_writer: Optional[FanoutWriter] = None,
        concurrency: Optional[int] = None,
        clock: Callable[[], float] = time,
    ) -> None:
        self.db = db
        self.locks = lock_manager
        self.feed_client = feed_client
        self.failures = failure_tracker or FailureTracker(db)
        self.dedup = dedup_filter or DedupFilter(db)
        self.fanout = fanout_writer or FanoutWriter(db)
        self.concurrency = concurrency or config.FETCH_CONCURRENCY
        self.clock = clock
        self._stopping = False

    @trace_span("sync.run_cycle", tracer_name="sync")
    async def run_cycle(self) -> CycleReport:
        """Sync every enabled channel, then run the disable pass.

        If the cycle is cancelled, channels already in flight finish (so their
        locks are released), channels not yet started are skipped, and the
        cancellation propagates.
        """
        started = self.clock()
        self._stopping = False
        channels: List[Channel] = await self.db.execute('list_enabled_channels')
        logger.info(f"Starting sync cycle over {len(channels)} enabled channels (concurrency={self.concurrency})")

        semaphore = Semaphore(self.concurrency)

        async def _bounded(channel: Channel) -> ChannelResult:
            async with semaphore:
                if self._stopping:
                    result = ChannelResult(channel_id=channel.id, error="cycle shutting down")
                    result.advance(SyncState.DONE)
                    return result
                return await self.sync_channel(channel)

        tasks = [create_task(_bounded(channel)) for channel in channels]
        try:
            outcomes = await shield(gather(*tasks, return_exceptions=True))
        except CancelledError:
            self._stopping = True
            pending = [t for t in tasks if not t.done()]
            logger.warning(f"Sync cycle cancelled; letting {len(pending)} channel task(s) wind down")
            if pending:
                await wait(pending)
            raise

        report = CycleReport()
        for channel, outcome in zip(channels, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Channel {channel.id} sync crashed: {outcome!r}")
                crashed = ChannelResult(channel_id=channel.id, outcome=ChannelOutcome.FAILED, error=repr(outcome))
                crashed.advance(SyncState.DONE)
                report.results.append(crashed)
            else:
                report.results.append(outcome)

        try:
            report.disabled = await self.failures.disable_above_threshold()
        except StorageError as e:
            logger.error(f"Disable pass failed: {e}")

        report.duration = self.clock() - started
        logger.info(
            f"Sync cycle done in {format_duration(report.duration)}: {report.synced} synced, "
            f"{report.skipped} skipped, {report.failed} failed, {report.new_entries} new entries, "
            f"{report.disabled} disabled"
        )
        return report

    @trace_span(
        "sync.channel",
        tracer_name="sync",
        attr_from_args=lambda self, channel: {"channel.id": channel.id, "channel.url": channel.url},
    )
    async def sync_channel(self, channel: Channel) -> ChannelResult:
        """Run the lock/fetch/write/unlock sequence for one channel."""
        result = ChannelResult(channel_id=channel.id)
        try:
            async with self.locks.hold(channel.id) as handle:
                if handle is None:
                    skip = LockUnavailable(channel.id)
                    logger.info(f"{skip} ({channel.name}). Giving up for now")
                    result.error = str(skip)
                else:
                    result.advance(SyncState.LOCK_ACQUIRED)
                    await self._fetch_and_store(channel, result)
            if handle is not None and handle.released:
                result.advance(SyncState.LOCK_RELEASED)
        except RedisError as e:
            # Not the channel's fault: skip without counting a failure
            logger.error(f"Lock store unavailable for channel {channel.id}, skipping: {e}")
            result.error = f"Lock store unavailable: {e}"
        result.advance(SyncState.DONE)
        return result

    async def sync_channel_by_id(self, channel_id: int) -> Optional[ChannelResult]:
        """Sync a single registered channel outside the regular cycle."""
        channel = await self.db.execute('get_channel', channel_id=channel_id)
        if channel is None:
            logger.warning(f"No channel with ID {channel_id}")
            return None
        if channel.disabled:
            logger.info(f"Channel {channel_id} is disabled; not syncing")
            return None
        return await self.sync_channel(channel)

    async def _fetch_and_store(self, channel: Channel, result: ChannelResult) -> None:
        result.advance(SyncState.FETCHING)
        logger.info(f"Updating {channel.id} {channel.name} ({channel.url})")
        now = int(self.clock())
        try:
            feed = await self.feed_client.fetch_and_parse(channel.url)
            new_entries = await self.dedup.filter_new(channel.id, feed.entries, now=now)
            written = await self.fanout.commit_new_entries(channel.id, new_entries, now)
        except (FetchError, StorageError) as e:
            await self._fail(channel, result, str(e) or e.__class__.__name__)
        except Exception as e:
            logger.exception(f"Unexpected error while syncing channel {channel.id}")
            await self._fail(channel, result, f"Unexpected error: {e}")
        else:
            result.advance(SyncState.SUCCESS)
            result.outcome = ChannelOutcome.SYNCED
            result.new_entries = written.entries_inserted
            result.states_created = written.states_created

    async def _fail(self, channel: Channel, result: ChannelResult, reason: str) -> None:
        result.advance(SyncState.FAILED)
        result.outcome = ChannelOutcome.FAILED
        result.error = reason
        logger.error(f"Channel {channel.id} ({channel.name}) failed: {reason}")
        try:
            await self.failures.record_failure(channel.id, reason, now=int(self.clock()))
        except (StorageError, RuntimeError) as e:
            logger.error(f"Could not record failure for channel {channel.id}: {e}")
