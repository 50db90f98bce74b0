#!/usr/bin/env python3
"""
Feed Sync command line

Wires the database queue, the Redis lock store, the feed client and the sync
orchestrator together and exposes them as commands:

    run              one sync cycle over all enabled channels
    scheduled        sync cycles on the channels.yaml schedule
    status           channel health (enabled/disabled, failure counts)
    schedule-status  next scheduled run
    seed             register the channels listed in channels.yaml
    register         register one channel and sync it right away
    subscribe        subscribe a user to a channel
    reenable         re-enable a disabled channel and reset its counter
    errors           recent failure reasons of a channel
"""

import argparse
import asyncio
import sys
from typing import Optional

from config import config, get_logger
from errors import StorageError
from failures import FailureTracker
from feed_client import FeedClient
from locks import ChannelLockManager, create_redis_client
from models import DatabaseQueue
from scheduler import create_scheduler
from sync import SyncOrchestrator
from telemetry import init_telemetry
from utils import format_timestamp, validate_url

logger = get_logger("main")
init_telemetry("feed-sync")


class FeedSyncApp:
    """Owns the long-lived resources shared by every command."""

    def __init__(self, database_path: Optional[str] = None, redis_url: Optional[str] = None) -> None:
        self.db = DatabaseQueue(database_path or config.DATABASE_PATH)
        self.redis_url = redis_url or config.REDIS_URL
        self.redis = None
        self.feed_client: Optional[FeedClient] = None
        self.orchestrator: Optional[SyncOrchestrator] = None

    async def start(self, with_sync: bool = False) -> None:
        await self.db.start()
        if with_sync:
            self.redis = create_redis_client(self.redis_url)
            self.feed_client = FeedClient()
            await self.feed_client.open()
            self.orchestrator = SyncOrchestrator(
                self.db,
                ChannelLockManager(self.redis),
                self.feed_client,
            )

    async def close(self) -> None:
        if self.feed_client:
            await self.feed_client.close()
            self.feed_client = None
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
        await self.db.stop()

    async def run_once(self) -> bool:
        """Run one cycle; False when every visited channel failed."""
        report = await self.orchestrator.run_cycle()
        for result in report.results:
            if result.error:
                logger.info(f"Channel {result.channel_id}: {result.outcome.value} ({result.error})")
        if report.results and report.failed == len(report.results):
            logger.error(f"All {report.failed} channels failed in this cycle")
            return False
        return True

    async def run_scheduled(self) -> None:
        scheduler = create_scheduler()
        await scheduler.run_scheduled(self.orchestrator)

    async def seed(self) -> int:
        """Register every channel listed in channels.yaml."""
        registered = 0
        for name, url in config.CHANNEL_SOURCES.items():
            if not validate_url(url):
                logger.warning(f"Skipping seed channel '{name}' with invalid URL: {url}")
                continue
            channel_id = await self.db.execute('register_channel', name=name, url=url)
            logger.info(f"Channel '{name}' registered as {channel_id}")
            registered += 1
        return registered

    async def register(self, name: str, url: str, sync_now: bool = True) -> Optional[int]:
        """Register a channel and, unless told otherwise, sync it immediately."""
        if not validate_url(url):
            logger.error(f"Invalid feed URL: {url}")
            return None
        channel_id = await self.db.execute('register_channel', name=name, url=url)
        logger.info(f"Channel '{name}' registered as {channel_id}")
        if sync_now and self.orchestrator:
            result = await self.orchestrator.sync_channel_by_id(channel_id)
            if result is not None:
                print(f"Initial sync: {result.outcome.value}, {result.new_entries} new entries"
                      + (f" ({result.error})" if result.error else ""))
        return channel_id

    async def subscribe(self, user_id: int, channel_id: int, name: Optional[str] = None) -> bool:
        channel = await self.db.execute('get_channel', channel_id=channel_id)
        if channel is None:
            logger.error(f"No channel with ID {channel_id}")
            return False
        linked = await self.db.execute('subscribe_user', user_id=user_id, channel_id=channel_id, name=name)
        print(f"User {user_id} subscribed to {channel.name} ({linked} existing entries linked)")
        return True

    async def reenable(self, channel_id: int) -> bool:
        found = await FailureTracker(self.db).reenable(channel_id)
        if not found:
            logger.error(f"No channel with ID {channel_id}")
        return found

    async def print_errors(self, channel_id: int, limit: int) -> None:
        errors = await FailureTracker(self.db).list_errors(channel_id, limit=limit)
        if not errors:
            print(f"No recorded failures for channel {channel_id}")
            return
        print(f"\n⚠️ Last {len(errors)} failures of channel {channel_id}")
        for err in errors:
            print(f"   {format_timestamp(err.error_timestamp)}  {err.error_reason}")

    async def print_status(self) -> None:
        channels = await self.db.execute('list_channels')
        total_items = await self.db.execute('count_items')
        total_states = await self.db.execute('count_user_states')
        disabled = [c for c in channels if c.disabled]

        print("\n📊 Feed Sync Status")
        print(f"💾 Database: {config.DATABASE_PATH}")
        print(f"📡 Channels: {len(channels)} ({len(disabled)} disabled)")
        print(f"📰 Entries: {total_items}")
        print(f"👤 User entry states: {total_states}")
        print(f"🚦 Failure threshold: {config.FAILURE_THRESHOLD or 'off'}")
        if channels:
            print()
        for channel in channels:
            marker = "❌" if channel.disabled else "✅"
            print(f"   {marker} [{channel.id}] {channel.name}  failures={channel.failure_count}  "
                  f"last_update={format_timestamp(channel.last_update)}")


async def _run_command(args) -> int:
    needs_sync = args.mode in ('run', 'scheduled', 'register') and not getattr(args, 'no_sync', False)
    app = FeedSyncApp(args.database, args.redis_url)
    await app.start(with_sync=needs_sync)
    try:
        if args.mode == 'run':
            return 0 if await app.run_once() else 1
        if args.mode == 'scheduled':
            await app.run_scheduled()
            return 0
        if args.mode == 'status':
            await app.print_status()
            return 0
        if args.mode == 'seed':
            count = await app.seed()
            print(f"Registered {count} channels from {config.CHANNELS_CONFIG_PATH}")
            return 0
        if args.mode == 'register':
            return 0 if await app.register(args.name, args.url, sync_now=not args.no_sync) else 1
        if args.mode == 'subscribe':
            return 0 if await app.subscribe(args.user_id, args.channel_id, args.name) else 1
        if args.mode == 'reenable':
            return 0 if await app.reenable(args.channel_id) else 1
        if args.mode == 'errors':
            await app.print_errors(args.channel_id, args.limit)
            return 0
        return 2
    finally:
        await app.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Sync engine')
    parser.add_argument('--database', type=str, help='SQLite database path (default: DATABASE_PATH)')
    parser.add_argument('--redis-url', type=str, help='Redis URL for channel locks (default: REDIS_URL)')
    sub = parser.add_subparsers(dest='mode', required=True, metavar='mode')

    sub.add_parser('run', help='Run one sync cycle')
    sub.add_parser('scheduled', help='Run sync cycles on the configured schedule')
    sub.add_parser('status', help='Show channel health')
    sub.add_parser('schedule-status', help='Show the next scheduled run')
    sub.add_parser('seed', help='Register the channels listed in channels.yaml')

    register = sub.add_parser('register', help='Register a channel and sync it')
    register.add_argument('name')
    register.add_argument('url')
    register.add_argument('--no-sync', action='store_true', help='Do not sync the channel right away')

    subscribe = sub.add_parser('subscribe', help='Subscribe a user to a channel')
    subscribe.add_argument('user_id', type=int)
    subscribe.add_argument('channel_id', type=int)
    subscribe.add_argument('--name', type=str, help='Display name of the channel for this user')

    reenable = sub.add_parser('reenable', help='Re-enable a disabled channel')
    reenable.add_argument('channel_id', type=int)

    errors = sub.add_parser('errors', help='Show recent failures of a channel')
    errors.add_argument('channel_id', type=int)
    errors.add_argument('--limit', type=int, default=20)

    return parser


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        if args.mode == 'schedule-status':
            create_scheduler().print_schedule_status()
            sys.exit(0)
        sys.exit(asyncio.run(_run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Feed Sync shutting down")
    except StorageError as e:
        logger.error(f"💥 Storage error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
