#!/usr/bin/env python3
"""
Per-channel distributed locks in Redis.

A lock is ``SET lock.channel.<id> <token> NX EX <ttl>``. Release reads the key
back and deletes it only when it still holds our token, so a holder whose TTL
ran out never removes a lock that a later cycle acquired. The read and the
delete are two round trips; the window between them is accepted.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("locks")

LOCK_KEY_PREFIX = "lock.channel."


@dataclass
class LockHandle:
    """Proof of a successful acquisition.

    ``released`` is set by ``ChannelLockManager.hold`` once its release call
    actually deleted the key.
    """

    channel_id: int
    key: str
    token: str
    released: bool = field(default=False, compare=False)


def lock_key(channel_id: int) -> str:
    return f"{LOCK_KEY_PREFIX}{channel_id}"


def create_redis_client(url: Optional[str] = None) -> redis.Redis:
    """Build the shared Redis client (connection pooled, str responses)."""
    return redis.from_url(url or config.REDIS_URL, encoding="utf-8", decode_responses=True)


class ChannelLockManager:
    """Acquires and releases per-channel locks.

    Args:
        store: any client exposing the redis-py asyncio ``set``/``get``/``delete``
            coroutines; in production a ``redis.asyncio.Redis``.
        ttl_seconds: lock lifetime; should cover the slowest expected fetch.
    """

    def __init__(self, store, ttl_seconds: Optional[int] = None) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds or config.LOCK_TTL_SECONDS

    @trace_span(
        "lock.try_acquire",
        tracer_name="locks",
        attr_from_args=lambda self, channel_id: {"channel.id": channel_id},
    )
    async def try_acquire(self, channel_id: int) -> Optional[LockHandle]:
        """Try to take the channel lock; None when someone else holds it."""
        key = lock_key(channel_id)
        token = str(uuid4())
        acquired = await self.store.set(key, token, nx=True, ex=self.ttl_seconds)
        if not acquired:
            return None
        logger.debug(f"Acquired {key} (ttl={self.ttl_seconds}s)")
        return LockHandle(channel_id=channel_id, key=key, token=token)

    @trace_span(
        "lock.release",
        tracer_name="locks",
        attr_from_args=lambda self, handle: {"channel.id": handle.channel_id},
    )
    async def release(self, handle: LockHandle) -> bool:
        """Delete the lock if it is still ours.

        Returns:
            True when the key was deleted, False when it had expired or been
            taken over by another holder (the key is left untouched).
        """
        current = await self.store.get(handle.key)
        if current != handle.token:
            logger.warning(
                f"Lock {handle.key} is no longer held by this worker "
                f"({'expired' if current is None else 'taken over'}); leaving it in place"
            )
            return False
        await self.store.delete(handle.key)
        logger.debug(f"Released {handle.key}")
        return True

    @asynccontextmanager
    async def hold(self, channel_id: int) -> AsyncIterator[Optional[LockHandle]]:
        """Scope a lock around a block of work.

        Yields the handle, or None when the lock is busy. The lock is released
        on every exit path; a release error is logged and left to the TTL.
        """
        handle = await self.try_acquire(channel_id)
        try:
            yield handle
        finally:
            if handle is not None:
                try:
                    handle.released = await self.release(handle)
                except RedisError as e:
                    logger.error(f"Could not release {handle.key}, it will expire in {self.ttl_seconds}s: {e}")
