"""
Periodic mirror reconciliation.

The heartbeat is an APScheduler interval job with ``max_instances=1`` and
``coalesce=True``, so passes never overlap within a process and missed
runs collapse into one. Across processes a Redis ``SET NX`` key keeps a
single sync in flight when Redis is configured. A tick that finds a sync
in flight is skipped rather than queued.
"""

import asyncio
import secrets
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.exceptions import RedisError

from cylinderhub.cache.redis_client import RedisClient
from cylinderhub.core.exceptions import MirrorSyncFailure
from cylinderhub.core.logging import get_logger, log_performance

logger = get_logger(__name__)

SYNC_LOCK_KEY = "cylinderhub:mirror:sync-lock"


class MirrorSyncLock:
    """Single-flight guard for mirror sync and rebuild."""

    def __init__(
        self,
        redis: Optional[RedisClient] = None,
        key: str = SYNC_LOCK_KEY,
        ttl_seconds: int = 600,
    ):
        self.redis = redis
        self.key = key
        self.ttl_seconds = ttl_seconds
        self._local = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._local.locked()

    @asynccontextmanager
    async def hold(self, wait: bool = True) -> AsyncIterator[bool]:
        """
        Hold the lock for the duration of the block.

        Yields False instead of blocking when ``wait`` is False and the lock
        is taken locally, or when another process holds the Redis key.
        """
        if not wait and self._local.locked():
            yield False
            return

        async with self._local:
            token = secrets.token_hex(16)
            acquired_remote = await self._acquire_remote(token)
            if acquired_remote is False:
                yield False
                return
            try:
                yield True
            finally:
                if acquired_remote:
                    await self._release_remote(token)

    async def _acquire_remote(self, token: str) -> Optional[bool]:
        """True if acquired, False if held elsewhere, None if Redis is not in use."""
        if self.redis is None or not self.redis.is_connected:
            return None
        try:
            return await self.redis.set(self.key, token, ex=self.ttl_seconds, nx=True)
        except RedisError as e:
            logger.warning(
                "Mirror sync lock unavailable, continuing with process lock",
                error=str(e),
            )
            return None

    async def _release_remote(self, token: str) -> None:
        try:
            await self.redis.release_lock(self.key, token)
        except RedisError as e:
            logger.warning("Failed to release mirror sync lock", error=str(e))


SyncRunner = Callable[[], Awaitable[Any]]

HEARTBEAT_JOB_ID = "mirror-heartbeat"


class MirrorHeartbeat:
    """
    Runs ``sync`` every ``interval_seconds`` until stopped.

    Failures are logged and retried on the next tick only.
    """

    def __init__(
        self,
        sync: SyncRunner,
        lock: MirrorSyncLock,
        interval_seconds: float,
        misfire_grace_seconds: int = 60,
    ):
        self.sync = sync
        self.lock = lock
        self.interval_seconds = interval_seconds
        self.misfire_grace_seconds = misfire_grace_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> None:
        """Schedule the heartbeat job. Must be called from a running event loop."""
        if self.running:
            return
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=HEARTBEAT_JOB_ID,
            name="Mirror reconciliation heartbeat",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.misfire_grace_seconds,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Mirror heartbeat started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self.scheduler is None:
            return
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("Mirror heartbeat stopped")

    async def tick(self) -> bool:
        """Run one pass unless a sync is already in flight. True if it ran."""
        async with self.lock.hold(wait=False) as acquired:
            if not acquired:
                logger.info("Mirror heartbeat skipped, sync already running")
                return False
            try:
                with log_performance(logger, "mirror_heartbeat"):
                    await self.sync()
            except MirrorSyncFailure as e:
                logger.warning("Mirror heartbeat sync failed", error=e.message)
            except Exception as e:
                logger.error(
                    "Mirror heartbeat error",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            return True
