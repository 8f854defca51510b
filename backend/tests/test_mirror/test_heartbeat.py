"""
Test suite for the mirror sync lock and heartbeat.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from cylinderhub.core.exceptions import MirrorSyncFailure
from cylinderhub.services.mirror.heartbeat import (
    HEARTBEAT_JOB_ID,
    MirrorHeartbeat,
    MirrorSyncLock,
)


def redis_stub(set_result=True) -> MagicMock:
    redis = MagicMock()
    redis.is_connected = True
    redis.set = AsyncMock(return_value=set_result)
    redis.release_lock = AsyncMock(return_value=True)
    return redis


class TestMirrorSyncLock:
    async def test_hold_without_redis(self):
        lock = MirrorSyncLock()

        async with lock.hold() as acquired:
            assert acquired is True
            assert lock.locked

        assert not lock.locked

    async def test_no_wait_while_held_yields_false(self):
        lock = MirrorSyncLock()

        async with lock.hold():
            async with lock.hold(wait=False) as acquired:
                assert acquired is False

    async def test_waiting_callers_are_serialized(self):
        lock = MirrorSyncLock()
        order = []

        async def run(name: str):
            async with lock.hold():
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(run("a"), run("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_redis_key_set_and_released(self):
        redis = redis_stub()
        lock = MirrorSyncLock(redis=redis, ttl_seconds=30)

        async with lock.hold() as acquired:
            assert acquired is True

        redis.set.assert_awaited_once()
        _, kwargs = redis.set.call_args
        assert kwargs == {"ex": 30, "nx": True}
        token = redis.set.call_args.args[1]
        redis.release_lock.assert_awaited_once_with(lock.key, token)

    async def test_key_held_by_other_process(self):
        redis = redis_stub(set_result=False)
        lock = MirrorSyncLock(redis=redis)

        async with lock.hold() as acquired:
            assert acquired is False

        redis.release_lock.assert_not_awaited()

    async def test_redis_error_falls_back_to_process_lock(self):
        redis = redis_stub()
        redis.set.side_effect = RedisConnectionError("down")
        lock = MirrorSyncLock(redis=redis)

        async with lock.hold() as acquired:
            assert acquired is True

        redis.release_lock.assert_not_awaited()

    async def test_disconnected_redis_is_ignored(self):
        redis = redis_stub()
        redis.is_connected = False

        async with MirrorSyncLock(redis=redis).hold() as acquired:
            assert acquired is True

        redis.set.assert_not_awaited()


class TestMirrorHeartbeat:
    async def test_tick_runs_sync(self):
        sync = AsyncMock()
        heartbeat = MirrorHeartbeat(sync, MirrorSyncLock(), interval_seconds=60)

        assert await heartbeat.tick() is True
        sync.assert_awaited_once()

    async def test_tick_skipped_while_sync_in_flight(self):
        sync = AsyncMock()
        lock = MirrorSyncLock()
        heartbeat = MirrorHeartbeat(sync, lock, interval_seconds=60)

        async with lock.hold():
            assert await heartbeat.tick() is False

        sync.assert_not_awaited()

    async def test_sync_failures_do_not_escape(self):
        for error in (MirrorSyncFailure("sheet down"), RuntimeError("boom")):
            heartbeat = MirrorHeartbeat(
                AsyncMock(side_effect=error), MirrorSyncLock(), interval_seconds=60
            )

            assert await heartbeat.tick() is True

    async def test_start_and_stop(self):
        ran = asyncio.Event()

        async def sync():
            ran.set()

        heartbeat = MirrorHeartbeat(sync, MirrorSyncLock(), interval_seconds=0.05)
        heartbeat.start()
        assert heartbeat.running

        await asyncio.wait_for(ran.wait(), timeout=5)
        await heartbeat.stop()

        assert not heartbeat.running

    async def test_job_never_overlaps_and_coalesces(self):
        heartbeat = MirrorHeartbeat(AsyncMock(), MirrorSyncLock(), interval_seconds=60)
        heartbeat.start()
        try:
            job = heartbeat.scheduler.get_job(HEARTBEAT_JOB_ID)

            assert job.max_instances == 1
            assert job.coalesce is True
            assert job.trigger.interval.total_seconds() == 60
        finally:
            await heartbeat.stop()

    async def test_start_twice_keeps_one_job(self):
        heartbeat = MirrorHeartbeat(AsyncMock(), MirrorSyncLock(), interval_seconds=60)
        heartbeat.start()
        scheduler = heartbeat.scheduler
        try:
            heartbeat.start()

            assert heartbeat.scheduler is scheduler
            assert len(scheduler.get_jobs()) == 1
        finally:
            await heartbeat.stop()

    async def test_stop_before_start_is_a_no_op(self):
        heartbeat = MirrorHeartbeat(AsyncMock(), MirrorSyncLock(), interval_seconds=60)

        await heartbeat.stop()

        assert not heartbeat.running
