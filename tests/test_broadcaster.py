"""Tests for in-process and Redis-backed progress broadcasting."""

from __future__ import annotations

import asyncio
import json

import pytest
from fakeredis import aioredis as fakeredis_aioredis

from oneclicktag.events.broadcaster import (
    CHANNEL_PREFIX,
    ProgressBroadcaster,
    RedisProgressBroadcaster,
    broadcast_batch_progress,
    get_broadcaster,
    init_redis_broadcaster,
    reset_broadcaster,
)
from oneclicktag.events.types import BatchEventType, BatchProgressEvent


def _event(batch_id: str = "batch-1", **data) -> BatchProgressEvent:
    return BatchProgressEvent(
        batch_id=batch_id,
        type=BatchEventType.JOB_COMPLETED,
        data={"completed": 1, "failed": 0, "total": 2, **data},
    )


@pytest.fixture
async def redis():
    r = fakeredis_aioredis.FakeRedis(decode_responses=True)
    yield r
    await r.aclose()


class TestProgressBroadcaster:
    @pytest.mark.asyncio
    async def test_delivers_to_batch_subscribers_only(self):
        broadcaster = ProgressBroadcaster()
        mine, other = [], []

        async def on_mine(event):
            mine.append(event)

        async def on_other(event):
            other.append(event)

        broadcaster.subscribe("batch-1", on_mine)
        broadcaster.subscribe("batch-2", on_other)
        await broadcaster.publish(_event("batch-1"))

        assert len(mine) == 1
        assert other == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self):
        broadcaster = ProgressBroadcaster()
        received = []

        async def broken(event):
            raise ValueError("boom")

        async def ok(event):
            received.append(event)

        broadcaster.subscribe("batch-1", broken)
        broadcaster.subscribe("batch-1", ok)
        await broadcaster.publish(_event())

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        broadcaster = ProgressBroadcaster()
        received = []

        async def handler(event):
            received.append(event)

        broadcaster.subscribe("batch-1", handler)
        broadcaster.unsubscribe("batch-1", handler)
        assert "batch-1" not in broadcaster._handlers

        await broadcaster.publish(_event())
        assert received == []

    @pytest.mark.asyncio
    async def test_recent_events_are_bounded(self):
        broadcaster = ProgressBroadcaster(max_recent=3)
        for i in range(5):
            await broadcaster.publish(_event(step=i))

        recent = broadcaster.get_recent_events("batch-1")
        assert [e.data["step"] for e in recent] == [2, 3, 4]
        assert len(broadcaster.get_recent_events("batch-1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_history_dropped_after_batch_completed(self):
        broadcaster = ProgressBroadcaster()
        received = []

        async def handler(event):
            received.append(event)

        broadcaster.subscribe("batch-1", handler)
        await broadcaster.publish(_event())
        await broadcaster.publish(
            BatchProgressEvent(
                batch_id="batch-1",
                type=BatchEventType.BATCH_COMPLETED,
                data={"completed": 2, "failed": 0, "total": 2},
            )
        )

        assert [e.type for e in received] == [
            BatchEventType.JOB_COMPLETED,
            BatchEventType.BATCH_COMPLETED,
        ]
        assert broadcaster.get_recent_events("batch-1") == []
        assert "batch-1" not in broadcaster._recent

    @pytest.mark.asyncio
    async def test_history_kept_for_most_recent_batches_only(self):
        broadcaster = ProgressBroadcaster(max_batches=2)
        await broadcaster.publish(_event("batch-1"))
        await broadcaster.publish(_event("batch-2"))
        await broadcaster.publish(_event("batch-1"))
        await broadcaster.publish(_event("batch-3"))

        assert len(broadcaster._recent) == 2
        assert broadcaster.get_recent_events("batch-2") == []
        assert len(broadcaster.get_recent_events("batch-1")) == 2
        assert len(broadcaster.get_recent_events("batch-3")) == 1

    def test_event_serialisation(self):
        payload = _event().to_dict()
        assert payload["type"] == "job_completed"
        assert payload["data"]["total"] == 2
        restored = BatchProgressEvent.from_dict("batch-1", payload)
        assert restored.type == BatchEventType.JOB_COMPLETED
        assert restored.timestamp.isoformat() == payload["timestamp"]

    def test_singleton(self):
        assert get_broadcaster() is get_broadcaster()
        first = get_broadcaster()
        reset_broadcaster()
        assert get_broadcaster() is not first


class TestBroadcastHelper:
    @pytest.mark.asyncio
    async def test_helper_publishes(self):
        broadcaster = ProgressBroadcaster()
        received = []

        async def handler(event):
            received.append(event)

        broadcaster.subscribe("batch-1", handler)
        await broadcast_batch_progress(
            broadcaster, "batch-1", BatchEventType.BATCH_PAUSED, {"completed": 0}
        )
        assert received[0].type == BatchEventType.BATCH_PAUSED

    @pytest.mark.asyncio
    async def test_helper_uses_global_broadcaster(self):
        received = []

        async def handler(event):
            received.append(event)

        get_broadcaster().subscribe("batch-1", handler)
        await broadcast_batch_progress(None, "batch-1", BatchEventType.BATCH_RESUMED, {})
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_helper_swallows_errors(self):
        class Broken(ProgressBroadcaster):
            async def publish(self, event):
                raise ConnectionError("gone")

        await broadcast_batch_progress(Broken(), "batch-1", BatchEventType.JOB_FAILED, {})


class TestRedisProgressBroadcaster:
    @pytest.mark.asyncio
    async def test_publish_fires_local_handler(self, redis):
        broadcaster = RedisProgressBroadcaster(redis)
        received = []

        async def handler(event):
            received.append(event)

        broadcaster.subscribe("batch-1", handler)
        await broadcaster.publish(_event())
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_publish_sends_to_batch_channel(self, redis):
        broadcaster = RedisProgressBroadcaster(redis)
        received = []

        async def _listen():
            pubsub = redis.pubsub()
            await pubsub.subscribe(f"{CHANNEL_PREFIX}batch-1")
            async for msg in pubsub.listen():
                if msg["type"] == "message":
                    received.append(json.loads(msg["data"]))
                    break
            await pubsub.unsubscribe()
            await pubsub.aclose()

        listener = asyncio.create_task(_listen())
        await asyncio.sleep(0.05)

        await broadcaster.publish(_event())
        await asyncio.wait_for(listener, timeout=2.0)

        assert received[0]["type"] == "job_completed"
        assert received[0]["data"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_remote_events_reach_local_handlers(self, redis):
        receiver = RedisProgressBroadcaster(redis)
        sender = RedisProgressBroadcaster(redis)
        received = []

        async def handler(event):
            received.append(event)

        receiver.subscribe("batch-1", handler)
        await receiver.start()
        await asyncio.sleep(0.05)

        await sender.publish(_event())
        for _ in range(40):
            if received:
                break
            await asyncio.sleep(0.05)
        await receiver.stop()

        assert len(received) == 1
        assert received[0].batch_id == "batch-1"
        assert received[0].data["total"] == 2

    @pytest.mark.asyncio
    async def test_own_events_are_not_delivered_twice(self, redis):
        broadcaster = RedisProgressBroadcaster(redis)
        received = []

        async def handler(event):
            received.append(event)

        broadcaster.subscribe("batch-1", handler)
        await broadcaster.start()
        await asyncio.sleep(0.05)

        await broadcaster.publish(_event())
        await asyncio.sleep(0.3)
        await broadcaster.stop()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_own_completion_is_not_delivered_twice(self, redis):
        broadcaster = RedisProgressBroadcaster(redis)
        received = []

        async def handler(event):
            received.append(event)

        broadcaster.subscribe("batch-1", handler)
        await broadcaster.start()
        await asyncio.sleep(0.05)

        await broadcaster.publish(
            BatchProgressEvent(
                batch_id="batch-1",
                type=BatchEventType.BATCH_COMPLETED,
                data={"completed": 1, "failed": 0, "total": 1},
            )
        )
        await asyncio.sleep(0.3)
        await broadcaster.stop()

        assert len(received) == 1
        assert broadcaster.get_recent_events("batch-1") == []
        assert len(broadcaster._pending_echoes) == 0

    @pytest.mark.asyncio
    async def test_redis_failure_still_delivers_locally(self):
        class DeadRedis:
            async def publish(self, channel, message):
                raise ConnectionError("redis down")

        broadcaster = RedisProgressBroadcaster(DeadRedis())
        received = []

        async def handler(event):
            received.append(event)

        broadcaster.subscribe("batch-1", handler)
        await broadcaster.publish(_event())
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_init_installs_global(self, redis):
        broadcaster = init_redis_broadcaster(redis)
        assert get_broadcaster() is broadcaster
