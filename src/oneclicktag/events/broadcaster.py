"""Batch progress broadcasting to live viewers."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict, deque
from collections.abc import Callable, Coroutine
from typing import Any

from oneclicktag.events.types import BatchEventType, BatchProgressEvent

logger = logging.getLogger("oneclicktag.events")

# Subscriber callback type
ProgressHandler = Callable[[BatchProgressEvent], Coroutine[Any, Any, None]]


class ProgressBroadcaster:
    """Routes batch progress events to subscribers of that batch.

    Delivery is best effort: a failing handler is logged and the remaining
    handlers still run. The last ``max_recent`` events of each batch are
    kept for viewers that connect mid-run. A batch's history is dropped
    once its ``batch_completed`` event has been delivered, and at most
    ``max_batches`` histories are kept, least recently published first out.
    """

    def __init__(self, max_recent: int = 100, max_batches: int = 1000) -> None:
        self._handlers: dict[str, list[ProgressHandler]] = {}
        self._recent: OrderedDict[str, deque[BatchProgressEvent]] = OrderedDict()
        self._max_recent = max_recent
        self._max_batches = max_batches

    def subscribe(self, batch_id: str, handler: ProgressHandler) -> None:
        """Register an async callback for events of *batch_id*."""
        self._handlers.setdefault(batch_id, []).append(handler)

    def unsubscribe(self, batch_id: str, handler: ProgressHandler) -> None:
        handlers = self._handlers.get(batch_id, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(batch_id, None)

    async def publish(self, event: BatchProgressEvent) -> None:
        """Deliver an event to every subscriber of its batch."""
        self._remember(event)

        for handler in list(self._handlers.get(event.batch_id, [])):
            try:
                await handler(event)
            except Exception:
                logger.exception("Progress handler error for batch %s", event.batch_id)

        if event.type == BatchEventType.BATCH_COMPLETED:
            self._recent.pop(event.batch_id, None)

    def _remember(self, event: BatchProgressEvent) -> None:
        recent = self._recent.get(event.batch_id)
        if recent is None:
            recent = self._recent[event.batch_id] = deque(maxlen=self._max_recent)
        else:
            self._recent.move_to_end(event.batch_id)
        recent.append(event)
        while len(self._recent) > self._max_batches:
            self._recent.popitem(last=False)

    def get_recent_events(self, batch_id: str, limit: int = 50) -> list[BatchProgressEvent]:
        return list(self._recent.get(batch_id, ()))[-limit:]

    def clear(self) -> None:
        """Clear all subscribers and recent events."""
        self._handlers.clear()
        self._recent.clear()


# Global singleton
_broadcaster: ProgressBroadcaster | None = None


def get_broadcaster() -> ProgressBroadcaster:
    """Get the global broadcaster singleton."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = ProgressBroadcaster()
    return _broadcaster


def reset_broadcaster() -> None:
    """Reset the broadcaster (for testing)."""
    global _broadcaster
    if _broadcaster:
        _broadcaster.clear()
    _broadcaster = None


# ---------------------------------------------------------------------------
# Redis-backed broadcaster for cross-process delivery
# ---------------------------------------------------------------------------

CHANNEL_PREFIX = "oneclicktag:batch:"


class RedisProgressBroadcaster(ProgressBroadcaster):
    """Broadcaster that replicates events across processes via Redis.

    Local handlers are called immediately, then the event is published to
    ``oneclicktag:batch:<batch_id>`` so viewers connected to other API
    processes receive it too.
    """

    def __init__(self, redis: Any, max_recent: int = 100, max_batches: int = 1000) -> None:
        super().__init__(max_recent=max_recent, max_batches=max_batches)
        self._redis = redis
        # Fingerprints of events published here whose Redis echo is still due.
        self._pending_echoes: deque[tuple[str, str, str, str]] = deque(maxlen=1000)
        self._sub_task: asyncio.Task | None = None  # type: ignore[type-arg]

    async def start(self) -> None:
        self._sub_task = asyncio.create_task(self._subscribe_loop())
        logger.info("RedisProgressBroadcaster started")

    async def stop(self) -> None:
        if self._sub_task:
            self._sub_task.cancel()
            try:
                await self._sub_task
            except asyncio.CancelledError:
                pass
            self._sub_task = None
        logger.info("RedisProgressBroadcaster stopped")

    async def publish(self, event: BatchProgressEvent) -> None:
        """Publish locally, then to Redis."""
        fingerprint = _fingerprint(event)
        self._pending_echoes.append(fingerprint)
        await super().publish(event)
        try:
            await self._redis.publish(
                f"{CHANNEL_PREFIX}{event.batch_id}", json.dumps(event.to_dict())
            )
        except Exception:
            self._discard_echo(fingerprint)
            logger.warning("Failed to publish progress for batch %s to Redis", event.batch_id, exc_info=True)

    async def _subscribe_loop(self) -> None:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
            async for message in pubsub.listen():
                if message["type"] != "pmessage":
                    continue
                try:
                    channel = message["channel"]
                    if isinstance(channel, bytes):
                        channel = channel.decode()
                    batch_id = channel[len(CHANNEL_PREFIX) :]
                    event = BatchProgressEvent.from_dict(batch_id, json.loads(message["data"]))
                except Exception:
                    logger.debug("Error deserialising Redis progress event", exc_info=True)
                    continue
                # Own publishes come back through the pattern subscription;
                # skip events that were already delivered locally.
                if self._discard_echo(_fingerprint(event)):
                    continue
                await super().publish(event)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()

    def _discard_echo(self, fingerprint: tuple[str, str, str, str]) -> bool:
        try:
            self._pending_echoes.remove(fingerprint)
        except ValueError:
            return False
        return True


def _fingerprint(event: BatchProgressEvent) -> tuple[str, str, str, str]:
    return (
        event.batch_id,
        str(event.type),
        event.timestamp.isoformat(),
        json.dumps(event.data, sort_keys=True, default=str),
    )


def init_redis_broadcaster(redis: Any) -> RedisProgressBroadcaster:
    """Create and install a RedisProgressBroadcaster as the global broadcaster."""
    global _broadcaster
    broadcaster = RedisProgressBroadcaster(redis)
    _broadcaster = broadcaster
    return broadcaster


async def broadcast_batch_progress(
    broadcaster: ProgressBroadcaster | None,
    batch_id: str,
    event_type: BatchEventType,
    data: dict[str, Any],
) -> None:
    """Publish a progress event without ever failing the caller.

    Called after the mutating transaction has committed.
    """
    try:
        event = BatchProgressEvent(batch_id=batch_id, type=event_type, data=data)
        await (broadcaster or get_broadcaster()).publish(event)
    except Exception:
        logger.warning("Failed to broadcast %s for batch %s", event_type, batch_id, exc_info=True)
