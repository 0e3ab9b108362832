"""Terminal video status events, fanned out to each user's open streams.

The orchestrator publishes one event when a job reaches COMPLETED or FAILED.
``RedisVideoEventBus`` relays them across API processes and RQ workers
through one pub/sub channel per user. ``LocalVideoEventBus`` keeps them
in-process for single-process deployments and tests.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Set

import redis.asyncio as redis

from config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "video-events:"


def channel_for(user_id: str) -> str:
    return f"{CHANNEL_PREFIX}{user_id}"


@dataclass(frozen=True)
class VideoEvent:
    user_id: str
    video_uuid: str
    status: str
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "userId": self.user_id,
            "videoUuid": self.video_uuid,
            "status": self.status,
        }
        if self.video_url:
            payload["videoUrl"] = self.video_url
        if self.thumbnail_url:
            payload["thumbnailUrl"] = self.thumbnail_url
        if self.error:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VideoEvent":
        return cls(
            user_id=str(payload["userId"]),
            video_uuid=str(payload["videoUuid"]),
            status=str(payload["status"]),
            video_url=payload.get("videoUrl"),
            thumbnail_url=payload.get("thumbnailUrl"),
            error=payload.get("error"),
        )


class VideoEventSubscription(ABC):
    @abstractmethod
    async def next_event(self, timeout: float) -> Optional[VideoEvent]:
        """Wait up to ``timeout`` seconds; None when nothing arrived."""
        raise NotImplementedError


class VideoEventBus(ABC):
    @abstractmethod
    async def publish(self, event: VideoEvent) -> None:
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, user_id: str):
        """Async context manager yielding a ``VideoEventSubscription``."""
        raise NotImplementedError


class _QueueSubscription(VideoEventSubscription):
    def __init__(self, queue: "asyncio.Queue[VideoEvent]") -> None:
        self.queue = queue

    async def next_event(self, timeout: float) -> Optional[VideoEvent]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class LocalVideoEventBus(VideoEventBus):
    def __init__(self) -> None:
        self._queues: Dict[str, Set["asyncio.Queue[VideoEvent]"]] = {}

    def subscriber_count(self, user_id: str) -> int:
        return len(self._queues.get(user_id, ()))

    async def publish(self, event: VideoEvent) -> None:
        for queue in list(self._queues.get(event.user_id, ())):
            queue.put_nowait(event)

    @asynccontextmanager
    async def subscribe(self, user_id: str) -> AsyncIterator[VideoEventSubscription]:
        queue: "asyncio.Queue[VideoEvent]" = asyncio.Queue()
        self._queues.setdefault(user_id, set()).add(queue)
        try:
            yield _QueueSubscription(queue)
        finally:
            queues = self._queues.get(user_id)
            if queues is not None:
                queues.discard(queue)
                if not queues:
                    self._queues.pop(user_id, None)


class _RedisSubscription(VideoEventSubscription):
    def __init__(self, pubsub: Any) -> None:
        self.pubsub = pubsub

    async def next_event(self, timeout: float) -> Optional[VideoEvent]:
        message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if not message or message.get("type") != "message":
            return None
        try:
            return VideoEvent.from_dict(json.loads(message["data"]))
        except (ValueError, KeyError, TypeError):
            logger.warning("Dropping malformed video event on %s", message.get("channel"))
            return None


class RedisVideoEventBus(VideoEventBus):
    def __init__(self, redis_url: str) -> None:
        self.redis_url = redis_url

    async def publish(self, event: VideoEvent) -> None:
        client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await client.publish(channel_for(event.user_id), json.dumps(event.to_dict()))
        finally:
            await client.aclose()

    @asynccontextmanager
    async def subscribe(self, user_id: str) -> AsyncIterator[VideoEventSubscription]:
        client = redis.from_url(self.redis_url, decode_responses=True)
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(channel_for(user_id))
            yield _RedisSubscription(pubsub)
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()
            await client.aclose()


def build_video_event_bus(config: Optional[Settings] = None) -> VideoEventBus:
    config = config or default_settings
    backend = (config.VIDEO_EVENTS_BACKEND or "redis").strip().lower()
    if backend == "local":
        return LocalVideoEventBus()
    return RedisVideoEventBus(config.REDIS_URL)


def format_sse(event_name: str, payload: Dict[str, Any]) -> str:
    return f"event: {event_name}\ndata: {json.dumps(payload)}\n\n"


async def video_event_stream(
    bus: VideoEventBus,
    user_id: str,
    *,
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    """Server-sent event frames for one user: ``ready``, then ``video`` and ``ping``."""
    async with bus.subscribe(user_id) as subscription:
        yield format_sse("ready", {"ok": True})
        while True:
            event = await subscription.next_event(heartbeat_seconds)
            if event is None:
                yield format_sse("ping", {})
                continue
            if event.user_id != user_id:
                continue
            yield format_sse("video", event.to_dict())
