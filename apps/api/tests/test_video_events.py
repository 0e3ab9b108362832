import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from fastapi import HTTPException

from config import Settings
from models.video_job import VideoStatus
from routers.auth_scope import get_stream_auth_context
from services import video_events
from services.session_token import create_session_token
from services.video_events import (
    RedisVideoEventBus,
    VideoEvent,
    _RedisSubscription,
    build_video_event_bus,
    video_event_stream,
)
from services.video_generation import GenerateVideoRequest


USER_ID = "events-user"


async def _generation(orchestrator, ledger):
    await ledger.recharge(USER_ID, 10, "order-events")
    return await orchestrator.generate(
        GenerateVideoRequest(user_id=USER_ID, prompt="northern lights over a fjord", model="sora-2", duration=10)
    )


def _parse_frame(frame):
    name_line, data_line, _, _ = frame.split("\n")
    return name_line[len("event: "):], json.loads(data_line[len("data: "):])


@pytest.mark.asyncio
async def test_completion_publishes_one_event(orchestrator, ledger, vendor, event_bus):
    result = await _generation(orchestrator, ledger)
    vendor.complete()

    async with event_bus.subscribe(USER_ID) as subscription:
        await orchestrator.refresh_status(result.video_uuid)
        await orchestrator.refresh_status(result.video_uuid)

        event = await subscription.next_event(0.1)
        assert event == VideoEvent(
            user_id=USER_ID,
            video_uuid=result.video_uuid,
            status=VideoStatus.COMPLETED.value,
            video_url=f"https://media.test/videos/{result.video_uuid}/output.mp4",
        )
        assert await subscription.next_event(0.01) is None


@pytest.mark.asyncio
async def test_failure_publishes_event_with_error(orchestrator, ledger, vendor, event_bus):
    result = await _generation(orchestrator, ledger)
    vendor.task_responses["task-1"] = (
        200,
        {"id": "task-1", "status": "failed", "error": {"code": "content_policy", "message": "Prompt rejected"}},
    )

    async with event_bus.subscribe(USER_ID) as subscription, event_bus.subscribe("someone-else") as other:
        await orchestrator.refresh_status(result.video_uuid)

        event = await subscription.next_event(0.1)
        assert event.status == VideoStatus.FAILED.value
        assert event.error == "Prompt rejected"
        assert event.to_dict() == {
            "userId": USER_ID,
            "videoUuid": result.video_uuid,
            "status": "FAILED",
            "error": "Prompt rejected",
        }
        assert await other.next_event(0.01) is None


@pytest.mark.asyncio
async def test_unreachable_event_bus_does_not_block_completion(orchestrator, ledger, vendor, event_bus, monkeypatch):
    result = await _generation(orchestrator, ledger)
    vendor.complete()

    async def broken_publish(event):
        raise RedisConnectionError("redis unavailable")

    monkeypatch.setattr(event_bus, "publish", broken_publish)

    view = await orchestrator.refresh_status(result.video_uuid)

    assert view.status == VideoStatus.COMPLETED.value
    assert (await ledger.get_balance(USER_ID)).used == 2


@pytest.mark.asyncio
async def test_event_stream_sends_ready_events_and_heartbeats(event_bus):
    stream = video_event_stream(event_bus, USER_ID, heartbeat_seconds=0.01)

    assert _parse_frame(await stream.__anext__()) == ("ready", {"ok": True})
    assert event_bus.subscriber_count(USER_ID) == 1

    await event_bus.publish(VideoEvent(user_id=USER_ID, video_uuid="vid_1", status="COMPLETED", video_url="https://m/1"))
    assert _parse_frame(await stream.__anext__()) == (
        "video",
        {"userId": USER_ID, "videoUuid": "vid_1", "status": "COMPLETED", "videoUrl": "https://m/1"},
    )

    assert _parse_frame(await stream.__anext__()) == ("ping", {})

    await stream.aclose()
    assert event_bus.subscriber_count(USER_ID) == 0


@pytest.mark.asyncio
async def test_stream_auth_accepts_query_token():
    token = create_session_token(USER_ID)["token"]

    auth = await get_stream_auth_context(credentials=None, token=token)
    assert auth.user_id == USER_ID

    with pytest.raises(HTTPException) as exc_info:
        await get_stream_auth_context(credentials=None, token=None)
    assert exc_info.value.status_code == 401

    with pytest.raises(HTTPException):
        await get_stream_auth_context(credentials=None, token="not-a-token")


@pytest.mark.asyncio
async def test_events_route_requires_session(api_client):
    response = await api_client.get("/video/events")
    assert response.status_code == 401

    response = await api_client.get("/video/events", params={"token": "forged"})
    assert response.status_code == 401


class _FakeRedis:
    def __init__(self):
        self.published = []
        self.closed = False

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        self.closed = True


class _FakePubSub:
    def __init__(self, messages):
        self.messages = list(messages)

    async def get_message(self, ignore_subscribe_messages=False, timeout=None):
        return self.messages.pop(0) if self.messages else None


@pytest.mark.asyncio
async def test_redis_bus_publishes_on_user_channel(monkeypatch):
    client = _FakeRedis()
    monkeypatch.setattr(video_events.redis, "from_url", lambda url, decode_responses=True: client)
    bus = RedisVideoEventBus("redis://events.test:6379")

    await bus.publish(VideoEvent(user_id=USER_ID, video_uuid="vid_2", status="FAILED", error="boom"))

    channel, message = client.published[0]
    assert channel == f"video-events:{USER_ID}"
    assert json.loads(message) == {"userId": USER_ID, "videoUuid": "vid_2", "status": "FAILED", "error": "boom"}
    assert client.closed


@pytest.mark.asyncio
async def test_redis_subscription_decodes_and_skips_malformed_messages():
    event = VideoEvent(user_id=USER_ID, video_uuid="vid_3", status="COMPLETED")
    subscription = _RedisSubscription(
        _FakePubSub(
            [
                {"type": "message", "channel": "video-events:x", "data": "{not json"},
                {"type": "message", "channel": "video-events:x", "data": json.dumps(event.to_dict())},
            ]
        )
    )

    assert await subscription.next_event(0.01) is None
    assert await subscription.next_event(0.01) == event
    assert await subscription.next_event(0.01) is None


def test_event_bus_backend_follows_settings():
    assert isinstance(build_video_event_bus(Settings(VIDEO_EVENTS_BACKEND="redis")), RedisVideoEventBus)
    assert not isinstance(build_video_event_bus(Settings(VIDEO_EVENTS_BACKEND="local")), RedisVideoEventBus)
