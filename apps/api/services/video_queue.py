"""Durable video refresh queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from services.video_generation import VideoOrchestrator, build_video_orchestrator

logger = logging.getLogger(__name__)

VIDEO_QUEUE_NAME = "video_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_video_queue() -> Queue:
    return Queue(
        name=VIDEO_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def refresh_job_id(video_uuid: str) -> str:
    return f"video-refresh-{video_uuid}"


def enqueue_video_refresh_job(video_uuid: str, queue: Optional[Queue] = None) -> Job:
    """Enqueue a status refresh with retry/timeouts for durability."""
    queue = queue or get_video_queue()
    return queue.enqueue(
        "services.video_queue.process_video_refresh_job",
        video_uuid,
        job_id=refresh_job_id(video_uuid),
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=1800,
        result_ttl=3600,
        failure_ttl=86400,
    )


async def process_video_refresh_job_async(
    video_uuid: str,
    orchestrator: Optional[VideoOrchestrator] = None,
) -> str:
    orchestrator = orchestrator or build_video_orchestrator()
    view = await orchestrator.refresh_status(video_uuid)
    logger.info("Refreshed video %s: %s", video_uuid, view.status)
    return view.status


def process_video_refresh_job(video_uuid: str) -> str:
    """RQ worker entrypoint for video refresh jobs."""
    return asyncio.run(process_video_refresh_job_async(video_uuid))


async def run_poll_sweep(
    orchestrator: VideoOrchestrator,
    *,
    use_queue: Optional[bool] = None,
    queue: Optional[Queue] = None,
) -> int:
    """Refresh due jobs in-process, or hand them to the RQ worker."""
    use_queue = settings.VIDEO_POLL_USE_QUEUE if use_queue is None else use_queue
    if not use_queue:
        return await orchestrator.poll_due_videos()

    due: List[str] = await orchestrator.due_video_uuids()
    if not due:
        return 0
    queue = queue or get_video_queue()
    for video_uuid in due:
        enqueue_video_refresh_job(video_uuid, queue=queue)
    return len(due)


async def recover_stalled_pending_videos(
    orchestrator: VideoOrchestrator,
    max_age_minutes: Optional[int] = None,
) -> int:
    """Fail jobs stuck in PENDING after a crash between freeze and task creation."""
    return await orchestrator.recover_stalled_pending(max_age_minutes)
