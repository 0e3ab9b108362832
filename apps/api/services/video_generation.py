"""Video generation orchestrator.

Jobs move PENDING -> GENERATING -> UPLOADING -> COMPLETED | FAILED. Polling
and provider callbacks may race on the same job; every status change goes
through a compare-and-set update so each terminal transition, and the
ledger settle or release attached to it, happens exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import uuid

from redis.exceptions import RedisError
from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import Settings, settings as default_settings
from database import async_session_maker
from models.video_job import (
    ACTIVE_STATUSES,
    PARAMETERS_SCHEMA_VERSION,
    TERMINAL_STATUSES,
    VideoJob,
    VideoStatus,
)
from services import pricing
from services.callback_signature import sign_callback_url
from services.credits import CreditLedger
from services.errors import (
    CallbackTaskMismatchError,
    ProviderGenericError,
    ServiceError,
    StorageMigrationError,
    UnsupportedModelError,
    VideoNotFoundError,
)
from services.providers import (
    ProviderRegistry,
    VideoGenerationParams,
    VideoTaskResponse,
    build_provider_registry,
)
from services.providers.model_mapping import is_model_supported
from services.storage import StorageMigrator, video_object_key
from services.video_events import LocalVideoEventBus, VideoEvent, VideoEventBus, build_video_event_bus

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Generation failed"
STALLED_MESSAGE = "Video generation did not start. Credits have been returned."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_video_uuid() -> str:
    return f"vid_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class GenerateVideoRequest:
    user_id: str
    prompt: str
    model: str
    duration: Optional[int] = None
    aspect_ratio: Optional[str] = None
    quality: Optional[str] = None
    image_url: Optional[str] = None
    image_urls: Tuple[str, ...] = ()
    mode: Optional[str] = None
    output_number: int = 1
    generate_audio: Optional[bool] = None

    @property
    def all_image_urls(self) -> Tuple[str, ...]:
        urls = tuple(url for url in self.image_urls if url)
        if urls:
            return urls
        return (self.image_url,) if self.image_url else ()


@dataclass(frozen=True)
class GenerationResult:
    video_uuid: str
    task_id: str
    provider: str
    status: str
    credits_used: int
    estimated_time: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "videoUuid": self.video_uuid,
            "taskId": self.task_id,
            "provider": self.provider,
            "status": self.status,
            "estimatedTime": self.estimated_time,
            "creditsUsed": self.credits_used,
        }


@dataclass(frozen=True)
class VideoStatusView:
    status: str
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: VideoJob) -> "VideoStatusView":
        completed = job.status == VideoStatus.COMPLETED.value
        failed = job.status == VideoStatus.FAILED.value
        return cls(
            status=job.status,
            video_url=job.video_url if completed else None,
            thumbnail_url=job.thumbnail_url if completed else None,
            error=job.error_message if failed else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status}
        if self.video_url:
            payload["videoUrl"] = self.video_url
        if self.thumbnail_url:
            payload["thumbnailUrl"] = self.thumbnail_url
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class VideoPage:
    videos: List[VideoJob] = field(default_factory=list)
    next_cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


class VideoOrchestrator:
    def __init__(
        self,
        *,
        ledger: CreditLedger,
        providers: ProviderRegistry,
        storage: StorageMigrator,
        session_maker: Optional[async_sessionmaker] = None,
        config: Optional[Settings] = None,
        events: Optional[VideoEventBus] = None,
    ) -> None:
        self.ledger = ledger
        self.providers = providers
        self.storage = storage
        self.events = events or LocalVideoEventBus()
        self._session_maker = session_maker or async_session_maker
        self.config = config or default_settings

    # Reads

    async def _load(self, video_uuid: str, user_id: Optional[str] = None) -> VideoJob:
        filters = [VideoJob.uuid == video_uuid]
        if user_id is not None:
            filters.extend([VideoJob.user_id == user_id, VideoJob.is_deleted.is_(False)])
        async with self._session_maker() as db:
            result = await db.execute(select(VideoJob).where(*filters))
            job = result.scalar_one_or_none()
        if job is None:
            raise VideoNotFoundError(f"Video not found: {video_uuid}")
        return job

    async def _view(self, video_uuid: str) -> VideoStatusView:
        return VideoStatusView.from_job(await self._load(video_uuid))

    async def get_video(self, video_uuid: str, user_id: str) -> VideoJob:
        return await self._load(video_uuid, user_id)

    async def list_videos(
        self,
        user_id: str,
        *,
        limit: int = 20,
        cursor: Optional[str] = None,
        status: Optional[str] = None,
    ) -> VideoPage:
        page_size = max(1, min(int(limit), 100))
        filters = [VideoJob.user_id == user_id, VideoJob.is_deleted.is_(False)]
        if status:
            filters.append(VideoJob.status == status.upper())
        async with self._session_maker() as db:
            if cursor:
                anchor = (
                    await db.execute(
                        select(VideoJob.created_at, VideoJob.id).where(
                            VideoJob.uuid == cursor,
                            VideoJob.user_id == user_id,
                        )
                    )
                ).first()
                if anchor is not None:
                    created_at, anchor_id = anchor
                    filters.append(
                        or_(
                            VideoJob.created_at < created_at,
                            and_(VideoJob.created_at == created_at, VideoJob.id < anchor_id),
                        )
                    )
            rows = (
                await db.execute(
                    select(VideoJob)
                    .where(*filters)
                    .order_by(VideoJob.created_at.desc(), VideoJob.id.desc())
                    .limit(page_size + 1)
                )
            ).scalars().all()
        videos = list(rows[:page_size])
        next_cursor = videos[-1].uuid if len(rows) > page_size else None
        return VideoPage(videos=videos, next_cursor=next_cursor)

    async def delete_video(self, video_uuid: str, user_id: str) -> None:
        async with self._session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    update(VideoJob)
                    .where(
                        VideoJob.uuid == video_uuid,
                        VideoJob.user_id == user_id,
                        VideoJob.is_deleted.is_(False),
                    )
                    .values(is_deleted=True, updated_at=_utcnow())
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount != 1:
            raise VideoNotFoundError(f"Video not found: {video_uuid}")
        logger.info("Soft-deleted video %s for user %s", video_uuid, user_id)

    # Transitions

    async def _transition_if_not_terminal(
        self,
        db: AsyncSession,
        video_uuid: str,
        allowed_from: Iterable[str],
        values: Dict[str, Any],
        extra: Sequence[Any] = (),
    ) -> bool:
        """Compare-and-set on status. Terminal states are never left."""
        allowed = [status for status in allowed_from if status not in TERMINAL_STATUSES]
        if not allowed:
            return False
        result = await db.execute(
            update(VideoJob)
            .where(VideoJob.uuid == video_uuid, VideoJob.status.in_(allowed), *extra)
            .values(**values, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _publish_event(self, job: VideoJob) -> None:
        event = VideoEvent(
            user_id=job.user_id,
            video_uuid=job.uuid,
            status=job.status,
            video_url=job.video_url,
            thumbnail_url=job.thumbnail_url,
            error=job.error_message,
        )
        try:
            await self.events.publish(event)
        except (RedisError, OSError) as exc:
            # The status is committed; clients still see it by polling.
            logger.warning("Could not publish %s event for %s: %s", job.status, job.uuid, exc)

    async def _fail(self, video_uuid: str, error_code: str, error_message: Optional[str]) -> VideoStatusView:
        message = (error_message or DEFAULT_FAILURE_MESSAGE)[:1000]
        async with self._session_maker() as db:
            async with db.begin():
                changed = await self._transition_if_not_terminal(
                    db,
                    video_uuid,
                    ACTIVE_STATUSES,
                    {
                        "status": VideoStatus.FAILED.value,
                        "error_code": error_code,
                        "error_message": message,
                        "upload_claimed_at": None,
                        "next_poll_at": None,
                    },
                )
                # No hold exists when the freeze itself failed.
                if changed and await self.ledger.hold_status(video_uuid, db=db) is not None:
                    await self.ledger.release(video_uuid, db=db)
        job = await self._load(video_uuid)
        if changed:
            logger.info("Video %s failed (%s): %s", video_uuid, error_code, message)
            await self._publish_event(job)
        return VideoStatusView.from_job(job)

    async def _complete(self, job: VideoJob, result: VideoTaskResponse) -> VideoStatusView:
        video_uuid = job.uuid
        claimed_at = _utcnow()
        lease_cutoff = claimed_at - timedelta(seconds=max(int(self.config.VIDEO_UPLOAD_LEASE_SECONDS), 1))

        async with self._session_maker() as db:
            async with db.begin():
                claimed = await self._transition_if_not_terminal(
                    db,
                    video_uuid,
                    (VideoStatus.GENERATING.value, VideoStatus.UPLOADING.value),
                    {
                        "status": VideoStatus.UPLOADING.value,
                        "original_video_url": result.video_url,
                        "upload_claimed_at": claimed_at,
                    },
                    extra=(
                        or_(
                            VideoJob.status == VideoStatus.GENERATING.value,
                            VideoJob.upload_claimed_at.is_(None),
                            VideoJob.upload_claimed_at < lease_cutoff,
                        ),
                    ),
                )
        if not claimed:
            return await self._view(video_uuid)

        try:
            stored = await self.storage.download_and_upload(
                result.video_url,
                video_object_key(video_uuid),
                content_type="video/mp4",
            )
        except StorageMigrationError as exc:
            logger.error("Storage migration failed for %s: %s", video_uuid, exc)
            async with self._session_maker() as db:
                async with db.begin():
                    # Drop the lease so the next poll or callback can retry.
                    await db.execute(
                        update(VideoJob)
                        .where(
                            VideoJob.uuid == video_uuid,
                            VideoJob.status == VideoStatus.UPLOADING.value,
                            VideoJob.upload_claimed_at == claimed_at,
                        )
                        .values(upload_claimed_at=None, updated_at=_utcnow())
                        .execution_options(synchronize_session=False)
                    )
            return await self._view(video_uuid)

        completed_at = _utcnow()
        created_at = _as_utc(job.created_at) or completed_at
        async with self._session_maker() as db:
            async with db.begin():
                finished = await self._transition_if_not_terminal(
                    db,
                    video_uuid,
                    (VideoStatus.UPLOADING.value,),
                    {
                        "status": VideoStatus.COMPLETED.value,
                        "video_url": stored.url,
                        "thumbnail_url": result.thumbnail_url,
                        "completed_at": completed_at,
                        "generation_seconds": max(int((completed_at - created_at).total_seconds()), 0),
                        "upload_claimed_at": None,
                        "next_poll_at": None,
                    },
                    extra=(VideoJob.upload_claimed_at == claimed_at,),
                )
                if finished:
                    await self.ledger.settle(video_uuid, db=db)
        job = await self._load(video_uuid)
        if finished:
            logger.info("Video %s completed: %s", video_uuid, stored.url)
            await self._publish_event(job)
        return VideoStatusView.from_job(job)

    async def _mark_generating(self, video_uuid: str) -> None:
        async with self._session_maker() as db:
            async with db.begin():
                await self._transition_if_not_terminal(
                    db,
                    video_uuid,
                    (VideoStatus.PENDING.value,),
                    {"status": VideoStatus.GENERATING.value},
                )

    async def _apply_task_result(self, job: VideoJob, result: VideoTaskResponse) -> VideoStatusView:
        if result.is_completed:
            if result.video_url:
                return await self._complete(job, result)
            logger.warning("Provider reported %s completed without a video URL", job.uuid)
        elif result.is_failed:
            error = result.error
            return await self._fail(
                job.uuid,
                error.code if error else "PROVIDER_FAILED",
                error.message if error else None,
            )
        elif result.status == "processing" and job.status == VideoStatus.PENDING.value:
            await self._mark_generating(job.uuid)
        return await self._view(job.uuid)

    # Poll bookkeeping

    def _backoff_seconds(self, failures: int) -> int:
        base = max(int(self.config.VIDEO_POLL_BACKOFF_BASE_SECONDS), 1)
        cap = max(int(self.config.VIDEO_POLL_BACKOFF_MAX_SECONDS), base)
        return min(base * (2 ** max(failures - 1, 0)), cap)

    async def _record_poll_success(self, video_uuid: str) -> None:
        next_poll_at = _utcnow() + timedelta(seconds=max(int(self.config.VIDEO_POLL_INTERVAL_SECONDS), 1))
        async with self._session_maker() as db:
            async with db.begin():
                await self._transition_if_not_terminal(
                    db,
                    video_uuid,
                    ACTIVE_STATUSES,
                    {"poll_failures": 0, "next_poll_at": next_poll_at},
                )

    async def _record_poll_failure(self, job: VideoJob) -> None:
        failures = int(job.poll_failures or 0) + 1
        delay = self._backoff_seconds(failures)
        async with self._session_maker() as db:
            async with db.begin():
                await self._transition_if_not_terminal(
                    db,
                    job.uuid,
                    ACTIVE_STATUSES,
                    {"poll_failures": failures, "next_poll_at": _utcnow() + timedelta(seconds=delay)},
                    extra=(VideoJob.poll_failures == int(job.poll_failures or 0),),
                )
        if failures >= int(self.config.VIDEO_POLL_MAX_FAILURES):
            logger.error(
                "Video %s reached %s consecutive poll failures; polling stopped",
                job.uuid,
                failures,
            )

    # Operations

    async def generate(self, request: GenerateVideoRequest) -> GenerationResult:
        spec = pricing.get_model(request.model)
        duration = pricing.resolve_duration(spec, request.duration)
        image_urls = request.all_image_urls
        pricing.validate_options(
            spec,
            aspect_ratio=request.aspect_ratio,
            quality=request.quality,
            has_image_input=bool(image_urls),
        )
        provider = self.providers.default()
        if not is_model_supported(spec.id, provider.name):
            raise UnsupportedModelError(f"Model {spec.id} is not supported by provider {provider.name}")
        if image_urls and not provider.supports_image_to_video:
            raise UnsupportedModelError(f"Provider {provider.name} does not support image-to-video")

        output_number = max(int(request.output_number or 1), 1)
        credits = pricing.calculate_credits(spec.id, duration, request.quality, output_number)
        video_uuid = new_video_uuid()

        async with self._session_maker() as db:
            async with db.begin():
                db.add(
                    VideoJob(
                        id=str(uuid.uuid4()),
                        uuid=video_uuid,
                        user_id=request.user_id,
                        prompt=request.prompt,
                        model=spec.id,
                        parameters={
                            "version": PARAMETERS_SCHEMA_VERSION,
                            "duration": request.duration,
                            "aspect_ratio": request.aspect_ratio,
                            "quality": request.quality,
                            "output_number": output_number,
                            "mode": request.mode,
                            "image_urls": list(image_urls),
                            "generate_audio": request.generate_audio,
                        },
                        status=VideoStatus.PENDING.value,
                        provider=provider.name,
                        credits_used=credits,
                        duration=duration,
                        aspect_ratio=request.aspect_ratio,
                        start_image_url=image_urls[0] if image_urls else None,
                    )
                )

        try:
            await self.ledger.freeze(request.user_id, credits, video_uuid)
        except Exception as exc:
            await self._fail(video_uuid, getattr(exc, "code", "FreezeFailed"), str(exc))
            raise

        callback_url = None
        if self.config.AI_CALLBACK_BASE_URL:
            base = self.config.AI_CALLBACK_BASE_URL.rstrip("/")
            callback_url = sign_callback_url(f"{base}/{provider.name}", video_uuid)

        params = VideoGenerationParams(
            prompt=request.prompt,
            model=spec.id,
            duration=duration,
            aspect_ratio=request.aspect_ratio,
            quality=request.quality,
            image_urls=image_urls,
            mode=request.mode,
            output_number=output_number,
            generate_audio=request.generate_audio,
            callback_url=callback_url,
        )
        try:
            task = await provider.create_task(params)
            if not task.task_id:
                raise ProviderGenericError(f"{provider.name} returned no task id", provider=provider.name)
        except Exception as exc:
            logger.error("create_task failed for %s via %s: %s", video_uuid, provider.name, exc)
            await self._fail(video_uuid, getattr(exc, "code", "ProviderError"), str(exc))
            raise

        next_poll_at = _utcnow() + timedelta(seconds=max(int(self.config.VIDEO_POLL_INTERVAL_SECONDS), 1))
        async with self._session_maker() as db:
            async with db.begin():
                started = await self._transition_if_not_terminal(
                    db,
                    video_uuid,
                    (VideoStatus.PENDING.value,),
                    {
                        "status": VideoStatus.GENERATING.value,
                        "external_task_id": task.task_id,
                        "next_poll_at": next_poll_at,
                    },
                )
        if not started:
            logger.warning("Video %s left PENDING before the task id was recorded", video_uuid)

        logger.info(
            "Video %s submitted to %s (task=%s, credits=%s)",
            video_uuid,
            provider.name,
            task.task_id,
            credits,
        )
        return GenerationResult(
            video_uuid=video_uuid,
            task_id=task.task_id,
            provider=provider.name,
            status=VideoStatus.GENERATING.value if started else (await self._load(video_uuid)).status,
            credits_used=credits,
            estimated_time=task.estimated_time,
        )

    async def refresh_status(self, video_uuid: str, user_id: Optional[str] = None) -> VideoStatusView:
        job = await self._load(video_uuid, user_id)
        if job.is_terminal or not job.external_task_id:
            return VideoStatusView.from_job(job)

        try:
            provider = self.providers.get(job.provider)
            result = await provider.get_task_status(job.external_task_id)
        except ServiceError as exc:
            logger.warning("Status refresh for %s failed: %s", video_uuid, exc)
            await self._record_poll_failure(job)
            return await self._view(video_uuid)

        await self._record_poll_success(video_uuid)
        return await self._apply_task_result(job, result)

    async def refresh_status_by_task_id(self, task_id: str, user_id: str) -> VideoStatusView:
        async with self._session_maker() as db:
            result = await db.execute(
                select(VideoJob.uuid).where(
                    VideoJob.external_task_id == task_id,
                    VideoJob.user_id == user_id,
                    VideoJob.is_deleted.is_(False),
                )
            )
            video_uuid = result.scalars().first()
        if video_uuid is None:
            raise VideoNotFoundError(f"Video not found for task: {task_id}")
        return await self.refresh_status(video_uuid, user_id)

    async def handle_callback(self, provider_name: str, payload: Dict[str, Any], video_uuid: str) -> VideoStatusView:
        provider = self.providers.get(provider_name)
        result = provider.parse_callback(payload)
        job = await self._load(video_uuid)

        if job.provider and job.provider != provider.name:
            raise CallbackTaskMismatchError(
                f"Callback provider {provider.name} does not match job provider {job.provider}"
            )
        if not job.external_task_id or job.external_task_id != result.task_id:
            raise CallbackTaskMismatchError(
                f"Task id mismatch for {video_uuid}: expected {job.external_task_id}, got {result.task_id}"
            )
        if job.is_terminal:
            return VideoStatusView.from_job(job)
        return await self._apply_task_result(job, result)

    # Sweeps

    async def due_video_uuids(self, limit: Optional[int] = None) -> List[str]:
        """Active jobs whose next poll is due, skipping capped and leased ones."""
        now = _utcnow()
        lease_cutoff = now - timedelta(seconds=max(int(self.config.VIDEO_UPLOAD_LEASE_SECONDS), 1))
        batch = max(int(limit or self.config.VIDEO_POLL_BATCH_SIZE), 1)
        async with self._session_maker() as db:
            result = await db.execute(
                select(VideoJob.uuid)
                .where(
                    VideoJob.status.in_(ACTIVE_STATUSES),
                    VideoJob.external_task_id.is_not(None),
                    VideoJob.poll_failures < int(self.config.VIDEO_POLL_MAX_FAILURES),
                    or_(VideoJob.next_poll_at.is_(None), VideoJob.next_poll_at <= now),
                    or_(
                        VideoJob.status != VideoStatus.UPLOADING.value,
                        VideoJob.upload_claimed_at.is_(None),
                        VideoJob.upload_claimed_at < lease_cutoff,
                    ),
                )
                .order_by(VideoJob.next_poll_at.asc(), VideoJob.created_at.asc())
                .limit(batch)
            )
            return list(result.scalars().all())

    async def poll_due_videos(self, limit: Optional[int] = None) -> int:
        refreshed = 0
        for video_uuid in await self.due_video_uuids(limit):
            try:
                await self.refresh_status(video_uuid)
                refreshed += 1
            except ServiceError as exc:
                logger.error("Poll of %s failed: %s", video_uuid, exc)
        return refreshed

    async def recover_stalled_pending(self, max_age_minutes: Optional[int] = None) -> int:
        """Fail jobs that never reached the provider and return their credits."""
        minutes = max_age_minutes if max_age_minutes is not None else self.config.VIDEO_PENDING_STALL_MINUTES
        cutoff = _utcnow() - timedelta(minutes=max(int(minutes), 1))
        async with self._session_maker() as db:
            result = await db.execute(
                select(VideoJob.uuid).where(
                    VideoJob.status == VideoStatus.PENDING.value,
                    VideoJob.external_task_id.is_(None),
                    VideoJob.created_at < cutoff,
                )
            )
            stalled = list(result.scalars().all())

        recovered = 0
        for video_uuid in stalled:
            view = await self._fail(video_uuid, "GenerationStalled", STALLED_MESSAGE)
            if view.status == VideoStatus.FAILED.value:
                recovered += 1
        return recovered


def build_video_orchestrator(config: Optional[Settings] = None) -> VideoOrchestrator:
    config = config or default_settings
    return VideoOrchestrator(
        ledger=CreditLedger(async_session_maker),
        providers=build_provider_registry(config),
        storage=StorageMigrator.from_settings(config),
        session_maker=async_session_maker,
        config=config,
        events=build_video_event_bus(config),
    )
