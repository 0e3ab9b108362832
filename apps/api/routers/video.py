"""Video generation router."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.video_job import VideoJob
from routers.auth_scope import AuthContext, ensure_user_row, get_auth_context, get_stream_auth_context
from routers.dependencies import get_video_orchestrator
from routers.rate_limit import rate_limit
from routers.service_errors import to_http_exception
from services import pricing
from services.callback_signature import SignatureCheck, verify_callback_signature
from services.errors import ServiceError
from services.video_events import video_event_stream
from services.video_generation import GenerateVideoRequest, VideoOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerateVideoBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(min_length=1, max_length=5000)
    model: str = Field(min_length=1, max_length=64)
    duration: Optional[int] = Field(default=None, ge=1, le=60)
    aspect_ratio: Optional[str] = Field(default=None, alias="aspectRatio")
    quality: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl", max_length=2000)
    image_urls: Optional[List[str]] = Field(default=None, alias="imageUrls", max_length=8)
    mode: Optional[str] = None
    output_number: int = Field(default=1, ge=1, le=4, alias="outputNumber")
    generate_audio: Optional[bool] = Field(default=None, alias="generateAudio")


def _serialize_video(job: VideoJob) -> Dict[str, Any]:
    return {
        "uuid": job.uuid,
        "prompt": job.prompt,
        "model": job.model,
        "status": job.status,
        "provider": job.provider,
        "taskId": job.external_task_id,
        "creditsUsed": int(job.credits_used or 0),
        "duration": job.duration,
        "aspectRatio": job.aspect_ratio,
        "startImageUrl": job.start_image_url,
        "videoUrl": job.video_url,
        "thumbnailUrl": job.thumbnail_url,
        "errorMessage": job.error_message,
        "generationSeconds": job.generation_seconds,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


@router.post("/generate")
async def generate_video(
    body: GenerateVideoBody,
    _rate_limit: None = Depends(rate_limit("video_generate", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    """Reserve credits and submit a generation task to the configured provider."""
    await ensure_user_row(db, auth)
    request = GenerateVideoRequest(
        user_id=auth.user_id,
        prompt=body.prompt.strip(),
        model=body.model,
        duration=body.duration,
        aspect_ratio=body.aspect_ratio,
        quality=body.quality,
        image_url=body.image_url,
        image_urls=tuple(body.image_urls or ()),
        mode=body.mode,
        output_number=body.output_number,
        generate_audio=body.generate_audio,
    )
    try:
        result = await orchestrator.generate(request)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    return result.to_dict()


@router.get("/models")
async def list_models():
    """Model catalogue with supported durations, ratios and qualities."""
    return {"models": [spec.to_dict() for spec in pricing.list_models()]}


@router.get("/list")
async def list_videos(
    limit: int = Query(default=20, ge=1, le=100),
    cursor: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    page = await orchestrator.list_videos(auth.user_id, limit=limit, cursor=cursor, status=status)
    return {
        "videos": [_serialize_video(job) for job in page.videos],
        "nextCursor": page.next_cursor,
        "hasMore": page.has_more,
    }


@router.get("/events")
async def video_events(
    auth: AuthContext = Depends(get_stream_auth_context),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    """Server-sent events for the caller's videos reaching COMPLETED or FAILED."""
    return StreamingResponse(
        video_event_stream(
            orchestrator.events,
            auth.user_id,
            heartbeat_seconds=max(int(settings.VIDEO_EVENTS_HEARTBEAT_SECONDS), 1),
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/task/{task_id}/status")
async def task_status(
    task_id: str,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    try:
        view = await orchestrator.refresh_status_by_task_id(task_id, auth.user_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    return view.to_dict()


@router.get("/{video_uuid}/status")
async def video_status(
    video_uuid: str,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    """Current status; asks the provider when the job is still in flight."""
    try:
        view = await orchestrator.refresh_status(video_uuid, auth.user_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    return view.to_dict()


@router.get("/{video_uuid}")
async def get_video(
    video_uuid: str,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    try:
        job = await orchestrator.get_video(video_uuid, auth.user_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_video(job)


@router.delete("/{video_uuid}")
async def delete_video(
    video_uuid: str,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    try:
        await orchestrator.delete_video(video_uuid, auth.user_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    return {"deleted": True, "uuid": video_uuid}


@router.post("/callback/{provider}")
async def provider_callback(
    provider: str,
    request: Request,
    video_uuid: Optional[str] = Query(default=None, alias="videoUuid"),
    ts: Optional[str] = Query(default=None),
    sig: Optional[str] = Query(default=None),
    _rate_limit: None = Depends(rate_limit("video_callback", limit=600, window_seconds=60)),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    """Provider webhook. Authenticated by the signed query string, not a session."""
    if provider not in orchestrator.providers.names:
        raise HTTPException(status_code=400, detail={"code": "UnsupportedProvider", "message": "Invalid provider"})
    if not video_uuid or not ts or not sig:
        raise HTTPException(
            status_code=400,
            detail={"code": "MissingSignature", "message": "Missing signature parameters"},
        )

    check = verify_callback_signature(video_uuid, ts, sig)
    if check == SignatureCheck.EXPIRED:
        raise HTTPException(status_code=401, detail={"code": "SignatureExpired", "message": "Signature expired"})
    if check != SignatureCheck.VALID:
        raise HTTPException(status_code=401, detail={"code": "InvalidSignature", "message": "Invalid signature"})

    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "InvalidPayload", "message": "Callback body must be JSON"},
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400,
            detail={"code": "InvalidPayload", "message": "Callback body must be a JSON object"},
        )

    try:
        view = await orchestrator.handle_callback(provider, payload, video_uuid)
    except ServiceError as exc:
        logger.warning("Rejected %s callback for %s: %s", provider, video_uuid, exc)
        raise to_http_exception(exc) from exc
    return {"received": True, "status": view.status}
