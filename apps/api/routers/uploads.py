"""Image uploads used as image-to-video input."""

from fastapi import APIRouter, Depends, File, UploadFile

from config import settings
from routers.auth_scope import AuthContext, get_auth_context
from routers.dependencies import get_video_orchestrator
from routers.rate_limit import rate_limit
from routers.service_errors import to_http_exception
from services.errors import ServiceError
from services.uploads import store_user_image
from services.video_generation import VideoOrchestrator

router = APIRouter()


@router.post("")
async def upload_image(
    file: UploadFile = File(...),
    _rate_limit: None = Depends(rate_limit("image_upload", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    max_bytes = max(int(settings.UPLOAD_MAX_IMAGE_BYTES), 1)
    try:
        # One byte past the limit is enough to reject the file.
        data = await file.read(max_bytes + 1)
    finally:
        await file.close()

    try:
        stored = await store_user_image(
            orchestrator.storage,
            user_id=auth.user_id,
            filename=file.filename,
            content_type=file.content_type,
            data=data,
            max_bytes=max_bytes,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    return {"publicUrl": stored.url, "key": stored.key}
