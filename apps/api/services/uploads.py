"""Reference images uploaded for image-to-video generation."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Optional
import uuid

from services.errors import InvalidUploadError, StorageMigrationError, UploadTooLargeError
from services.storage import StorageMigrator, StoredObject, upload_object_key

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}
ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp"}


def image_extension(filename: Optional[str], content_type: str) -> str:
    suffix = PurePosixPath(filename or "").suffix.lstrip(".").lower()
    if suffix in ALLOWED_EXTENSIONS:
        return suffix
    return ALLOWED_IMAGE_TYPES[content_type]


async def store_user_image(
    storage: StorageMigrator,
    *,
    user_id: str,
    filename: Optional[str],
    content_type: Optional[str],
    data: bytes,
    max_bytes: int,
) -> StoredObject:
    resolved_type = (content_type or "").split(";")[0].strip().lower()
    if resolved_type not in ALLOWED_IMAGE_TYPES:
        allowed = ", ".join(ALLOWED_IMAGE_TYPES)
        raise InvalidUploadError(f"Invalid content type. Allowed: {allowed}")
    if not data:
        raise InvalidUploadError("Uploaded file is empty.")
    if len(data) > max_bytes:
        raise UploadTooLargeError(max_bytes)

    key = upload_object_key(user_id, uuid.uuid4().hex, image_extension(filename, resolved_type))
    try:
        stored = await storage.upload_bytes(data, key, resolved_type)
    except StorageMigrationError as exc:
        raise StorageMigrationError(str(exc), user_message="Upload could not be stored. Try again later.") from exc
    logger.info("Stored %s byte image upload for %s as %s", len(data), user_id, key)
    return stored
