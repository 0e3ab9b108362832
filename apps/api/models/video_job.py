"""Video generation job model."""

from datetime import datetime, timezone
import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base


PARAMETERS_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VideoStatus(str, enum.Enum):
    PENDING = "PENDING"
    GENERATING = "GENERATING"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (VideoStatus.COMPLETED.value, VideoStatus.FAILED.value)
ACTIVE_STATUSES = (
    VideoStatus.PENDING.value,
    VideoStatus.GENERATING.value,
    VideoStatus.UPLOADING.value,
)


class VideoJob(Base):
    """A video commissioned from an external provider and paid for with credits."""

    __tablename__ = "video_jobs"
    __table_args__ = (
        Index("ix_video_jobs_user_created", "user_id", "created_at"),
        Index("ix_video_jobs_status_next_poll", "status", "next_poll_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    uuid = Column(String, nullable=False, unique=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    prompt = Column(Text, nullable=False)
    model = Column(String, nullable=False)
    parameters = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default=VideoStatus.PENDING.value, index=True)
    provider = Column(String, nullable=True)
    external_task_id = Column(String, nullable=True, index=True)
    credits_used = Column(Integer, nullable=False, default=0)
    duration = Column(Integer, nullable=True)
    aspect_ratio = Column(String, nullable=True)
    start_image_url = Column(String, nullable=True)
    original_video_url = Column(String, nullable=True)
    video_url = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    upload_claimed_at = Column(DateTime(timezone=True), nullable=True)
    poll_failures = Column(Integer, nullable=False, default=0)
    next_poll_at = Column(DateTime(timezone=True), nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    generation_seconds = Column(Integer, nullable=True)

    user = relationship("User", back_populates="video_jobs")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
