"""Vendor-neutral video provider contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple


ProviderName = Literal["evolink", "kie"]
TaskStatus = Literal["pending", "processing", "completed", "failed"]

TASK_NOT_FOUND = "TASK_NOT_FOUND"


@dataclass(frozen=True)
class VideoGenerationParams:
    prompt: str
    model: str
    duration: Optional[int] = None
    aspect_ratio: Optional[str] = None
    quality: Optional[str] = None
    image_urls: Tuple[str, ...] = ()
    mode: Optional[str] = None
    output_number: int = 1
    generate_audio: Optional[bool] = None
    remove_watermark: Optional[bool] = None
    callback_url: Optional[str] = None

    @property
    def has_image_input(self) -> bool:
        return len(self.image_urls) > 0


@dataclass(frozen=True)
class TaskError:
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class VideoTaskResponse:
    task_id: str
    provider: ProviderName
    status: TaskStatus
    progress: Optional[int] = None
    estimated_time: Optional[int] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[TaskError] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"
