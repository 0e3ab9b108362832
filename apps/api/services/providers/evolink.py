"""Evolink video generation adapter."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from services.providers.base import BaseVideoProvider, error_for_status
from services.providers.model_mapping import build_evolink_payload
from services.providers.types import (
    TASK_NOT_FOUND,
    TaskError,
    TaskStatus,
    VideoGenerationParams,
    VideoTaskResponse,
)

logger = logging.getLogger(__name__)

_STATUS_MAP: Dict[str, TaskStatus] = {
    "pending": "pending",
    "processing": "processing",
    "completed": "completed",
    "failed": "failed",
    "cancelled": "failed",
}


def map_status(status: Any) -> TaskStatus:
    return _STATUS_MAP.get(str(status or "").lower(), "pending")


def _error_message(payload: Dict[str, Any], fallback: str) -> str:
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return str(payload.get("message") or fallback)


def _task_error(payload: Dict[str, Any]) -> Optional[TaskError]:
    error = payload.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return TaskError(
            code=str(error.get("code") or "PROVIDER_FAILED"),
            message=str(error.get("message") or "Generation failed"),
        )
    return TaskError(code="PROVIDER_FAILED", message=str(error))


class EvolinkProvider(BaseVideoProvider):
    name = "evolink"
    supports_image_to_video = True

    async def create_task(self, params: VideoGenerationParams) -> VideoTaskResponse:
        body = build_evolink_payload(params)
        response = await self._request("POST", "/videos/generations", json=body)
        payload = self._json(response)
        if not response.is_success:
            message = _error_message(payload, response.reason_phrase or "API error")
            raise error_for_status(self.name, response.status_code, message)

        task_info = payload.get("task_info") or {}
        logger.info("Evolink task created: %s (model=%s)", payload.get("id"), body.get("model"))
        return VideoTaskResponse(
            task_id=str(payload.get("id") or ""),
            provider="evolink",
            status=map_status(payload.get("status")),
            progress=payload.get("progress"),
            estimated_time=task_info.get("estimated_time"),
            raw=payload,
        )

    async def get_task_status(self, task_id: str) -> VideoTaskResponse:
        response = await self._request("GET", f"/tasks/{task_id}")
        if response.status_code in (404, 410):
            return VideoTaskResponse(
                task_id=task_id,
                provider="evolink",
                status="failed",
                error=TaskError(
                    code=TASK_NOT_FOUND,
                    message=response.text or "Task not found or expired",
                ),
            )
        if not response.is_success:
            raise error_for_status(self.name, response.status_code, response.text)
        return self._to_response(self._json(response), fallback_task_id=task_id)

    def parse_callback(self, payload: Dict[str, Any]) -> VideoTaskResponse:
        # Callbacks share the task query shape.
        return self._to_response(payload or {})

    def _to_response(self, payload: Dict[str, Any], fallback_task_id: str = "") -> VideoTaskResponse:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        results = payload.get("results")
        if isinstance(results, list):
            video_url = results[0] if results else None
        else:
            video_url = data.get("video_url")
        return VideoTaskResponse(
            task_id=str(payload.get("id") or fallback_task_id),
            provider="evolink",
            status=map_status(payload.get("status")),
            progress=payload.get("progress"),
            video_url=video_url,
            thumbnail_url=data.get("thumbnail_url"),
            error=_task_error(payload),
            raw=payload,
        )
