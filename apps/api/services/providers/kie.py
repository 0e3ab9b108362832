"""KIE video generation adapter.

KIE wraps every response in an envelope ``{"code", "msg", "data"}`` where
``code == 200`` means success regardless of the HTTP status. Veo tasks live
on a separate sub-API and are recognised by their ``veo_task_`` id prefix.
"""

from __future__ import annotations

import enum
import json
import logging
from typing import Any, Dict, Optional

from services.providers.base import BaseVideoProvider, error_for_status
from services.providers.model_mapping import build_kie_request
from services.providers.types import (
    TASK_NOT_FOUND,
    TaskError,
    TaskStatus,
    VideoGenerationParams,
    VideoTaskResponse,
)

logger = logging.getLogger(__name__)

VEO_TASK_PREFIX = "veo_task_"

_STATE_MAP: Dict[str, TaskStatus] = {
    "waiting": "pending",
    "queuing": "pending",
    "generating": "processing",
    "success": "completed",
    "fail": "failed",
}


class KieTaskKind(str, enum.Enum):
    JOB = "job"
    VEO = "veo"


def classify_task_id(task_id: str) -> KieTaskKind:
    if str(task_id).startswith(VEO_TASK_PREFIX):
        return KieTaskKind.VEO
    return KieTaskKind.JOB


def map_state(state: Any) -> TaskStatus:
    return _STATE_MAP.get(str(state or "").lower(), "pending")


def map_veo_flag(flag: Any) -> TaskStatus:
    if flag == 1:
        return "completed"
    if flag in (2, 3):
        return "failed"
    return "processing"


def first_url(value: Any) -> Optional[str]:
    """Pick the first URL from a list or a JSON-encoded list."""
    if isinstance(value, list):
        return value[0] if value else None
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        if isinstance(parsed, list) and parsed:
            return parsed[0]
    return None


def _result_url(data: Dict[str, Any]) -> Optional[str]:
    if map_state(data.get("state")) != "completed" or not data.get("resultJson"):
        return None
    raw = data["resultJson"]
    try:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        logger.error("Failed to parse KIE resultJson for task %s", data.get("taskId"))
        return None
    if not isinstance(parsed, dict):
        return None
    return first_url(parsed.get("resultUrls"))


class KieProvider(BaseVideoProvider):
    name = "kie"
    supports_image_to_video = False

    def _check_envelope(self, response, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not response.is_success:
            message = str(payload.get("msg") or response.text or "API error")
            raise error_for_status(self.name, response.status_code, message)
        code = payload.get("code")
        if code != 200:
            status = code if isinstance(code, int) else 502
            raise error_for_status(self.name, status, str(payload.get("msg") or "API error"))
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def _not_found(self, task_id: str, message: str) -> VideoTaskResponse:
        return VideoTaskResponse(
            task_id=task_id,
            provider="kie",
            status="failed",
            error=TaskError(code=TASK_NOT_FOUND, message=message or "Task not found or expired"),
        )

    async def create_task(self, params: VideoGenerationParams) -> VideoTaskResponse:
        request = build_kie_request(params)
        response = await self._request("POST", request.endpoint, json=request.body)
        payload = self._json(response)
        data = self._check_envelope(response, payload)
        task_id = str(data.get("taskId") or "")
        logger.info("KIE task created: %s (model=%s)", task_id, request.body.get("model"))
        return VideoTaskResponse(task_id=task_id, provider="kie", status="pending", raw=payload)

    async def get_task_status(self, task_id: str) -> VideoTaskResponse:
        kind = classify_task_id(task_id)
        if kind == KieTaskKind.VEO:
            path = "/api/v1/veo/record-info"
        else:
            path = "/api/v1/jobs/recordInfo"

        response = await self._request("GET", path, params={"taskId": task_id})
        if response.status_code in (404, 410):
            return self._not_found(task_id, response.text)
        payload = self._json(response)
        if payload.get("code") in (404, 410):
            return self._not_found(task_id, str(payload.get("msg") or ""))
        data = self._check_envelope(response, payload)

        if kind == KieTaskKind.VEO:
            return self._veo_status(task_id, data)
        return self._job_response(data, fallback_task_id=task_id)

    def parse_callback(self, payload: Dict[str, Any]) -> VideoTaskResponse:
        payload = payload or {}
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        info = data.get("info") if isinstance(data.get("info"), dict) else {}
        if "resultUrls" in info:
            return self._veo_callback(payload, data, info)
        return self._job_response(data)

    def _job_response(self, data: Dict[str, Any], fallback_task_id: str = "") -> VideoTaskResponse:
        error = None
        if data.get("failCode") or data.get("failMsg"):
            error = TaskError(
                code=str(data.get("failCode") or "PROVIDER_FAILED"),
                message=str(data.get("failMsg") or "Generation failed"),
            )
        return VideoTaskResponse(
            task_id=str(data.get("taskId") or fallback_task_id),
            provider="kie",
            status=map_state(data.get("state")),
            video_url=_result_url(data),
            error=error,
            raw=data,
        )

    def _veo_status(self, task_id: str, data: Dict[str, Any]) -> VideoTaskResponse:
        result = data.get("response") if isinstance(data.get("response"), dict) else {}
        error = None
        if data.get("errorMessage"):
            error = TaskError(
                code=str(data.get("errorCode") or "VEO_ERROR"),
                message=str(data["errorMessage"]),
            )
        return VideoTaskResponse(
            task_id=str(data.get("taskId") or task_id),
            provider="kie",
            status=map_veo_flag(data.get("successFlag")),
            video_url=first_url(result.get("resultUrls")),
            error=error,
            raw=data,
        )

    def _veo_callback(
        self, payload: Dict[str, Any], data: Dict[str, Any], info: Dict[str, Any]
    ) -> VideoTaskResponse:
        video_url = first_url(info.get("resultUrls"))
        code = payload.get("code")
        completed = code == 200 and bool(video_url)
        error = None
        if not completed:
            error = TaskError(
                code=str(code or "VEO_ERROR"),
                message=str(payload.get("msg") or "Veo task failed"),
            )
        return VideoTaskResponse(
            task_id=str(data.get("taskId") or ""),
            provider="kie",
            status="completed" if completed else "failed",
            video_url=video_url,
            error=error,
            raw=payload,
        )
