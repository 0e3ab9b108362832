"""Base class shared by the HTTP video provider adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from services.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderGenericError,
    ProviderRateLimitedError,
)
from services.providers.types import ProviderName, VideoGenerationParams, VideoTaskResponse

logger = logging.getLogger(__name__)


def error_for_status(provider: str, status: int, message: str) -> ProviderError:
    if status in (401, 403):
        return ProviderAuthError(
            f"{provider} authentication failed ({status}): {message}",
            provider=provider,
            http_status=status,
        )
    if status == 429:
        return ProviderRateLimitedError(
            f"{provider} rate limit exceeded: {message}",
            provider=provider,
            http_status=status,
        )
    return ProviderGenericError(
        f"{provider} request failed ({status}): {message}",
        provider=provider,
        http_status=status,
    )


class BaseVideoProvider(ABC):
    name: ProviderName
    supports_image_to_video: bool

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @abstractmethod
    async def create_task(self, params: VideoGenerationParams) -> VideoTaskResponse:
        raise NotImplementedError

    @abstractmethod
    async def get_task_status(self, task_id: str) -> VideoTaskResponse:
        raise NotImplementedError

    @abstractmethod
    def parse_callback(self, payload: Dict[str, Any]) -> VideoTaskResponse:
        raise NotImplementedError

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            yield client

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        if not self.api_key:
            raise ProviderAuthError(f"{self.name} API key is not configured", provider=self.name)
        url = f"{self.base_url}{path}"
        try:
            async with self._client() as client:
                return await client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers=self._headers(),
                    timeout=self.timeout_seconds,
                )
        except httpx.HTTPError as exc:
            logger.warning("%s %s %s failed: %s", self.name, method, path, exc)
            raise ProviderGenericError(f"{self.name} request error: {exc}", provider=self.name) from exc

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}
