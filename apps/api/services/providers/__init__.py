"""Public video provider utilities."""

from services.providers.base import BaseVideoProvider
from services.providers.evolink import EvolinkProvider
from services.providers.kie import KieProvider
from services.providers.registry import ProviderRegistry, build_provider_registry
from services.providers.types import (
    TASK_NOT_FOUND,
    ProviderName,
    TaskError,
    TaskStatus,
    VideoGenerationParams,
    VideoTaskResponse,
)

__all__ = [
    "BaseVideoProvider",
    "EvolinkProvider",
    "KieProvider",
    "ProviderName",
    "ProviderRegistry",
    "TASK_NOT_FOUND",
    "TaskError",
    "TaskStatus",
    "VideoGenerationParams",
    "VideoTaskResponse",
    "build_provider_registry",
]
