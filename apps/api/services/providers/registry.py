"""Explicit registry of configured video providers."""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional

import httpx

from config import Settings, settings as default_settings
from services.errors import UnsupportedProviderError
from services.providers.base import BaseVideoProvider
from services.providers.evolink import EvolinkProvider
from services.providers.kie import KieProvider


DEFAULT_PROVIDER = "evolink"


class ProviderRegistry:
    def __init__(self, providers: Mapping[str, BaseVideoProvider], default: Optional[str] = None) -> None:
        self._providers: Dict[str, BaseVideoProvider] = dict(providers)
        self._default = default or DEFAULT_PROVIDER

    @property
    def names(self) -> List[str]:
        return sorted(self._providers)

    @property
    def default_name(self) -> str:
        return self._default

    def get(self, name: Optional[str]) -> BaseVideoProvider:
        provider = self._providers.get(str(name or "").strip().lower())
        if provider is None:
            raise UnsupportedProviderError(str(name))
        return provider

    def default(self) -> BaseVideoProvider:
        return self.get(self._default)


def build_provider_registry(
    config: Optional[Settings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProviderRegistry:
    config = config or default_settings
    timeout = float(config.PROVIDER_HTTP_TIMEOUT_SECONDS)
    providers = {
        "evolink": EvolinkProvider(
            api_key=config.EVOLINK_API_KEY,
            base_url=config.EVOLINK_BASE_URL,
            timeout_seconds=timeout,
            http_client=http_client,
        ),
        "kie": KieProvider(
            api_key=config.KIE_API_KEY,
            base_url=config.KIE_BASE_URL,
            timeout_seconds=timeout,
            http_client=http_client,
        ),
    }
    default = (config.DEFAULT_AI_PROVIDER or DEFAULT_PROVIDER).strip().lower()
    return ProviderRegistry(providers, default=default)
