"""Internal model ids to vendor model ids and request shapes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from services.errors import UnsupportedModelError
from services.providers.types import VideoGenerationParams


ModelIdResolver = Union[str, Callable[[VideoGenerationParams], str]]

KIE_JOBS_ENDPOINT = "/api/v1/jobs/createTask"
KIE_VEO_ENDPOINT = "/api/v1/veo/generate"

_KIE_ASPECT_RATIOS = {"16:9": "landscape", "9:16": "portrait"}
_RESOLUTIONS = {"standard": "720p", "high": "1080p", "480p": "480p", "720p": "720p", "1080p": "1080p"}


@dataclass(frozen=True)
class ProviderModelConfig:
    model_id: ModelIdResolver
    endpoint: Optional[str] = None

    def resolve(self, params: VideoGenerationParams) -> str:
        if callable(self.model_id):
            return self.model_id(params)
        return self.model_id


@dataclass(frozen=True)
class KieRequest:
    endpoint: str
    body: Dict[str, Any]


def _wan_model(prefix: str, reference: str):
    def resolve(params: VideoGenerationParams) -> str:
        if params.mode == "reference-to-video":
            return reference
        suffix = "image-to-video" if params.has_image_input else "text-to-video"
        return f"{prefix}{suffix}"

    return resolve


def _kie_veo_model(params: VideoGenerationParams) -> str:
    quality = str(params.quality or "").lower()
    return "veo3" if quality in ("high", "1080p", "4k") else "veo3_fast"


MODEL_MAPPINGS: Dict[str, Dict[str, ProviderModelConfig]] = {
    "sora-2": {
        "evolink": ProviderModelConfig("sora-2"),
        "kie": ProviderModelConfig(
            lambda p: "sora-2-image-to-video" if p.has_image_input else "sora-2-text-to-video"
        ),
    },
    "wan2.6": {
        "evolink": ProviderModelConfig(_wan_model("wan2.6-", "wan2.6-reference-video")),
        "kie": ProviderModelConfig(_wan_model("wan/2-6-", "wan/2-6-video-to-video")),
    },
    "veo-3.1": {
        "evolink": ProviderModelConfig("veo3.1-fast"),
        "kie": ProviderModelConfig(_kie_veo_model, endpoint=KIE_VEO_ENDPOINT),
    },
    "seedance-1.5-pro": {
        "evolink": ProviderModelConfig("seedance-1.5-pro"),
        "kie": ProviderModelConfig("bytedance/seedance-1.5-pro"),
    },
}


def get_provider_config(model: str, provider: str) -> ProviderModelConfig:
    mapping = MODEL_MAPPINGS.get(model)
    if mapping is None:
        raise UnsupportedModelError(f"Unsupported model: {model}")
    config = mapping.get(provider)
    if config is None:
        raise UnsupportedModelError(f"Model {model} is not supported by provider {provider}")
    return config


def is_model_supported(model: str, provider: str) -> bool:
    return provider in MODEL_MAPPINGS.get(model, {})


def normalize_quality(quality: Optional[str], provider: str, model: str) -> Optional[str]:
    if not quality:
        return None
    normalized = str(quality).lower()
    if provider == "kie" and model == "sora-2":
        # KIE Sora takes a size of standard/high instead of a resolution.
        if normalized in ("high", "1080p"):
            return "high"
        if normalized in ("standard", "720p", "480p"):
            return "standard"
        return quality
    return _RESOLUTIONS.get(normalized, quality)


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


def build_evolink_payload(params: VideoGenerationParams) -> Dict[str, Any]:
    config = get_provider_config(params.model, "evolink")
    quality = normalize_quality(params.quality, "evolink", params.model)
    payload: Dict[str, Any] = {
        "model": config.resolve(params),
        "prompt": params.prompt,
        "aspect_ratio": params.aspect_ratio or "16:9",
        "duration": params.duration or 10,
        "quality": quality,
        "remove_watermark": True if params.remove_watermark is None else params.remove_watermark,
        "image_urls": list(params.image_urls) or None,
        "callback_url": params.callback_url,
    }
    if params.model == "wan2.6" and params.quality:
        # Wan takes quality in place of the watermark flag.
        payload.pop("remove_watermark")
    return _compact(payload)


def _kie_veo_body(params: VideoGenerationParams, model_id: str) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": model_id,
        "prompt": params.prompt,
        "aspect_ratio": params.aspect_ratio or "16:9",
        "callBackUrl": params.callback_url,
    }
    if params.has_image_input:
        body["imageUrls"] = list(params.image_urls)
    generation_types = {
        "frames-to-video": "FIRST_AND_LAST_FRAMES_2_VIDEO",
        "reference-to-video": "REFERENCE_2_VIDEO",
        "text-to-video": "TEXT_2_VIDEO",
    }
    if params.mode in generation_types:
        body["generationType"] = generation_types[params.mode]
    return _compact(body)


def _kie_job_input(params: VideoGenerationParams) -> Dict[str, Any]:
    model = params.model
    data: Dict[str, Any] = {"prompt": params.prompt}
    if params.aspect_ratio:
        data["aspect_ratio"] = _KIE_ASPECT_RATIOS.get(params.aspect_ratio, params.aspect_ratio)
    if params.duration:
        data["duration"] = str(params.duration)
    if params.has_image_input:
        image_key = "input_urls" if model == "seedance-1.5-pro" else "image_urls"
        data[image_key] = list(params.image_urls)
    data["remove_watermark"] = True if params.remove_watermark is None else params.remove_watermark

    if model == "sora-2":
        if params.duration:
            data["n_frames"] = str(data.pop("duration"))
        size = normalize_quality(params.quality, "kie", model)
        if size:
            data["size"] = size
    elif model == "wan2.6":
        data["resolution"] = normalize_quality(params.quality, "kie", model) or "1080p"
        data["multi_shots"] = False
    elif model == "seedance-1.5-pro":
        data["resolution"] = normalize_quality(params.quality, "kie", model) or "720p"
        data["fixed_lens"] = True
        data["generate_audio"] = bool(params.generate_audio)
    return data


def build_kie_request(params: VideoGenerationParams) -> KieRequest:
    config = get_provider_config(params.model, "kie")
    model_id = config.resolve(params)
    endpoint = config.endpoint or KIE_JOBS_ENDPOINT
    if endpoint == KIE_VEO_ENDPOINT:
        return KieRequest(endpoint=endpoint, body=_kie_veo_body(params, model_id))
    body = {
        "model": model_id,
        "input": _kie_job_input(params),
        "callBackUrl": params.callback_url,
    }
    return KieRequest(endpoint=endpoint, body=_compact(body))
