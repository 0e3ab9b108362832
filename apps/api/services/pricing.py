"""Video model catalogue and credit cost rules."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from typing import Dict, List, Optional, Tuple

from services.errors import UnsupportedModelError


STANDARD_QUALITIES = ("standard", "high")


@dataclass(frozen=True)
class ModelSpec:
    id: str
    name: str
    durations: Tuple[int, ...]
    aspect_ratios: Tuple[str, ...]
    qualities: Tuple[str, ...] = ()
    supports_image_to_video: bool = True

    @property
    def default_duration(self) -> int:
        return self.durations[0]

    @property
    def max_duration(self) -> int:
        return max(self.durations)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "durations": list(self.durations),
            "max_duration": self.max_duration,
            "aspect_ratios": list(self.aspect_ratios),
            "qualities": list(self.qualities),
            "supports_image_to_video": self.supports_image_to_video,
        }


MODEL_CATALOGUE: Dict[str, ModelSpec] = {
    "sora-2": ModelSpec(
        id="sora-2",
        name="Sora 2",
        durations=(10, 15),
        aspect_ratios=("16:9", "9:16"),
    ),
    "wan2.6": ModelSpec(
        id="wan2.6",
        name="Wan 2.6",
        durations=(5, 10, 15),
        aspect_ratios=("16:9", "9:16", "1:1", "4:3", "3:4"),
        qualities=("720p", "1080p"),
    ),
    "veo-3.1": ModelSpec(
        id="veo-3.1",
        name="Veo 3.1",
        durations=(8,),
        aspect_ratios=("16:9", "9:16"),
    ),
    "seedance-1.5-pro": ModelSpec(
        id="seedance-1.5-pro",
        name="Seedance 1.5 Pro",
        durations=(4, 5, 6, 8, 10, 12),
        aspect_ratios=("16:9", "9:16", "1:1", "4:3", "3:4", "21:9"),
        qualities=("480p", "720p", "1080p"),
    ),
}

WAN_CREDITS_PER_SECOND = 5
WAN_HIGH_QUALITY_MULTIPLIER = Decimal("1.67")
SEEDANCE_CREDITS_PER_SECOND = 4
SEEDANCE_HIGH_QUALITY_CREDITS_PER_SECOND = 8
VEO_FLAT_CREDITS = 10


def list_models() -> List[ModelSpec]:
    return list(MODEL_CATALOGUE.values())


def get_model(model_id: str) -> ModelSpec:
    spec = MODEL_CATALOGUE.get((model_id or "").strip())
    if spec is None:
        raise UnsupportedModelError(f"Unsupported model: {model_id}")
    return spec


def is_high_quality(quality: Optional[str]) -> bool:
    normalized = str(quality or "").strip().lower()
    return normalized == "high" or "1080" in normalized


def resolve_duration(spec: ModelSpec, duration: Optional[int]) -> int:
    if duration is None:
        return spec.default_duration
    value = int(duration)
    if value not in spec.durations:
        allowed = ", ".join(str(item) for item in spec.durations)
        raise UnsupportedModelError(f"{spec.name} supports durations: {allowed}")
    return value


def validate_options(
    spec: ModelSpec,
    *,
    aspect_ratio: Optional[str] = None,
    quality: Optional[str] = None,
    has_image_input: bool = False,
) -> None:
    if aspect_ratio and aspect_ratio not in spec.aspect_ratios:
        raise UnsupportedModelError(f"{spec.name} does not support aspect ratio {aspect_ratio}")
    if quality and spec.qualities:
        normalized = str(quality).strip().lower()
        if normalized not in spec.qualities and normalized not in STANDARD_QUALITIES:
            raise UnsupportedModelError(f"{spec.name} does not support quality {quality}")
    if has_image_input and not spec.supports_image_to_video:
        raise UnsupportedModelError(f"Model {spec.id} does not support image-to-video")


def calculate_credits(
    model_id: str,
    duration: int,
    quality: Optional[str] = None,
    output_number: int = 1,
) -> int:
    """Credits for one request: the per-video cost rounded up, times output count."""
    spec = get_model(model_id)
    seconds = int(duration)
    high = is_high_quality(quality)

    if spec.id == "sora-2":
        cost = Decimal(3 if seconds == 15 else 2)
    elif spec.id == "wan2.6":
        cost = Decimal(seconds * WAN_CREDITS_PER_SECOND)
        if high:
            cost = cost * WAN_HIGH_QUALITY_MULTIPLIER
    elif spec.id == "veo-3.1":
        cost = Decimal(VEO_FLAT_CREDITS)
    else:
        per_second = SEEDANCE_HIGH_QUALITY_CREDITS_PER_SECOND if high else SEEDANCE_CREDITS_PER_SECOND
        cost = Decimal(seconds * per_second)

    per_video = int(cost.to_integral_value(rounding=ROUND_CEILING))
    return per_video * max(int(output_number or 1), 1)
