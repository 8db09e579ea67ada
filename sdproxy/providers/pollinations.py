"""Pollinations 适配器：图片直接由 URL 模板表示，不发起任何请求。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar
from urllib.parse import urlencode

from ..utils.url import encode_uri_component
from .base import ProviderAdapter
from .context import GenerationContext
from .schema import (
    GeneratedImage,
    GenerationRequest,
    GenerationResponse,
    InferenceMetadata,
    RoutingContext,
)
from .utils import clamp_batch_count, resolve_seed

POLLINATIONS_BASE_URL = "https://image.pollinations.ai/prompt"
POLLINATIONS_MAX_SEED = 999_999
DEFAULT_WIDTH = 512
DEFAULT_HEIGHT = 768


def build_pollinations_url(
    prompt: str,
    *,
    width: int,
    height: int,
    seed: int,
    model: str | None = None,
    negative_prompt: str = "",
) -> str:
    params: dict[str, str | int] = {
        "width": width,
        "height": height,
        "seed": seed,
        "nologo": "true",
    }
    if model:
        params["model"] = model
    if negative_prompt:
        params["negative_prompt"] = negative_prompt
    return f"{POLLINATIONS_BASE_URL}/{encode_uri_component(prompt)}?{urlencode(params)}"


@dataclass(slots=True)
class PollinationsAdapter(ProviderAdapter):
    timeout_sec: int = 60

    backend_id: ClassVar[str] = "pollinations"
    display_name: ClassVar[str] = "Pollinations (Free)"
    max_batch_count: ClassVar[int] = 4

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        count = clamp_batch_count(request, self.max_batch_count)
        seed = resolve_seed(request.seed, POLLINATIONS_MAX_SEED)
        # 同一 URL 返回同一张图，多张时逐张递增种子。
        images = [
            GeneratedImage.from_url(
                build_pollinations_url(
                    request.prompt,
                    width=request.width or DEFAULT_WIDTH,
                    height=request.height or DEFAULT_HEIGHT,
                    seed=(seed + index) % (POLLINATIONS_MAX_SEED + 1),
                    model=request.model,
                    negative_prompt=request.negative_prompt,
                )
            )
            for index in range(count)
        ]
        warnings: list[str] = []
        if request.init_image is not None or request.reference_images:
            warnings.append("image inputs are not supported by pollinations and ignored.")
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=request.model or "",
                elapsed_ms=0,
                extra={"seed": seed},
            ),
            warnings=warnings,
        )
