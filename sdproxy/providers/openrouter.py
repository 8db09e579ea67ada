"""OpenRouter 供应商适配器"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from ..utils.dicts import get_dict_value
from ..utils.http import JsonSuccessResponse, post_json
from .base import ProviderAdapter
from .context import GenerationContext
from .schema import (
    GeneratedImage,
    GenerationRequest,
    GenerationResponse,
    InferenceMetadata,
    RoutingContext,
)
from .utils import (
    bearer_headers,
    clamp_batch_count,
    count_mismatch_warning,
    ensure_images,
    extract_chat_message_images,
)

OPENROUTER_DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "google/gemini-2.5-flash-image"
IMAGE_ONLY_MODALITY_MODEL_KEYWORDS = ("seedream-4.5", "flux")

OPENROUTER_SUPPORTED_ASPECT_RATIOS = [
    "1:1",
    "2:3",
    "3:2",
    "3:4",
    "4:3",
    "4:5",
    "5:4",
    "9:16",
    "16:9",
    "21:9",
]
OPENROUTER_SUPPORTED_IMAGE_SIZES = ["1K", "2K", "4K"]


@dataclass(slots=True)
class OpenRouterAdapter(ProviderAdapter):
    base_url: str = OPENROUTER_DEFAULT_BASE_URL
    timeout_sec: int = 120

    backend_id: ClassVar[str] = "openrouter"
    display_name: ClassVar[str] = "OpenRouter"
    requires_api_key: ClassVar[bool] = True
    max_batch_count: ClassVar[int] = 4

    def __post_init__(self) -> None:
        normalized = self.base_url.strip()
        self.base_url = normalized or OPENROUTER_DEFAULT_BASE_URL

    async def _request_chat_completions(
        self,
        payload: dict[str, Any],
        routing: RoutingContext,
    ) -> JsonSuccessResponse:
        """统一请求 OpenRouter chat/completions 并返回响应封装对象。"""
        base_url = routing.base_url.strip() or self.base_url
        return await post_json(
            url=f"{base_url.rstrip('/')}/chat/completions",
            payload=payload,
            headers=bearer_headers(routing.api_key),
            timeout_sec=self.request_timeout(routing),
            source="OpenRouter",
        )

    async def _build_payload(
        self,
        request: GenerationRequest,
        *,
        model: str,
        count: int,
        timeout_sec: int,
    ) -> tuple[dict[str, Any], list[str]]:
        """构造 OpenRouter 生图请求体。"""
        warnings: list[str] = []
        text = request.prompt
        if request.negative_prompt:
            text = f"{text}\n\nAvoid: {request.negative_prompt}"
        content: list[dict[str, Any]] = [{"type": "text", "text": text}]

        reference_images = list(request.reference_images)
        if request.init_image is not None:
            reference_images.insert(0, request.init_image)
        for reference_image in reference_images:
            if reference_image.kind == "http_url":
                normalized = reference_image.raw
            else:
                normalized = await reference_image.to_data_url(timeout_sec=timeout_sec)
            content.append({"type": "image_url", "image_url": {"url": normalized}})

        options = request.provider_options
        aspect_ratio = str(options.get("aspect_ratio") or "").strip()
        image_size = str(options.get("image_size") or "").strip()
        if aspect_ratio and aspect_ratio not in OPENROUTER_SUPPORTED_ASPECT_RATIOS:
            warnings.append(f"aspect_ratio '{aspect_ratio}' is not supported and ignored.")
            aspect_ratio = ""
        if image_size and image_size not in OPENROUTER_SUPPORTED_IMAGE_SIZES:
            warnings.append(f"image_size '{image_size}' is not supported and ignored.")
            image_size = ""
        image_config = {
            key: value
            for key, value in {
                "aspect_ratio": aspect_ratio,
                "image_size": image_size,
            }.items()
            if value
        }

        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": content}],
            "n": count,
            "modalities": build_image_modalities_for_model(model),
            **({"image_config": image_config} if image_config else {}),
        }
        if request.seed is not None:
            payload["seed"] = request.seed
        return payload, warnings

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        model = request.model or DEFAULT_MODEL
        count = clamp_batch_count(request, self.max_batch_count)
        payload, warnings = await self._build_payload(
            request,
            model=model,
            count=count,
            timeout_sec=self.request_timeout(routing),
        )

        response = await context.guard(self._request_chat_completions(payload, routing))
        data = response["data"]
        images = ensure_images(
            extract_openrouter_images(data),
            source="OpenRouter",
            detail={"response_keys": sorted(data.keys())},
        )
        warnings.extend(count_mismatch_warning(len(images), count))
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=model,
                elapsed_ms=response["elapsed_ms"],
            ),
            warnings=warnings,
        )


def build_image_modalities_for_model(model: str) -> list[str]:
    model_name = model.strip().lower()
    if any(keyword in model_name for keyword in IMAGE_ONLY_MODALITY_MODEL_KEYWORDS):
        return ["image"]
    return ["image", "text"]


def extract_openrouter_images(data: dict[str, Any]) -> list[GeneratedImage]:
    """提取 `choices[].message.images[].image_url.url`（http(s) URL 或 data URL）。"""
    output: list[GeneratedImage] = []
    choices = data.get("choices")
    if not isinstance(choices, list):
        return output
    for choice in choices:
        output.extend(extract_chat_message_images(get_dict_value(choice, "message")))
    return output
