from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from ..utils.http import post_json
from .base import ProviderAdapter
from .context import GenerationContext
from .schema import (
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
    extract_openai_images,
)

OPENAI_DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "dall-e-3"
DEFAULT_SIZE = "1024x1024"
# dall-e-3 单次只允许 n=1
SINGLE_IMAGE_MODELS = ("dall-e-3",)


@dataclass(slots=True)
class OpenAIAdapter(ProviderAdapter):
    base_url: str = OPENAI_DEFAULT_BASE_URL
    timeout_sec: int = 180

    backend_id: ClassVar[str] = "openai"
    display_name: ClassVar[str] = "OpenAI Images"
    requires_api_key: ClassVar[bool] = True
    max_batch_count: ClassVar[int] = 4

    def build_payload(self, request: GenerationRequest) -> tuple[dict[str, Any], list[str]]:
        warnings: list[str] = []
        model = request.model or DEFAULT_MODEL
        count = clamp_batch_count(request, self.max_batch_count)
        if model in SINGLE_IMAGE_MODELS and count > 1:
            warnings.append(f"{model} generates one image per request; n reduced to 1.")
            count = 1

        payload: dict[str, Any] = {
            "model": model,
            "prompt": request.prompt,
            "n": count,
            "size": (
                f"{request.width}x{request.height}"
                if request.width and request.height
                else DEFAULT_SIZE
            ),
        }
        # gpt-image 系列固定返回 base64，不接受 response_format。
        if model.startswith("dall-e"):
            payload["response_format"] = "b64_json"
        for key in ("quality", "style", "background"):
            if key in request.provider_options:
                payload[key] = request.provider_options[key]
        if request.negative_prompt:
            warnings.append("negative_prompt is not supported by openai and ignored.")
        if request.init_image is not None or request.reference_images:
            warnings.append("image inputs are not supported by openai generations and ignored.")
        return payload, warnings

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        payload, warnings = self.build_payload(request)
        base_url = routing.base_url.strip() or self.base_url
        response = await context.guard(
            post_json(
                url=f"{base_url.rstrip('/')}/images/generations",
                payload=payload,
                headers=bearer_headers(routing.api_key),
                timeout_sec=self.request_timeout(routing),
                source="OpenAI",
            )
        )
        data = response["data"]
        images = ensure_images(
            extract_openai_images(data),
            source="OpenAI",
            detail={"response_keys": sorted(data.keys())},
        )
        warnings.extend(count_mismatch_warning(len(images), payload["n"]))
        revised = [
            item.get("revised_prompt")
            for item in data.get("data") or []
            if isinstance(item, dict) and item.get("revised_prompt")
        ]
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=payload["model"],
                elapsed_ms=response["elapsed_ms"],
                extra={"revised_prompts": revised} if revised else {},
            ),
            warnings=warnings,
        )
