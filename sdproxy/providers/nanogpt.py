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

NANOGPT_GENERATIONS_URL = "https://nano-gpt.com/api/v1/images/generations"
DEFAULT_MODEL = "flux-schnell"


@dataclass(slots=True)
class NanoGPTAdapter(ProviderAdapter):
    timeout_sec: int = 120

    backend_id: ClassVar[str] = "nanogpt"
    display_name: ClassVar[str] = "NanoGPT"
    requires_api_key: ClassVar[bool] = True
    max_batch_count: ClassVar[int] = 4

    async def _build_payload(
        self,
        request: GenerationRequest,
        *,
        timeout_sec: int,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": request.prompt,
            "model": request.model or DEFAULT_MODEL,
            "n": clamp_batch_count(request, self.max_batch_count),
            "response_format": "b64_json",
        }
        if request.width and request.height:
            payload["size"] = f"{request.width}x{request.height}"
        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt
        if request.steps:
            payload["num_inference_steps"] = request.steps
        if request.cfg_scale:
            payload["guidance_scale"] = request.cfg_scale
        if request.seed is not None:
            payload["seed"] = request.seed
        if request.init_image is not None:
            payload["imageDataUrl"] = await request.init_image.to_data_url(
                timeout_sec=timeout_sec
            )
            if request.strength is not None:
                payload["strength"] = request.strength
        return payload

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        timeout_sec = self.request_timeout(routing)
        payload = await self._build_payload(request, timeout_sec=timeout_sec)
        response = await context.guard(
            post_json(
                url=NANOGPT_GENERATIONS_URL,
                payload=payload,
                headers=bearer_headers(routing.api_key),
                timeout_sec=timeout_sec,
                source="NanoGPT",
            )
        )
        data = response["data"]
        images = ensure_images(
            extract_openai_images(data),
            source="NanoGPT",
            detail={"response_keys": sorted(data.keys())},
        )
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=payload["model"],
                elapsed_ms=response["elapsed_ms"],
                extra={"cost": data["cost"]} if "cost" in data else {},
            ),
            warnings=count_mismatch_warning(len(images), payload["n"]),
        )
