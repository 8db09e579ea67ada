"""Dezgo 适配器：每次请求只返回一张图片字节，多张时并发拆成子请求。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from ..utils.errors import ResponseParseError
from ..utils.http import post_bytes
from .base import ProviderAdapter
from .context import GenerationContext
from .schema import (
    GeneratedImage,
    GenerationRequest,
    GenerationResponse,
    InferenceMetadata,
    RoutingContext,
)
from .utils import MAX_SEED, clamp_batch_count, map_sampler, resolve_seed, run_concurrently

DEZGO_TEXT2IMAGE_URL = "https://api.dezgo.com/text2image"
DEZGO_MAX_PROMPT_LENGTH = 1000
DEFAULT_WIDTH = 512
DEFAULT_HEIGHT = 768
DEFAULT_STEPS = 30
DEFAULT_GUIDANCE = 7.0

DEZGO_SAMPLER_NAMES = {
    "euler_ancestral": "euler_a",
    "euler_a": "euler_a",
    "euler": "euler",
    "dpmpp_2m": "dpmpp_2m_karras",
    "ddim": "ddim",
    "lms": "lms",
    "heun": "heun",
}


def build_variation_prompts(prompt: str, count: int) -> list[str]:
    """为每个子请求生成提示词；截断后加上后缀，总长不超过上游限制。"""
    if count <= 1:
        return [prompt[:DEZGO_MAX_PROMPT_LENGTH]]
    prompts: list[str] = []
    for index in range(1, count + 1):
        suffix = f", variation {index}"
        prompts.append(prompt[: DEZGO_MAX_PROMPT_LENGTH - len(suffix)] + suffix)
    return prompts


@dataclass(slots=True)
class DezgoAdapter(ProviderAdapter):
    timeout_sec: int = 120

    backend_id: ClassVar[str] = "dezgo"
    display_name: ClassVar[str] = "Dezgo"
    requires_api_key: ClassVar[bool] = True
    max_batch_count: ClassVar[int] = 4

    def build_payloads(self, request: GenerationRequest) -> list[dict[str, Any]]:
        count = clamp_batch_count(request, self.max_batch_count)
        seed = resolve_seed(request.seed)
        base: dict[str, Any] = {
            "width": request.width or DEFAULT_WIDTH,
            "height": request.height or DEFAULT_HEIGHT,
            "steps": request.steps or DEFAULT_STEPS,
            "guidance": request.cfg_scale or DEFAULT_GUIDANCE,
        }
        if request.negative_prompt:
            base["negative_prompt"] = request.negative_prompt[:DEZGO_MAX_PROMPT_LENGTH]
        if request.sampler:
            base["sampler"] = map_sampler(request.sampler, DEZGO_SAMPLER_NAMES, "auto")
        if request.model:
            base["model"] = request.model
        return [
            {**base, "prompt": prompt, "seed": (seed + index) % (MAX_SEED + 1)}
            for index, prompt in enumerate(build_variation_prompts(request.prompt, count))
        ]

    async def _generate_one(
        self,
        payload: dict[str, Any],
        *,
        api_key: str,
        timeout_sec: int,
    ) -> tuple[GeneratedImage, int]:
        response = await post_bytes(
            url=DEZGO_TEXT2IMAGE_URL,
            payload=payload,
            headers={"Content-Type": "application/json", "X-Dezgo-Key": api_key.strip()},
            timeout_sec=timeout_sec,
            source="Dezgo",
        )
        mime = response["mime"]
        if not response["data"] or (mime and not mime.startswith("image/")):
            raise ResponseParseError(
                "Dezgo returned a non-image response.",
                detail={
                    "mime": mime,
                    "body": response["data"][:500].decode("utf-8", errors="replace"),
                },
            )
        return GeneratedImage.from_bytes(response["data"], mime=mime), response["elapsed_ms"]

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        timeout_sec = self.request_timeout(routing)
        payloads = self.build_payloads(request)
        if len(payloads) > 1:
            context.log(f"Dezgo fan-out: {len(payloads)} concurrent requests")

        results = await run_concurrently(
            [
                self._generate_one(payload, api_key=routing.api_key, timeout_sec=timeout_sec)
                for payload in payloads
            ],
            context=context,
        )

        warnings: list[str] = []
        if any(not payload["prompt"].startswith(request.prompt) for payload in payloads):
            warnings.append(f"prompt truncated to {DEZGO_MAX_PROMPT_LENGTH} characters.")
        if request.init_image is not None or request.reference_images or request.loras:
            warnings.append("image inputs and loras are not supported by dezgo and ignored.")
        return GenerationResponse(
            images=[image for image, _ in results],
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=request.model or "",
                elapsed_ms=max(elapsed for _, elapsed in results),
                extra={"seeds": [payload["seed"] for payload in payloads]},
            ),
            warnings=warnings,
        )
