"""NovelAI 适配器：响应是打包了若干 PNG 的二进制容器，按 PNG 结构切出图片。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from ..resources import carve_png_images
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
from .utils import (
    bearer_headers,
    clamp_batch_count,
    count_mismatch_warning,
    map_sampler,
    resolve_seed,
)

NOVELAI_GENERATE_URL = "https://image.novelai.net/ai/generate-image"
DEFAULT_MODEL = "nai-diffusion-3"
DEFAULT_WIDTH = 832
DEFAULT_HEIGHT = 1216
DEFAULT_STEPS = 28
DEFAULT_SCALE = 5.0
DEFAULT_SAMPLER = "k_euler_ancestral"
DEFAULT_STRENGTH = 0.7

NOVELAI_SAMPLER_NAMES = {
    "euler_ancestral": "k_euler_ancestral",
    "euler_a": "k_euler_ancestral",
    "euler": "k_euler",
    "dpmpp_2m": "k_dpmpp_2m",
    "dpmpp_sde": "k_dpmpp_sde",
    "dpmpp_2s_ancestral": "k_dpmpp_2s_ancestral",
    "ddim": "ddim_v3",
}
NOVELAI_NOISE_SCHEDULES = {
    "normal": "native",
    "karras": "karras",
    "exponential": "exponential",
    "polyexponential": "polyexponential",
}


@dataclass(slots=True)
class NovelAIAdapter(ProviderAdapter):
    timeout_sec: int = 180

    backend_id: ClassVar[str] = "novelai"
    display_name: ClassVar[str] = "NovelAI"
    requires_api_key: ClassVar[bool] = True
    max_batch_count: ClassVar[int] = 4

    async def _build_payload(
        self,
        request: GenerationRequest,
        *,
        timeout_sec: int,
    ) -> tuple[dict[str, Any], list[str]]:
        warnings: list[str] = []
        parameters: dict[str, Any] = {
            "width": request.width or DEFAULT_WIDTH,
            "height": request.height or DEFAULT_HEIGHT,
            "scale": request.cfg_scale or DEFAULT_SCALE,
            "steps": request.steps or DEFAULT_STEPS,
            "sampler": map_sampler(request.sampler, NOVELAI_SAMPLER_NAMES, DEFAULT_SAMPLER),
            "n_samples": clamp_batch_count(request, self.max_batch_count),
            "seed": resolve_seed(request.seed),
            "negative_prompt": request.negative_prompt,
            "ucPreset": 0,
            "qualityToggle": True,
        }
        if request.scheduler:
            parameters["noise_schedule"] = NOVELAI_NOISE_SCHEDULES.get(
                request.scheduler.lower(), request.scheduler
            )
        parameters.update(
            {
                key: value
                for key, value in request.provider_options.items()
                if key in {"sm", "sm_dyn", "cfg_rescale", "uncond_scale"}
            }
        )

        action = "generate"
        if request.init_image is not None:
            action = "img2img"
            parameters["image"] = await request.init_image.to_base64(timeout_sec=timeout_sec)
            parameters["strength"] = (
                DEFAULT_STRENGTH if request.strength is None else request.strength
            )
            parameters["noise"] = 0
            if request.mask is not None:
                action = "infill"
                parameters["mask"] = await request.mask.to_base64(timeout_sec=timeout_sec)
        if request.loras:
            warnings.append("loras are not supported by novelai and ignored.")
        if request.reference_images:
            warnings.append("reference_images are not supported by novelai and ignored.")

        payload = {
            "input": request.prompt,
            "model": request.model or DEFAULT_MODEL,
            "action": action,
            "parameters": parameters,
        }
        return payload, warnings

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        timeout_sec = self.request_timeout(routing)
        payload, warnings = await self._build_payload(request, timeout_sec=timeout_sec)
        response = await context.guard(
            post_bytes(
                url=NOVELAI_GENERATE_URL,
                payload=payload,
                headers=bearer_headers(routing.api_key),
                timeout_sec=timeout_sec,
                source="NovelAI",
            )
        )
        buffer = response["data"]
        images = [
            GeneratedImage.from_bytes(blob, mime="image/png")
            for blob in carve_png_images(buffer)
        ]
        if not images:
            raise ResponseParseError(
                "NovelAI response contained no PNG images.",
                detail={"mime": response["mime"], "body_len": len(buffer)},
            )
        requested = payload["parameters"]["n_samples"]
        warnings.extend(count_mismatch_warning(len(images), requested))
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=payload["model"],
                elapsed_ms=response["elapsed_ms"],
                extra={"seed": payload["parameters"]["seed"]},
            ),
            warnings=warnings,
        )
