"""AI Horde 适配器：异步提交 → 轮询 check → 完成后取 status 中的图片。

匿名用户使用 `0000000000` 作为 apikey，排队优先级最低但可以正常出图。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from ..utils.errors import ProviderError
from ..utils.http import get_json, post_json
from .base import ProviderAdapter
from .context import GenerationContext
from .polling import PollOutcome, PollPolicy, poll_until_complete
from .schema import (
    GeneratedImage,
    GenerationRequest,
    GenerationResponse,
    InferenceMetadata,
    RoutingContext,
)
from .utils import (
    clamp_batch_count,
    count_mismatch_warning,
    map_sampler,
    parse_image_reference,
)

HORDE_API_URL = "https://aihorde.net/api/v2"
HORDE_ANONYMOUS_KEY = "0000000000"
HORDE_CLIENT_AGENT = "sdproxy:0.1.0:unknown"
HORDE_DIMENSION_STEP = 64
DEFAULT_WIDTH = 512
DEFAULT_HEIGHT = 768
DEFAULT_STEPS = 25
DEFAULT_CFG_SCALE = 7.0
DEFAULT_SAMPLER = "k_euler_a"

HORDE_SAMPLER_NAMES = {
    "euler_ancestral": "k_euler_a",
    "euler_a": "k_euler_a",
    "euler": "k_euler",
    "lms": "k_lms",
    "heun": "k_heun",
    "dpm_2": "k_dpm_2",
    "dpm_2_ancestral": "k_dpm_2_a",
    "dpmpp_2s_ancestral": "k_dpmpp_2s_a",
    "dpmpp_2m": "k_dpmpp_2m",
    "dpmpp_sde": "k_dpmpp_sde",
    "ddim": "DDIM",
}


def snap_dimension(value: int) -> int:
    """Horde 要求宽高为 64 的倍数，向下取整且不小于 64。"""
    return max(HORDE_DIMENSION_STEP, value // HORDE_DIMENSION_STEP * HORDE_DIMENSION_STEP)


def build_horde_payload(
    request: GenerationRequest,
    *,
    count: int,
) -> tuple[dict[str, Any], list[str]]:
    warnings: list[str] = []
    width = request.width or DEFAULT_WIDTH
    height = request.height or DEFAULT_HEIGHT
    snapped = (snap_dimension(width), snap_dimension(height))
    if snapped != (width, height):
        warnings.append(f"size snapped to {snapped[0]}x{snapped[1]} (multiples of 64).")

    params: dict[str, Any] = {
        "width": snapped[0],
        "height": snapped[1],
        "steps": request.steps or DEFAULT_STEPS,
        "cfg_scale": request.cfg_scale or DEFAULT_CFG_SCALE,
        "sampler_name": map_sampler(request.sampler, HORDE_SAMPLER_NAMES, DEFAULT_SAMPLER),
        "karras": (request.scheduler or "karras").lower() == "karras",
        "n": count,
    }
    if request.seed is not None:
        params["seed"] = str(request.seed)
    if request.loras:
        params["loras"] = [
            {"name": lora.id, "model": lora.weight, "clip": lora.weight}
            for lora in request.loras
        ]

    prompt = request.prompt
    if request.negative_prompt:
        # Horde 用 `###` 分隔正向与反向提示词。
        prompt = f"{prompt} ### {request.negative_prompt}"
    payload: dict[str, Any] = {
        "prompt": prompt,
        "params": params,
        "r2": True,
        "nsfw": bool(request.provider_options.get("nsfw", False)),
    }
    if request.model:
        payload["models"] = [request.model]
    if request.init_image is not None or request.reference_images:
        warnings.append("image inputs are not supported by horde and ignored.")
    return payload, warnings


def _generation_images(status: dict[str, Any]) -> list[GeneratedImage]:
    images: list[GeneratedImage] = []
    for generation in status.get("generations") or []:
        if not isinstance(generation, dict) or generation.get("censored"):
            continue
        img = generation.get("img")
        if isinstance(img, str) and img.strip():
            images.append(parse_image_reference(img, source="AI Horde", mime="image/webp"))
    return images


@dataclass(slots=True)
class HordeAdapter(ProviderAdapter):
    timeout_sec: int = 60
    poll_interval_sec: float = 5.0
    max_poll_attempts: int = 120
    max_wait_sec: float = 600.0

    backend_id: ClassVar[str] = "horde"
    display_name: ClassVar[str] = "AI Horde"
    max_batch_count: ClassVar[int] = 4

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        timeout_sec = self.request_timeout(routing)
        headers = {
            "Content-Type": "application/json",
            "apikey": routing.api_key.strip() or HORDE_ANONYMOUS_KEY,
            "Client-Agent": HORDE_CLIENT_AGENT,
        }
        count = clamp_batch_count(request, self.max_batch_count)
        payload, warnings = build_horde_payload(request, count=count)

        submitted = await context.guard(
            post_json(
                url=f"{HORDE_API_URL}/generate/async",
                payload=payload,
                headers=headers,
                timeout_sec=timeout_sec,
                source="AI Horde",
            )
        )
        job_id = submitted["data"].get("id")
        if not job_id:
            raise ProviderError(
                str(submitted["data"].get("message") or "AI Horde did not return a job id."),
                detail={"response": submitted["data"]},
            )
        for warning in submitted["data"].get("warnings") or []:
            if isinstance(warning, dict) and warning.get("message"):
                warnings.append(str(warning["message"]))

        async def poll(attempt: int) -> PollOutcome:
            try:
                response = await get_json(
                    url=f"{HORDE_API_URL}/generate/check/{job_id}",
                    headers=headers,
                    timeout_sec=timeout_sec,
                    source="AI Horde",
                )
            except ProviderError as exc:
                # check 接口限流时等待下一轮。
                if exc.status_code == 429:
                    return PollOutcome.pending()
                raise
            check = response["data"]
            if check.get("faulted"):
                return PollOutcome.failed("AI Horde job faulted.", detail={"job_id": job_id})
            if check.get("is_possible") is False:
                return PollOutcome.failed(
                    "AI Horde has no worker able to serve this request.",
                    detail={"job_id": job_id},
                )
            if check.get("done"):
                status = await get_json(
                    url=f"{HORDE_API_URL}/generate/status/{job_id}",
                    headers=headers,
                    timeout_sec=timeout_sec,
                    source="AI Horde",
                )
                return PollOutcome.completed(_generation_images(status["data"]))

            finished = check.get("finished") or 0
            return PollOutcome.pending(
                progress=finished / count,
                eta_seconds=check.get("wait_time"),
            )

        images = await poll_until_complete(
            poll,
            policy=PollPolicy(
                interval_sec=self.poll_interval_sec,
                max_attempts=self.max_poll_attempts,
                max_wait_sec=self.max_wait_sec,
            ),
            context=context,
            source="AI Horde",
            job_id=str(job_id),
        )
        warnings.extend(count_mismatch_warning(len(images), count))
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=request.model or "",
                extra={"job_id": job_id, "kudos": submitted["data"].get("kudos")},
            ),
            warnings=warnings,
        )
