"""AUTOMATIC1111 / Forge WebUI 适配器（本地自托管，同步接口）"""

from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass
from typing import Any, ClassVar

from ..utils.errors import GenerationException
from ..utils.http import get_json, post_json
from ..utils.log import get_structured_logger
from ..utils.url import join_url
from .base import ProviderAdapter
from .context import GenerationContext
from .schema import (
    GeneratedImage,
    GenerationRequest,
    GenerationResponse,
    InferenceMetadata,
    RoutingContext,
)
from .utils import clamp_batch_count, count_mismatch_warning, ensure_images, map_sampler

logger = get_structured_logger(__name__)

LOCAL_DEFAULT_BASE_URL = "http://127.0.0.1:7860"

A1111_SAMPLER_NAMES = {
    "euler_ancestral": "Euler a",
    "euler_a": "Euler a",
    "euler": "Euler",
    "lms": "LMS",
    "heun": "Heun",
    "dpm_2": "DPM2",
    "dpm_2_ancestral": "DPM2 a",
    "dpmpp_2s_ancestral": "DPM++ 2S a",
    "dpmpp_2m": "DPM++ 2M",
    "dpmpp_sde": "DPM++ SDE",
    "dpmpp_2m_sde": "DPM++ 2M SDE",
    "ddim": "DDIM",
    "uni_pc": "UniPC",
}
# 旧版 WebUI 没有独立的 scheduler 字段，调度器作为后缀拼进采样器名称；normal 不加后缀。
A1111_SCHEDULER_SUFFIXES = {
    "normal": "",
    "karras": "Karras",
    "exponential": "Exponential",
    "sgm_uniform": "SGM Uniform",
    "polyexponential": "Polyexponential",
}

DEFAULT_SAMPLER = "DPM++ 2M"
DEFAULT_SCHEDULER = "karras"
DEFAULT_WIDTH = 512
DEFAULT_HEIGHT = 768
DEFAULT_STEPS = 25
DEFAULT_CFG_SCALE = 7.0
DEFAULT_DENOISING_STRENGTH = 0.75


def build_sampler_name(sampler: str | None, scheduler: str | None) -> str:
    """拼接 WebUI 采样器名称，例如 euler + karras => "Euler Karras"。"""
    base = map_sampler(sampler, A1111_SAMPLER_NAMES, DEFAULT_SAMPLER)
    token = (scheduler or DEFAULT_SCHEDULER).strip()
    suffix = A1111_SCHEDULER_SUFFIXES.get(token.lower(), token)
    if not suffix or base.lower().endswith(suffix.lower()):
        return base
    return f"{base} {suffix}"


def _lora_tags(request: GenerationRequest) -> str:
    return " ".join(f"<lora:{lora.id}:{lora.weight:g}>" for lora in request.loras)


def _parse_info(raw_info: Any) -> dict[str, Any]:
    """WebUI 的 info 字段是 JSON 字符串，仅用于补充元数据，解析失败时忽略。"""
    if not isinstance(raw_info, str):
        return {}
    try:
        info = json.loads(raw_info)
    except json.JSONDecodeError:
        return {}
    if not isinstance(info, dict):
        return {}
    return {key: info[key] for key in ("seed", "all_seeds", "sd_model_name") if key in info}


@dataclass(slots=True)
class A1111Adapter(ProviderAdapter):
    base_url: str = LOCAL_DEFAULT_BASE_URL
    timeout_sec: int = 300
    progress_interval_sec: float = 1.0

    backend_id: ClassVar[str] = "local"
    display_name: ClassVar[str] = "Local (A1111/Forge)"
    max_batch_count: ClassVar[int] = 8

    def _resolve_base_url(self, routing: RoutingContext) -> str:
        return (routing.base_url.strip() or self.base_url).rstrip("/")

    async def _build_payload(
        self,
        request: GenerationRequest,
        *,
        timeout_sec: int,
    ) -> tuple[dict[str, Any], list[str]]:
        warnings: list[str] = []
        prompt = request.prompt
        if request.loras:
            prompt = f"{prompt} {_lora_tags(request)}"

        payload: dict[str, Any] = {
            "prompt": prompt,
            "negative_prompt": request.negative_prompt,
            "width": request.width or DEFAULT_WIDTH,
            "height": request.height or DEFAULT_HEIGHT,
            "steps": request.steps or DEFAULT_STEPS,
            "cfg_scale": request.cfg_scale or DEFAULT_CFG_SCALE,
            "sampler_name": build_sampler_name(request.sampler, request.scheduler),
            "seed": -1 if request.seed is None else request.seed,
            "batch_size": clamp_batch_count(request, self.max_batch_count),
        }
        if request.model:
            payload["override_settings"] = {"sd_model_checkpoint": request.model}
            payload["override_settings_restore_afterwards"] = True

        hr_scale = request.provider_options.get("hr_scale")
        if hr_scale and request.init_image is None:
            payload["enable_hr"] = True
            payload["hr_scale"] = hr_scale
            payload["hr_upscaler"] = request.provider_options.get("hr_upscaler", "Latent")

        if request.init_image is not None:
            payload["init_images"] = [
                await request.init_image.to_base64(timeout_sec=timeout_sec)
            ]
            payload["denoising_strength"] = (
                DEFAULT_DENOISING_STRENGTH
                if request.strength is None
                else request.strength
            )
            if request.mask is not None:
                payload["mask"] = await request.mask.to_base64(timeout_sec=timeout_sec)
        elif request.mask is not None:
            warnings.append("mask ignored because init_image is missing.")

        if request.reference_images:
            warnings.append("reference_images are not supported by local and ignored.")
        return payload, warnings

    async def _watch_progress(self, base_url: str, context: GenerationContext) -> None:
        """并行轮询 /sdapi/v1/progress，把进度、ETA 与预览图转发给 sink。

        查询失败只记 debug 日志，不影响主请求。
        """
        url = join_url(base_url, "sdapi/v1/progress")
        while True:
            await asyncio.sleep(self.progress_interval_sec)
            try:
                response = await get_json(
                    url=url,
                    params={"skip_current_image": "false"},
                    timeout_sec=10,
                    source="A1111 progress",
                )
            except GenerationException as exc:
                logger.debug("a1111.progress_failed", {"error": str(exc)})
                continue

            data = response["data"]
            preview = None
            current_image = data.get("current_image")
            if isinstance(current_image, str) and current_image:
                try:
                    preview = GeneratedImage.from_reference(current_image)
                except ValueError:
                    preview = None
            progress = data.get("progress")
            if isinstance(progress, (int, float)):
                context.report_progress(
                    float(progress), data.get("eta_relative"), preview
                )

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        base_url = self._resolve_base_url(routing)
        timeout_sec = self.request_timeout(routing)
        payload, warnings = await self._build_payload(request, timeout_sec=timeout_sec)
        endpoint = "img2img" if request.init_image is not None else "txt2img"

        watcher: asyncio.Task[None] | None = None
        if context.sink is not None:
            watcher = asyncio.create_task(self._watch_progress(base_url, context))
        try:
            response = await context.guard(
                post_json(
                    url=join_url(base_url, f"sdapi/v1/{endpoint}"),
                    payload=payload,
                    headers={"Content-Type": "application/json"},
                    timeout_sec=timeout_sec,
                    source="A1111",
                )
            )
        finally:
            if watcher is not None:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher

        data = response["data"]
        images: list[GeneratedImage] = []
        for item in data.get("images") or []:
            if not isinstance(item, str) or not item.strip():
                continue
            try:
                images.append(GeneratedImage.from_reference(item))
            except ValueError:
                continue
        ensure_images(
            images,
            source="A1111",
            detail={"response_keys": sorted(data.keys())},
        )
        requested = payload["batch_size"]
        warnings.extend(count_mismatch_warning(len(images), requested))

        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=request.model or "",
                elapsed_ms=response["elapsed_ms"],
                extra=_parse_info(data.get("info")),
            ),
            warnings=warnings,
        )

    async def list_models(self, routing: RoutingContext) -> list[str]:
        try:
            response = await get_json(
                url=join_url(self._resolve_base_url(routing), "sdapi/v1/sd-models"),
                timeout_sec=self.request_timeout(routing),
                source="A1111",
                require_object=False,
            )
        except GenerationException as exc:
            logger.warning("a1111.list_models_failed", {"error": str(exc)})
            return []
        models = response["data"]
        if not isinstance(models, list):
            return []
        return [
            str(item.get("title") or item.get("model_name"))
            for item in models
            if isinstance(item, dict) and (item.get("title") or item.get("model_name"))
        ]
