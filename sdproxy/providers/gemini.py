"""Google Gemini 图像模型适配器（generateContent）。

参考图以 inline_data 分段随提示词一起提交：data URL 在本地解码为 `(mime, base64)`，
http(s) URL 先下载再编码。Gemini 每次只返回一张图，多张时并发拆成子请求。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from ..utils.dicts import get_dict_value
from ..utils.errors import ProviderError, ResponseParseError
from ..utils.http import post_json
from .base import ProviderAdapter
from .context import GenerationContext
from .schema import (
    GeneratedImage,
    GenerationRequest,
    GenerationResponse,
    InferenceMetadata,
    RoutingContext,
)
from .utils import clamp_batch_count, parse_image_reference, run_concurrently

GEMINI_DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash-image"
GEMINI_SUPPORTED_ASPECT_RATIOS = (
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
)


async def build_content_parts(
    request: GenerationRequest,
    *,
    timeout_sec: int,
) -> list[dict[str, Any]]:
    text = request.prompt
    if request.negative_prompt:
        text = f"{text}\n\nAvoid: {request.negative_prompt}"
    parts: list[dict[str, Any]] = [{"text": text}]
    images = list(request.reference_images)
    if request.init_image is not None:
        images.insert(0, request.init_image)
    for image in images:
        mime, data = await image.to_inline(timeout_sec=timeout_sec)
        parts.append({"inline_data": {"mime_type": mime or "image/png", "data": data}})
    return parts


def extract_gemini_images(data: dict[str, Any]) -> tuple[list[GeneratedImage], str]:
    """返回 `(图片, 文本回复)`；兼容 camelCase 与 snake_case 两种字段命名。"""
    images: list[GeneratedImage] = []
    texts: list[str] = []
    candidates = data.get("candidates")
    if not isinstance(candidates, list):
        return images, ""
    for candidate in candidates:
        parts = get_dict_value(candidate, "content", "parts")
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and isinstance(inline.get("data"), str):
                mime = inline.get("mimeType") or inline.get("mime_type") or ""
                images.append(parse_image_reference(inline["data"], source="Gemini", mime=mime))
            elif isinstance(part.get("text"), str):
                texts.append(part["text"])
    return images, "\n".join(texts)


@dataclass(slots=True)
class GeminiAdapter(ProviderAdapter):
    base_url: str = GEMINI_DEFAULT_BASE_URL
    timeout_sec: int = 120

    backend_id: ClassVar[str] = "gemini"
    display_name: ClassVar[str] = "Google Gemini"
    requires_api_key: ClassVar[bool] = True
    max_batch_count: ClassVar[int] = 4

    async def _build_payload(
        self,
        request: GenerationRequest,
        *,
        timeout_sec: int,
    ) -> tuple[dict[str, Any], list[str]]:
        warnings: list[str] = []
        generation_config: dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}
        aspect_ratio = str(request.provider_options.get("aspect_ratio") or "").strip()
        if aspect_ratio in GEMINI_SUPPORTED_ASPECT_RATIOS:
            generation_config["imageConfig"] = {"aspectRatio": aspect_ratio}
        elif aspect_ratio:
            warnings.append(f"aspect_ratio '{aspect_ratio}' is not supported and ignored.")
        if request.seed is not None:
            generation_config["seed"] = request.seed
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": await build_content_parts(request, timeout_sec=timeout_sec),
                }
            ],
            "generationConfig": generation_config,
        }
        return payload, warnings

    async def _generate_one(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        api_key: str,
        timeout_sec: int,
    ) -> tuple[list[GeneratedImage], int]:
        response = await post_json(
            url=url,
            payload=payload,
            headers={"Content-Type": "application/json", "x-goog-api-key": api_key.strip()},
            timeout_sec=timeout_sec,
            source="Gemini",
        )
        data = response["data"]
        block_reason = get_dict_value(data, "promptFeedback", "blockReason")
        if block_reason:
            raise ProviderError(
                f"Gemini blocked the prompt: {block_reason}",
                detail={"block_reason": block_reason},
            )
        images, text = extract_gemini_images(data)
        if not images:
            raise ResponseParseError(
                text or "Gemini returned no image content.",
                detail={"response_keys": sorted(data.keys()), "text": text},
            )
        return images, response["elapsed_ms"]

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        timeout_sec = self.request_timeout(routing)
        model = request.model or DEFAULT_MODEL
        base_url = routing.base_url.strip() or self.base_url
        url = f"{base_url.rstrip('/')}/models/{model}:generateContent"
        payload, warnings = await self._build_payload(request, timeout_sec=timeout_sec)
        count = clamp_batch_count(request, self.max_batch_count)

        results = await run_concurrently(
            [
                self._generate_one(url, payload, api_key=routing.api_key, timeout_sec=timeout_sec)
                for _ in range(count)
            ],
            context=context,
        )
        images = [image for batch, _ in results for image in batch]
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=model,
                elapsed_ms=max(elapsed for _, elapsed in results),
            ),
            warnings=warnings,
        )
