"""自定义 OpenAI 兼容端点适配器。

默认走 chat/completions：先取 `message.images`，再从回复文本中扫描图片 URL；
地址本身包含 `/images/generations` 时改走标准生图接口。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, ClassVar

from ..utils.dicts import first_list_item, get_dict_value
from ..utils.errors import GenerationException, ResponseParseError
from ..utils.http import get_json, post_json
from ..utils.log import get_structured_logger
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
    extract_chat_message_images,
    extract_openai_images,
)

logger = get_structured_logger(__name__)

DEFAULT_MODEL = "gpt-4o"
IMAGES_ENDPOINT_MARKER = "/images/generations"
CHAT_ENDPOINT_MARKER = "/chat/completions"
IMAGE_URL_PATTERN = re.compile(r"https?://[^\s\)]+\.(?:png|jpg|jpeg|webp|gif)", re.IGNORECASE)


def resolve_endpoint(base_url: str) -> str:
    """地址未指明接口时默认补全为 chat/completions。"""
    normalized = base_url.strip()
    if IMAGES_ENDPOINT_MARKER in normalized or CHAT_ENDPOINT_MARKER in normalized:
        return normalized
    return f"{normalized.rstrip('/')}{CHAT_ENDPOINT_MARKER}"


def resolve_models_url(base_url: str) -> str:
    normalized = re.sub(r"/images/generations.*$", "", base_url.strip())
    normalized = re.sub(r"/chat/completions.*$", "", normalized)
    if normalized.endswith("/models"):
        return normalized
    return f"{normalized.rstrip('/')}/models"


def message_text(message: Any) -> str:
    """chat 回复的 content 可能是字符串，也可能是分段数组。"""
    content = get_dict_value(message, "content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part["text"]
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    return ""


def scan_image_urls(text: str) -> list[GeneratedImage]:
    return [GeneratedImage.from_url(match.group(0)) for match in IMAGE_URL_PATTERN.finditer(text)]


@dataclass(slots=True)
class CustomChatAdapter(ProviderAdapter):
    timeout_sec: int = 120

    backend_id: ClassVar[str] = "custom"
    display_name: ClassVar[str] = "Custom OpenAI-compatible"
    requires_base_url: ClassVar[bool] = True
    max_batch_count: ClassVar[int] = 4

    async def _build_chat_payload(
        self,
        request: GenerationRequest,
        *,
        timeout_sec: int,
    ) -> dict[str, Any]:
        images = list(request.reference_images)
        if request.init_image is not None:
            images.insert(0, request.init_image)
        content: str | list[dict[str, Any]] = request.prompt
        if images:
            parts: list[dict[str, Any]] = [{"type": "text", "text": request.prompt}]
            for image in images:
                url = image.raw if image.kind == "http_url" else await image.to_data_url(
                    timeout_sec=timeout_sec
                )
                parts.append({"type": "image_url", "image_url": {"url": url}})
            content = parts
        return {
            "model": request.model or DEFAULT_MODEL,
            "messages": [{"role": "user", "content": content}],
        }

    def _build_images_payload(self, request: GenerationRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or DEFAULT_MODEL,
            "prompt": request.prompt,
            "n": clamp_batch_count(request, self.max_batch_count),
        }
        if request.width and request.height:
            payload["size"] = f"{request.width}x{request.height}"
        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt
        return payload

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        endpoint = resolve_endpoint(routing.base_url)
        timeout_sec = self.request_timeout(routing)
        headers = bearer_headers(routing.api_key)
        warnings: list[str] = []

        if IMAGES_ENDPOINT_MARKER in endpoint:
            payload = self._build_images_payload(request)
            response = await context.guard(
                post_json(
                    url=endpoint,
                    payload=payload,
                    headers=headers,
                    timeout_sec=timeout_sec,
                    source="Custom",
                )
            )
            data = response["data"]
            images = extract_openai_images(data)
            if not images:
                raise ResponseParseError(
                    "Custom endpoint returned no valid image content.",
                    detail={"response": data},
                )
            warnings.extend(count_mismatch_warning(len(images), payload["n"]))
        else:
            payload = await self._build_chat_payload(request, timeout_sec=timeout_sec)
            response = await context.guard(
                post_json(
                    url=endpoint,
                    payload=payload,
                    headers=headers,
                    timeout_sec=timeout_sec,
                    source="Custom",
                )
            )
            data = response["data"]
            message = get_dict_value(first_list_item(data.get("choices")), "message")
            images = extract_chat_message_images(message)
            if not images:
                content = message_text(message)
                images = scan_image_urls(content)
                if not images:
                    # 上游只回了文本时，把原始回复带回给调用方。
                    raise ResponseParseError(
                        content or json.dumps(data, ensure_ascii=False),
                        detail={"endpoint": endpoint, "content": content},
                    )
            if request.batch_count and request.batch_count > 1:
                warnings.append("chat endpoints return a single reply; batch_count ignored.")

        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=payload["model"],
                elapsed_ms=response["elapsed_ms"],
            ),
            warnings=warnings,
        )

    async def list_models(self, routing: RoutingContext) -> list[str]:
        if not routing.base_url.strip():
            return []
        try:
            response = await get_json(
                url=resolve_models_url(routing.base_url),
                headers=bearer_headers(routing.api_key),
                timeout_sec=self.request_timeout(routing),
                source="Custom",
                require_object=False,
            )
        except GenerationException as exc:
            logger.warning("custom.list_models_failed", {"error": str(exc)})
            return []
        data = response["data"]
        models = (data.get("data") or data.get("models")) if isinstance(data, dict) else data
        if not isinstance(models, list):
            return []
        names: list[str] = []
        for item in models:
            if isinstance(item, dict):
                name = item.get("id") or item.get("name")
                if name:
                    names.append(str(name))
            elif isinstance(item, str):
                names.append(item)
        return names
