from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Iterable, Mapping
from typing import Any, TypeVar

from ..utils.dicts import get_dict_value
from ..utils.errors import ResponseParseError
from .context import GenerationContext
from .schema import GeneratedImage, GenerationRequest

T = TypeVar("T")

MAX_SEED = 2**32 - 1


def map_sampler(token: str | None, table: Mapping[str, str], default: str) -> str:
    """按供应商映射表翻译采样器；空值取默认值，未知值原样透传。"""
    if token is None or not token.strip():
        return default
    normalized = token.strip()
    return table.get(normalized.lower(), normalized)


def resolve_seed(seed: int | None, upper: int = MAX_SEED) -> int:
    """请求未指定种子时本地生成随机种子。"""
    if seed is None or seed < 0:
        return random.randint(0, upper)
    return seed


def clamp_batch_count(request: GenerationRequest, maximum: int) -> int:
    return min(max(1, request.batch_count or 1), max(1, maximum))


def bearer_headers(api_key: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key.strip():
        headers["Authorization"] = f"Bearer {api_key.strip()}"
    return headers


async def run_concurrently(
    coros: Iterable[Awaitable[T]],
    *,
    context: GenerationContext | None = None,
) -> list[T]:
    """并发执行全部子请求并按提交顺序返回结果。

    任一子请求失败、调用方被取消或 `context` 的取消信号到达时，其余尚未完成的
    子请求会被取消并等待其退出，然后再向上抛出原始异常。
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        gathered = asyncio.gather(*tasks)
        if context is not None:
            return list(await context.guard(gathered))
        return list(await gathered)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def extract_openai_images(data: Any) -> list[GeneratedImage]:
    """提取 OpenAI `images/generations` 风格响应：`data[].url | data[].b64_json`。"""
    output: list[GeneratedImage] = []
    items = data.get("data") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return output
    for item in items:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        b64 = item.get("b64_json")
        try:
            if isinstance(url, str) and url.strip():
                output.append(GeneratedImage.from_reference(url))
            elif isinstance(b64, str) and b64.strip():
                output.append(GeneratedImage.from_reference(b64))
        except ValueError:
            continue
    return output


def extract_chat_message_images(message: Any) -> list[GeneratedImage]:
    """提取 chat 回复中的 `message.images[].image_url.url`（或 `images[].url`）。"""
    output: list[GeneratedImage] = []
    images = get_dict_value(message, "images")
    if not isinstance(images, list):
        return output
    for item in images:
        raw_url = get_dict_value(item, "image_url", "url") or get_dict_value(item, "url")
        if not isinstance(raw_url, str) or not raw_url.strip():
            continue
        try:
            output.append(GeneratedImage.from_reference(raw_url))
        except ValueError:
            continue
    return output


def parse_image_reference(
    value: str,
    *,
    source: str,
    mime: str = "",
    url_only: bool = False,
) -> GeneratedImage:
    """把供应商返回的图片字符串转为 GeneratedImage；格式无效时抛出 ResponseParseError。"""
    try:
        if url_only:
            return GeneratedImage.from_url(value)
        return GeneratedImage.from_reference(value, mime=mime)
    except ValueError as exc:
        raise ResponseParseError(
            f"{source} returned an invalid image reference: {exc}",
            detail={"value": value},
        ) from exc


def ensure_images(
    images: list[GeneratedImage],
    *,
    source: str,
    detail: Mapping[str, Any] | None = None,
) -> list[GeneratedImage]:
    if not images:
        raise ResponseParseError(
            f"{source} returned no valid image content.",
            detail=detail,
        )
    return images


def count_mismatch_warning(received: int, requested: int) -> list[str]:
    if received == requested:
        return []
    return [f"Upstream returned {received} images, different from requested {requested}."]
