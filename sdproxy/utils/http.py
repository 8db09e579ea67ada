from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from typing import Any, NamedTuple, TypedDict

import aiohttp

from .errors import (
    GenerationErrorCode,
    InvalidRequestError,
    ProviderError,
    ProviderTimeoutError,
    ResponseParseError,
)
from .log import StructuredLogEmitter

logger = logging.getLogger(__name__)
structured_log = StructuredLogEmitter(logger=logger)

SECRET_HEADER_KEYS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "apikey",
    "x-goog-api-key",
    "x-dezgo-key",
}


class JsonSuccessResponse(TypedDict):
    data: Any
    elapsed_ms: int


class BytesSuccessResponse(TypedDict):
    data: bytes
    mime: str
    elapsed_ms: int


class _RawResponse(NamedTuple):
    status: int
    body: bytes
    content_type: str
    elapsed_ms: int


def _mask_headers(headers: Mapping[str, str]) -> dict[str, str]:
    masked: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in SECRET_HEADER_KEYS:
            masked[key] = "<redacted>"
            continue
        masked[key] = value
    return masked


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)


async def _send(
    method: str,
    *,
    url: str,
    headers: Mapping[str, str],
    timeout_sec: float,
    source: str,
    payload: Any = None,
    params: Mapping[str, str] | None = None,
) -> _RawResponse:
    """发送一次 HTTP 请求并返回原始响应。

    约定：
    - 传输层错误映射为 `NETWORK_ERROR` / `TIMEOUT`
    - 非 2xx HTTP 响应映射为 `PROVIDER_ERROR`，携带状态码与响应体
    """
    if timeout_sec <= 0:
        raise InvalidRequestError(
            "timeout_sec must be > 0.",
            detail={"source": source, "url": url, "timeout_sec": timeout_sec},
        )

    masked_headers = _mask_headers(headers)
    started_at = time.perf_counter()
    request_error_detail = {
        "source": source,
        "method": method,
        "url": url,
        "timeout_sec": timeout_sec,
        "headers": masked_headers,
        "payload": payload,
    }
    structured_log.debug("http.request", request_error_detail)

    # 使用 total timeout，覆盖连接、读写和响应等待总耗时。
    timeout = aiohttp.ClientTimeout(total=timeout_sec)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(
                method,
                url,
                json=payload,
                params=params,
                headers=dict(headers),
            ) as response:
                body = await response.read()
                content_type = response.headers.get("Content-Type", "")
                status = response.status
                masked_response_headers = _mask_headers(dict(response.headers))
    except asyncio.TimeoutError as exc:
        raise ProviderTimeoutError(
            f"{source} request timed out.",
            detail={**request_error_detail, "elapsed_ms": _elapsed_ms(started_at)},
        ) from exc
    except aiohttp.ClientError as exc:
        raise ProviderError(
            f"{source} request failed.",
            code=GenerationErrorCode.NETWORK_ERROR,
            retryable=True,
            detail={
                **request_error_detail,
                "elapsed_ms": _elapsed_ms(started_at),
                "client_error": str(exc),
                "client_error_type": type(exc).__name__,
            },
        ) from exc

    elapsed_ms = _elapsed_ms(started_at)
    structured_log.debug(
        "http.response",
        {
            "source": source,
            "elapsed_ms": elapsed_ms,
            "status_code": status,
            "headers": masked_response_headers,
            "body_len": len(body),
        },
    )
    # HTTP 错误由状态码判断，保留响应体用于问题定位。
    if status >= 400:
        raise ProviderError(
            f"{source} HTTP {status}",
            status_code=status,
            body=body.decode("utf-8", errors="replace"),
            retryable=(status >= 500 or status == 429),
            detail={**request_error_detail, "elapsed_ms": elapsed_ms},
        )
    return _RawResponse(
        status=status,
        body=body,
        content_type=content_type,
        elapsed_ms=elapsed_ms,
    )


def _decode_json(
    raw: _RawResponse,
    *,
    url: str,
    source: str,
    require_object: bool,
) -> JsonSuccessResponse:
    # 网络链路成功后再解析 JSON，便于区分“传输错误”与“响应格式错误”。
    raw_text = raw.body.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ResponseParseError(
            f"{source} returned invalid JSON.",
            detail={"source": source, "url": url, "body": raw_text},
        ) from exc

    if require_object and not isinstance(data, dict):
        raise ResponseParseError(
            f"{source} response must be a JSON object.",
            detail={
                "source": source,
                "url": url,
                "response_type": type(data).__name__,
            },
        )

    result: JsonSuccessResponse = {"data": data, "elapsed_ms": raw.elapsed_ms}
    structured_log.debug("http.response.json", {"source": source, **result})
    return result


async def post_json(
    *,
    url: str,
    payload: Any,
    headers: Mapping[str, str],
    timeout_sec: float = 30,
    source: str = "Upstream",
) -> JsonSuccessResponse:
    """发送 JSON POST 请求，成功响应必须是 JSON object。"""
    raw = await _send(
        "POST",
        url=url,
        headers=headers,
        timeout_sec=timeout_sec,
        source=source,
        payload=payload,
    )
    return _decode_json(raw, url=url, source=source, require_object=True)


async def get_json(
    *,
    url: str,
    headers: Mapping[str, str] | None = None,
    params: Mapping[str, str] | None = None,
    timeout_sec: float = 30,
    source: str = "Upstream",
    require_object: bool = True,
) -> JsonSuccessResponse:
    """发送 GET 请求并解析 JSON；`require_object=False` 时允许顶层为数组。"""
    raw = await _send(
        "GET",
        url=url,
        headers=headers or {},
        timeout_sec=timeout_sec,
        source=source,
        params=params,
    )
    return _decode_json(raw, url=url, source=source, require_object=require_object)


async def post_bytes(
    *,
    url: str,
    payload: Any,
    headers: Mapping[str, str],
    timeout_sec: float = 60,
    source: str = "Upstream",
) -> BytesSuccessResponse:
    """发送 JSON POST 请求，并以原始字节返回响应体（图片、压缩包等）。"""
    raw = await _send(
        "POST",
        url=url,
        headers=headers,
        timeout_sec=timeout_sec,
        source=source,
        payload=payload,
    )
    return {
        "data": raw.body,
        "mime": raw.content_type.split(";", 1)[0].strip().lower(),
        "elapsed_ms": raw.elapsed_ms,
    }


async def get_bytes(
    *,
    url: str,
    headers: Mapping[str, str] | None = None,
    timeout_sec: float = 60,
    source: str = "Upstream",
) -> BytesSuccessResponse:
    raw = await _send(
        "GET",
        url=url,
        headers=headers or {},
        timeout_sec=timeout_sec,
        source=source,
    )
    return {
        "data": raw.body,
        "mime": raw.content_type.split(";", 1)[0].strip().lower(),
        "elapsed_ms": raw.elapsed_ms,
    }
