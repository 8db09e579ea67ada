"""OpenAI 兼容的 HTTP 入口（aiohttp.web）。

这里只负责把 HTTP 请求头/请求体翻译成 GenerationRequest + RoutingContext，
生成逻辑全部由 GenerationDispatcher 完成。
"""

from __future__ import annotations

import json
import time
from typing import Any

from aiohttp import web

from .config import ProxySettings, load_proxy_settings
from .providers import (
    GenerationContext,
    GenerationDispatcher,
    GenerationRequest,
    LoggingProgressSink,
    RoutingContext,
    generate_image,
    read_generation_request,
)
from .utils.errors import GenerationErrorCode, GenerationException, InvalidRequestError
from .utils.id import generate_id
from .utils.log import configure_logging, get_structured_logger

logger = get_structured_logger(__name__)

DISPATCHER_KEY = web.AppKey("dispatcher", GenerationDispatcher)
SETTINGS_KEY = web.AppKey("settings", ProxySettings)

SELF_HOSTED_BACKENDS = {"local", "comfyui"}
CHAT_IMAGE_KEYWORDS = ("generate", "draw", "create image")

ERROR_STATUS = {
    GenerationErrorCode.INVALID_REQUEST: 400,
    GenerationErrorCode.UNKNOWN_BACKEND: 400,
    GenerationErrorCode.MISSING_CREDENTIAL: 401,
    GenerationErrorCode.PROVIDER_ERROR: 502,
    GenerationErrorCode.NETWORK_ERROR: 502,
    GenerationErrorCode.PARSE_ERROR: 502,
    GenerationErrorCode.TIMEOUT: 504,
    GenerationErrorCode.CANCELLED: 499,
}


def error_response(exc: GenerationException) -> web.Response:
    return web.json_response(
        {
            "error": {
                "code": exc.code.value,
                "message": exc.message,
                "retryable": exc.retryable,
            }
        },
        status=ERROR_STATUS.get(exc.code, 500),
    )


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    try:
        return await handler(request)
    except GenerationException as exc:
        return error_response(exc)


def read_routing(request: web.Request, *, default_backend: str) -> RoutingContext:
    """从请求头读取路由信息。

    - X-Backend：后端标识
    - Authorization：`Bearer <key>`，也接受裸 key
    - X-Local-Url：local / comfyui 的自托管地址
    - X-Custom-Url：custom 后端的端点地址
    - X-Base-Url：其余云端后端的地址覆盖（可选）
    """
    backend_id = (request.headers.get("X-Backend") or default_backend).strip().lower()
    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        authorization = authorization[len("bearer ") :].strip()

    if backend_id == "custom":
        base_url = request.headers.get("X-Custom-Url", "")
    elif backend_id in SELF_HOSTED_BACKENDS:
        base_url = request.headers.get("X-Local-Url", "")
    else:
        base_url = request.headers.get("X-Base-Url", "")
    return RoutingContext(
        backend_id=backend_id,
        api_key=authorization,
        base_url=base_url.strip(),
    )


async def read_json_body(request: web.Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError as exc:
        raise InvalidRequestError("request body must be valid JSON.") from exc


def _message_text(message: Any) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            part["text"]
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    return ""


def is_image_intent(text: str) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in CHAT_IMAGE_KEYWORDS)


async def handle_images_generations(request: web.Request) -> web.Response:
    settings = request.app[SETTINGS_KEY]
    body = await read_json_body(request)
    generation_request = read_generation_request(body)
    routing = read_routing(request, default_backend=settings.default_backend)
    result = await generate_image(
        generation_request,
        routing,
        dispatcher=request.app[DISPATCHER_KEY],
        context=GenerationContext(sink=LoggingProgressSink(routing.backend_id)),
    )
    payload: dict[str, Any] = {
        "created": int(time.time()),
        "data": [image.to_openai_dict() for image in result.images],
    }
    if result.warnings:
        payload["warnings"] = result.warnings
    return web.json_response(payload)


async def handle_chat_completions(request: web.Request) -> web.Response:
    """兼容只会调用 chat 接口的前端：最后一条消息带生图意图时出一张图。"""
    settings = request.app[SETTINGS_KEY]
    body = await read_json_body(request)
    messages = body.get("messages") if isinstance(body, dict) else None
    last_text = _message_text(messages[-1]) if isinstance(messages, list) and messages else ""
    if not is_image_intent(last_text):
        raise InvalidRequestError("This endpoint is for image generation only.")

    routing = read_routing(request, default_backend=settings.chat_backend)
    try:
        result = await generate_image(
            GenerationRequest(prompt=last_text, batch_count=1),
            routing,
            dispatcher=request.app[DISPATCHER_KEY],
            context=GenerationContext(sink=LoggingProgressSink(routing.backend_id)),
        )
    except GenerationException as exc:
        # chat 客户端只展示文本，失败信息作为助手回复返回。
        content = f"Error: {exc.message}"
    else:
        image = result.images[0] if result.images else None
        if image is None:
            content = "Failed to generate image"
        else:
            content = f"![Generated Image]({image.url or image.to_data_url()})"

    return web.json_response(
        {
            "id": f"chatcmpl-{generate_id()}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": str(body.get("model") or routing.backend_id),
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
        }
    )


async def handle_models(request: web.Request) -> web.Response:
    backends = request.app[DISPATCHER_KEY].list_backends()
    return web.json_response(
        {"object": "list", "data": [backend.to_dict() for backend in backends]}
    )


async def handle_backend_models(request: web.Request) -> web.Response:
    backend_id = request.match_info["backend_id"]
    routing = read_routing(request, default_backend=backend_id)
    routing.backend_id = backend_id
    models = await request.app[DISPATCHER_KEY].list_models(backend_id, routing)
    return web.json_response({"object": "list", "data": [{"id": name} for name in models]})


def create_app(
    settings: ProxySettings | None = None,
    dispatcher: GenerationDispatcher | None = None,
) -> web.Application:
    settings = settings or ProxySettings()
    app = web.Application(middlewares=[error_middleware])
    app[SETTINGS_KEY] = settings
    app[DISPATCHER_KEY] = dispatcher or GenerationDispatcher.from_settings(settings)
    app.router.add_post("/v1/images/generations", handle_images_generations)
    app.router.add_post("/v1/chat/completions", handle_chat_completions)
    app.router.add_get("/v1/models", handle_models)
    app.router.add_get("/v1/backends/{backend_id}/models", handle_backend_models)
    return app


def main() -> None:
    settings = load_proxy_settings()
    configure_logging(settings.log_level)
    logger.info(
        "server.start",
        {"host": settings.host, "port": settings.port, "default_backend": settings.default_backend},
    )
    # 客户端断开时取消处理协程，轮询与并发子请求随之停止。
    web.run_app(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        handler_cancellation=True,
        print=None,
    )
