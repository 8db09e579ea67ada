from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, ClassVar

import pytest

from sdproxy.config import ProxySettings
from sdproxy.providers import (
    GeneratedImage,
    GenerationContext,
    GenerationDispatcher,
    GenerationRequest,
    GenerationResponse,
    RoutingContext,
    generate_image,
)
from sdproxy.providers.base import ProviderAdapter
from sdproxy.utils.errors import (
    GenerationErrorCode,
    InvalidRequestError,
    MissingCredentialError,
    ProviderError,
    UnknownBackendError,
)


@dataclass(slots=True)
class RecordingAdapter(ProviderAdapter):
    timeout_sec: int = 30
    calls: list[GenerationRequest] | None = None
    error: Exception | None = None

    backend_id: ClassVar[str] = "recording"
    display_name: ClassVar[str] = "Recording"

    async def generate(self, request, routing, context) -> GenerationResponse:
        if self.calls is not None:
            self.calls.append(request)
        if self.error is not None:
            raise self.error
        await asyncio.sleep(0)
        return GenerationResponse(images=[GeneratedImage.from_url("https://example.com/a.png")])


def _fail_on_network(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    calls: list[str] = []

    async def fake_send(method: str, *, url: str, **_: Any) -> Any:
        calls.append(url)
        raise AssertionError("no outbound call expected")

    monkeypatch.setattr("sdproxy.utils.http._send", fake_send)
    return calls


@pytest.mark.asyncio
async def test_dispatch_unknown_backend_raises() -> None:
    """验证：未注册的 backend_id 抛出 UnknownBackendError。"""
    dispatcher = GenerationDispatcher.from_settings(ProxySettings())

    with pytest.raises(UnknownBackendError) as exc_info:
        await dispatcher.dispatch(
            "midjourney",
            GenerationRequest(prompt="a cat"),
            RoutingContext(backend_id="midjourney"),
        )

    assert exc_info.value.code == GenerationErrorCode.UNKNOWN_BACKEND


@pytest.mark.asyncio
async def test_dispatch_empty_prompt_issues_no_outbound_call(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """验证：空提示词在校验阶段失败，不产生任何出站请求。"""
    calls = _fail_on_network(monkeypatch)
    dispatcher = GenerationDispatcher.from_settings(ProxySettings())

    with pytest.raises(InvalidRequestError):
        await dispatcher.dispatch(
            "local",
            GenerationRequest(prompt="   "),
            RoutingContext(backend_id="local"),
        )

    assert calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("backend_id", "credential"),
    [
        ("nanogpt", "api_key"),
        ("pixai", "api_key"),
        ("novelai", "api_key"),
        ("dezgo", "api_key"),
        ("gemini", "api_key"),
        ("replicate", "api_key"),
        ("custom", "base_url"),
    ],
)
async def test_dispatch_missing_credential_fails_fast(
    monkeypatch: pytest.MonkeyPatch,
    backend_id: str,
    credential: str,
) -> None:
    """验证：缺少必填凭据时抛出 MissingCredentialError，且没有出站请求。"""
    calls = _fail_on_network(monkeypatch)
    dispatcher = GenerationDispatcher.from_settings(ProxySettings())

    with pytest.raises(MissingCredentialError) as exc_info:
        await dispatcher.dispatch(
            backend_id,
            GenerationRequest(prompt="a cat"),
            RoutingContext(backend_id=backend_id, api_key="  "),
        )

    assert exc_info.value.credential == credential
    assert calls == []


@pytest.mark.asyncio
async def test_dispatch_passes_normalized_request_and_sets_request_id() -> None:
    """验证：适配器收到的是校验后的请求，响应元数据带上调度器分配的 request_id。"""
    calls: list[GenerationRequest] = []
    dispatcher = GenerationDispatcher({"recording": RecordingAdapter(calls=calls)})
    context = GenerationContext()

    response = await dispatcher.dispatch(
        "Recording",
        GenerationRequest(prompt="  a cat ", seed=-5, batch_count=0),
        RoutingContext(backend_id="recording"),
        context,
    )

    assert calls[0].prompt == "a cat"
    assert calls[0].seed is None
    assert calls[0].batch_count == 1
    assert response.metadata is not None
    assert response.metadata.provider == "recording"
    assert response.metadata.request_id == context.request_id


@pytest.mark.asyncio
async def test_dispatch_surfaces_adapter_error_unchanged() -> None:
    """验证：适配器错误原样抛出，调度器不重试也不回退。"""
    calls: list[GenerationRequest] = []
    error = ProviderError("upstream broke", status_code=500, retryable=True)
    dispatcher = GenerationDispatcher({"recording": RecordingAdapter(calls=calls, error=error)})

    with pytest.raises(ProviderError) as exc_info:
        await dispatcher.dispatch(
            "recording",
            GenerationRequest(prompt="a cat"),
            RoutingContext(backend_id="recording"),
        )

    assert exc_info.value is error
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_generate_image_routes_by_routing_backend_id() -> None:
    """验证：入口函数按 routing.backend_id 分发，pollinations 不需要任何网络请求。"""
    dispatcher = GenerationDispatcher.from_settings(ProxySettings())

    response = await generate_image(
        GenerationRequest(prompt="a cat"),
        RoutingContext(backend_id="pollinations"),
        dispatcher=dispatcher,
    )

    assert len(response.images) == 1
    assert "a%20cat" in response.images[0].url


@pytest.mark.asyncio
async def test_dispatch_is_safe_for_concurrent_calls() -> None:
    """验证：同一个调度器可被并发调用，每次调用拥有独立的 request_id。"""
    dispatcher = GenerationDispatcher({"recording": RecordingAdapter(calls=[])})

    responses = await asyncio.gather(
        *(
            dispatcher.dispatch(
                "recording",
                GenerationRequest(prompt=f"prompt {index}"),
                RoutingContext(backend_id="recording"),
            )
            for index in range(5)
        )
    )

    request_ids = {response.metadata.request_id for response in responses}
    assert len(request_ids) == 5


def test_list_backends_reports_credential_requirements() -> None:
    """验证：后端列表包含全部适配器及其凭据要求。"""
    dispatcher = GenerationDispatcher.from_settings(ProxySettings())

    backends = {backend.id: backend for backend in dispatcher.list_backends()}

    assert set(backends) == {
        "local",
        "comfyui",
        "pollinations",
        "nanogpt",
        "pixai",
        "custom",
        "novelai",
        "dezgo",
        "openai",
        "openrouter",
        "gemini",
        "horde",
        "replicate",
    }
    assert backends["nanogpt"].requires_api_key is True
    assert backends["custom"].requires_base_url is True
    assert backends["horde"].requires_api_key is False
    assert backends["pixai"].max_batch_count == 4
