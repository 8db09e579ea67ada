from __future__ import annotations

from typing import Any

import pytest

from sdproxy.providers.context import GenerationContext
from sdproxy.providers.nanogpt import NANOGPT_GENERATIONS_URL, NanoGPTAdapter
from sdproxy.providers.schema import GenerationRequest, RoutingContext
from sdproxy.resources import ResourceSpec
from sdproxy.utils.errors import ResponseParseError

PNG_B64 = "iVBORw0KGgo="


@pytest.mark.asyncio
async def test_nanogpt_payload_and_b64_images(monkeypatch: pytest.MonkeyPatch) -> None:
    """验证：请求体按 OpenAI 风格组装，b64_json 结果解码为内联图片。"""
    captured: dict[str, Any] = {}

    async def fake_post_json(
        *, url: str, payload: dict[str, Any], headers: dict[str, str], **_: Any
    ) -> dict[str, Any]:
        captured.update(url=url, payload=payload, headers=headers)
        return {
            "data": {"data": [{"b64_json": PNG_B64}, {"b64_json": PNG_B64}], "cost": 0.02},
            "elapsed_ms": 800,
        }

    monkeypatch.setattr("sdproxy.providers.nanogpt.post_json", fake_post_json)

    response = await NanoGPTAdapter().generate(
        GenerationRequest(
            prompt="a lake",
            width=1024,
            height=768,
            steps=4,
            seed=0,
            batch_count=2,
            init_image=ResourceSpec.from_data_url("data:image/png;base64,Zm9v"),
            strength=0.4,
        ),
        RoutingContext(backend_id="nanogpt", api_key="nano-key"),
        GenerationContext(),
    )

    assert captured["url"] == NANOGPT_GENERATIONS_URL
    assert captured["headers"]["Authorization"] == "Bearer nano-key"
    assert captured["payload"] == {
        "prompt": "a lake",
        "model": "flux-schnell",
        "n": 2,
        "response_format": "b64_json",
        "size": "1024x768",
        "num_inference_steps": 4,
        "seed": 0,
        "imageDataUrl": "data:image/png;base64,Zm9v",
        "strength": 0.4,
    }
    assert [image.kind for image in response.images] == ["inline", "inline"]
    assert response.metadata.extra == {"cost": 0.02}
    assert response.warnings == []


@pytest.mark.asyncio
async def test_nanogpt_fewer_images_warns(monkeypatch: pytest.MonkeyPatch) -> None:
    """验证：返回张数少于请求时给出告警而不是报错。"""

    async def fake_post_json(**_: Any) -> dict[str, Any]:
        return {"data": {"data": [{"url": "https://cdn.example.com/1.png"}]}, "elapsed_ms": 1}

    monkeypatch.setattr("sdproxy.providers.nanogpt.post_json", fake_post_json)

    response = await NanoGPTAdapter().generate(
        GenerationRequest(prompt="a lake", batch_count=3),
        RoutingContext(backend_id="nanogpt", api_key="k"),
        GenerationContext(),
    )

    assert response.images[0].url == "https://cdn.example.com/1.png"
    assert response.warnings == ["Upstream returned 1 images, different from requested 3."]


@pytest.mark.asyncio
async def test_nanogpt_without_images_is_parse_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """验证：响应中没有图片时抛出解析错误。"""

    async def fake_post_json(**_: Any) -> dict[str, Any]:
        return {"data": {"error": "quota"}, "elapsed_ms": 1}

    monkeypatch.setattr("sdproxy.providers.nanogpt.post_json", fake_post_json)

    with pytest.raises(ResponseParseError):
        await NanoGPTAdapter().generate(
            GenerationRequest(prompt="a lake"),
            RoutingContext(backend_id="nanogpt", api_key="k"),
            GenerationContext(),
        )
