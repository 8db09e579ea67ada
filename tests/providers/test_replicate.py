from __future__ import annotations

from typing import Any

import pytest

from sdproxy.providers.context import GenerationContext
from sdproxy.providers.replicate import (
    REPLICATE_API_URL,
    ReplicateAdapter,
    build_prediction_input,
    parse_log_progress,
    resolve_prediction_target,
)
from sdproxy.providers.schema import GenerationRequest, RoutingContext
from sdproxy.utils.errors import ProviderError, ResponseParseError

ROUTING = RoutingContext(backend_id="replicate", api_key="r8_token")


def _fake_replicate(monkeypatch: pytest.MonkeyPatch, predictions: list[dict[str, Any]]) -> dict[str, Any]:
    captured: dict[str, Any] = {"poll_urls": []}

    async def fake_post_json(*, url: str, payload: dict[str, Any], **_: Any) -> dict[str, Any]:
        captured.update(url=url, payload=payload)
        return {"data": {"id": "pred-1", "status": "starting"}, "elapsed_ms": 5}

    async def fake_get_json(*, url: str, **_: Any) -> dict[str, Any]:
        captured["poll_urls"].append(url)
        index = min(len(captured["poll_urls"]), len(predictions)) - 1
        return {"data": predictions[index], "elapsed_ms": 1}

    monkeypatch.setattr("sdproxy.providers.replicate.post_json", fake_post_json)
    monkeypatch.setattr("sdproxy.providers.replicate.get_json", fake_get_json)
    return captured


def test_resolve_prediction_target() -> None:
    """验证：带版本号的模型走通用 predictions 端点。"""
    assert resolve_prediction_target("owner/model") == (
        f"{REPLICATE_API_URL}/models/owner/model/predictions",
        {},
    )
    assert resolve_prediction_target("owner/model:abc123") == (
        f"{REPLICATE_API_URL}/predictions",
        {"version": "abc123"},
    )


def test_build_prediction_input_merges_provider_options() -> None:
    """验证：通用参数映射为 Replicate 输入字段，provider_options 覆盖同名字段。"""
    prediction_input = build_prediction_input(
        GenerationRequest(
            prompt="a city",
            width=768,
            height=768,
            seed=0,
            provider_options={"output_format": "png", "num_outputs": 1},
        ),
        count=2,
    )

    assert prediction_input == {
        "prompt": "a city",
        "num_outputs": 1,
        "width": 768,
        "height": 768,
        "seed": 0,
        "output_format": "png",
    }


@pytest.mark.parametrize(
    ("logs", "expected"),
    [
        (None, None),
        ("loading model", None),
        (" 10%|█         | 2/20\n 45%|████▌     | 9/20", 0.45),
        ("100%|██████████| 20/20", 1.0),
    ],
)
def test_parse_log_progress(logs: Any, expected: float | None) -> None:
    """验证：从 tqdm 日志中取最后一个百分比作为进度。"""
    assert parse_log_progress(logs) == expected


@pytest.mark.asyncio
async def test_replicate_polls_until_succeeded(monkeypatch: pytest.MonkeyPatch) -> None:
    """验证：prediction 成功后返回输出 URL。"""
    captured = _fake_replicate(
        monkeypatch,
        [
            {"status": "processing", "logs": " 50%|█████     | 2/4"},
            {
                "status": "succeeded",
                "output": ["https://replicate.delivery/a.webp", "https://replicate.delivery/b.webp"],
            },
        ],
    )

    response = await ReplicateAdapter(poll_interval_sec=0).generate(
        GenerationRequest(prompt="a city", batch_count=2),
        ROUTING,
        GenerationContext(),
    )

    assert captured["url"] == f"{REPLICATE_API_URL}/models/black-forest-labs/flux-schnell/predictions"
    assert captured["payload"]["input"]["num_outputs"] == 2
    assert captured["poll_urls"] == [f"{REPLICATE_API_URL}/predictions/pred-1"] * 2
    assert len(response.images) == 2
    assert response.metadata.extra == {"prediction_id": "pred-1"}


@pytest.mark.asyncio
async def test_replicate_failed_prediction_uses_upstream_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """验证：prediction 失败时使用上游 error 作为错误消息。"""
    _fake_replicate(monkeypatch, [{"status": "failed", "error": "NSFW content detected"}])

    with pytest.raises(ProviderError, match="NSFW content detected"):
        await ReplicateAdapter(poll_interval_sec=0).generate(
            GenerationRequest(prompt="a city"),
            ROUTING,
            GenerationContext(),
        )


@pytest.mark.asyncio
async def test_replicate_invalid_output_is_parse_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """验证：输出既不是 URL 也不是合法 base64 时抛出 ResponseParseError。"""
    _fake_replicate(monkeypatch, [{"status": "succeeded", "output": ["/files/a.webp"]}])

    with pytest.raises(ResponseParseError, match="Replicate returned an invalid image reference"):
        await ReplicateAdapter(poll_interval_sec=0).generate(
            GenerationRequest(prompt="a city"),
            ROUTING,
            GenerationContext(),
        )
