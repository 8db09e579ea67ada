from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from sdproxy.providers.context import GenerationContext
from sdproxy.providers.pollinations import (
    POLLINATIONS_MAX_SEED,
    PollinationsAdapter,
    build_pollinations_url,
)
from sdproxy.providers.schema import GenerationRequest, RoutingContext
from sdproxy.resources import ResourceSpec


def test_build_pollinations_url_encodes_prompt_as_path_segment() -> None:
    """验证：提示词按 URI 分量编码进路径，参数带上 nologo。"""
    url = build_pollinations_url(
        "a cat/dog?",
        width=640,
        height=480,
        seed=7,
        model="flux",
        negative_prompt="blurry",
    )
    parsed = urlparse(url)

    assert parsed.netloc == "image.pollinations.ai"
    assert parsed.path == "/prompt/a%20cat%2Fdog%3F"
    assert parse_qs(parsed.query) == {
        "width": ["640"],
        "height": ["480"],
        "seed": ["7"],
        "nologo": ["true"],
        "model": ["flux"],
        "negative_prompt": ["blurry"],
    }


@pytest.mark.asyncio
async def test_pollinations_single_image_url() -> None:
    """验证：单张请求返回一个 URL，不需要凭据。"""
    response = await PollinationsAdapter().generate(
        GenerationRequest(prompt="a cat", seed=3),
        RoutingContext(backend_id="pollinations"),
        GenerationContext(),
    )

    assert len(response.images) == 1
    image = response.images[0]
    assert image.kind == "url"
    assert "a%20cat" in image.url
    assert "nologo=true" in image.url
    assert "seed=3" in image.url
    assert response.metadata.elapsed_ms == 0


@pytest.mark.asyncio
async def test_pollinations_batch_uses_distinct_seeds_and_caps_count() -> None:
    """验证：多张时逐张递增种子，并按上限 4 截断。"""
    response = await PollinationsAdapter().generate(
        GenerationRequest(
            prompt="a cat",
            seed=10,
            batch_count=9,
            init_image=ResourceSpec.from_base64("Zm9v"),
        ),
        RoutingContext(backend_id="pollinations"),
        GenerationContext(),
    )

    seeds = [parse_qs(urlparse(image.url).query)["seed"][0] for image in response.images]
    assert seeds == ["10", "11", "12", "13"]
    assert response.warnings == ["image inputs are not supported by pollinations and ignored."]


@pytest.mark.asyncio
async def test_pollinations_batch_seeds_wrap_within_range() -> None:
    """验证：递增后的种子超过上限时回绕到 0。"""
    response = await PollinationsAdapter().generate(
        GenerationRequest(prompt="a cat", seed=POLLINATIONS_MAX_SEED, batch_count=2),
        RoutingContext(backend_id="pollinations"),
        GenerationContext(),
    )

    seeds = [parse_qs(urlparse(image.url).query)["seed"][0] for image in response.images]
    assert seeds == [str(POLLINATIONS_MAX_SEED), "0"]
