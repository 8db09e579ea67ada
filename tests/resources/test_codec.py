from __future__ import annotations

import pytest

from sdproxy.resources.codec import (
    build_data_url,
    data_url_to_bytes,
    data_url_to_inline,
    decode_base64_payload,
    parse_data_url,
)


def test_parse_data_url_base64() -> None:
    """验证：可正确解析带 base64 标记的 data URL 头信息。"""
    header = parse_data_url("data:image/png;charset=utf-8;base64,Zm9v")

    assert header.mime == "image/png"
    assert header.is_base64 is True
    assert header.payload == "Zm9v"


def test_data_url_to_bytes_for_plain_text() -> None:
    """验证：非 base64 的 data URL 按百分号编码解码。"""
    data, mime = data_url_to_bytes("data:text/plain,hello%20world")

    assert data == b"hello world"
    assert mime == "text/plain"


def test_data_url_to_inline_uses_default_mime_when_missing() -> None:
    """验证：data URL 未声明 MIME 时使用 default_mime，负载输出为标准 base64。"""
    mime, payload = data_url_to_inline("data:;base64,Zm9v", default_mime="image/png")

    assert mime == "image/png"
    assert payload == "Zm9v"


def test_data_url_without_comma_is_invalid() -> None:
    """验证：缺少逗号分隔的 data URL 被拒绝。"""
    with pytest.raises(ValueError, match="data_url is invalid"):
        parse_data_url("data:image/png;base64")


def test_decode_base64_payload_raises_for_invalid_input() -> None:
    """验证：非法 base64 输入会抛出 ValueError。"""
    with pytest.raises(ValueError, match="base64 payload is invalid"):
        decode_base64_payload("%%%")


def test_build_data_url_requires_mime() -> None:
    """验证：组装 data URL 时 MIME 不能为空。"""
    assert build_data_url("image/png", " Zm9v ") == "data:image/png;base64,Zm9v"
    with pytest.raises(ValueError, match="mime is required"):
        build_data_url("", "Zm9v")
