from __future__ import annotations

import base64
import binascii
from typing import NamedTuple
from urllib.parse import unquote_to_bytes

from .normalize import normalize_base64_payload, normalize_mime


def decode_base64_payload(value: str) -> bytes:
    """base64 => bytes 同时校验 value 是否有效"""
    normalized = normalize_base64_payload(value)
    try:
        return base64.b64decode(normalized, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise ValueError("base64 payload is invalid.") from exc


def encode_base64_payload(data: bytes) -> str:
    """bytes => base64"""
    return base64.b64encode(data).decode("ascii")


class DataUrl(NamedTuple):
    mime: str
    is_base64: bool
    payload: str


def parse_data_url(data_url: str) -> DataUrl:
    """解析 `data:<mime>[;param...][;base64],<payload>`。"""
    normalized_data_url = data_url.strip()
    if not normalized_data_url.startswith("data:"):
        raise ValueError("data_url must start with 'data:'.")

    # 按第一个逗号切分：data:[meta],[payload]
    header_and_data = normalized_data_url.removeprefix("data:")
    try:
        meta, payload = header_and_data.split(",", 1)
    except ValueError as exc:
        raise ValueError("data_url is invalid.") from exc

    tokens = [segment.strip() for segment in meta.split(";") if segment.strip()]
    is_base64 = any(token.lower() == "base64" for token in tokens)

    # MIME 只可能出现在第一段，例如 image/png；缺失时为空字符串。
    mime = ""
    if tokens:
        first = tokens[0]
        if "/" in first and "=" not in first:
            mime = normalize_mime(first)

    return DataUrl(mime=mime, is_base64=is_base64, payload=payload)


def data_url_to_bytes(data_url: str) -> tuple[bytes, str]:
    """data URL => (bytes, mime)；非 base64 负载按百分号编码解码。"""
    parsed = parse_data_url(data_url)
    if parsed.is_base64:
        content = decode_base64_payload(parsed.payload)
    else:
        content = unquote_to_bytes(parsed.payload)
    return content, parsed.mime


def data_url_to_inline(data_url: str, default_mime: str = "") -> tuple[str, str]:
    """data URL => (mime, 规范化 base64)，供需要内联 base64 字段的供应商使用。"""
    parsed = parse_data_url(data_url)
    mime = parsed.mime or normalize_mime(default_mime)
    if parsed.is_base64:
        # 先解码一次以校验负载，再输出标准 base64。
        return mime, encode_base64_payload(decode_base64_payload(parsed.payload))
    data, _ = data_url_to_bytes(data_url)
    return mime, encode_base64_payload(data)


def build_data_url(mime: str, base64_payload: str) -> str:
    normalized_mime = normalize_mime(mime)
    if not normalized_mime:
        raise ValueError("mime is required to build data URL.")
    normalized_base64 = normalize_base64_payload(base64_payload)
    return f"data:{normalized_mime};base64,{normalized_base64}"
