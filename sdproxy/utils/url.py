from __future__ import annotations

from urllib.parse import quote


def is_http_url(value: str) -> bool:
    """判断是否为 http(s) URL。"""
    return value.startswith("http://") or value.startswith("https://")


def is_data_url(value: str) -> bool:
    """判断是否为 data URL。"""
    return value.startswith("data:")


def encode_uri_component(value: str) -> str:
    """按浏览器 encodeURIComponent 的规则编码路径片段。"""
    return quote(value, safe="-_.!~*'()")


def join_url(base_url: str, path: str) -> str:
    """拼接基础地址与路径，避免出现重复或缺失的斜杠。"""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"
