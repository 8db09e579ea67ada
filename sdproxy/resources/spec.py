from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from ..utils.http import get_bytes
from ..utils.url import is_data_url, is_http_url
from .codec import (
    build_data_url,
    data_url_to_bytes,
    data_url_to_inline,
    decode_base64_payload,
    encode_base64_payload,
)
from .mime import guess_mime_from_http_url, sniff_image_mime
from .normalize import normalize_base64_payload, normalize_mime

ResourceKind = Literal["http_url", "data_url", "base64"]


@dataclass(slots=True)
class ResourceSpec:
    """调用方提交的编码图片（init_image / mask / reference_images）。

    `raw` 在构造期完成规范化：URL 去首尾空白，base64 去掉 `base64://` 前缀与空白。
    `mime` 允许为空，http URL 按扩展名推断，data URL 取头部声明。
    """

    kind: ResourceKind
    raw: str
    mime: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.raw, str):
            raise TypeError("raw must be str.")
        normalized_raw = self.raw.strip()
        if not normalized_raw:
            raise ValueError("raw resource value must not be empty.")

        normalized_mime = normalize_mime(self.mime)
        if self.kind == "http_url":
            if not is_http_url(normalized_raw):
                raise ValueError("http_url resource must be a valid http(s) URL.")
            normalized_mime = normalized_mime or guess_mime_from_http_url(
                normalized_raw
            )
        elif self.kind == "data_url":
            if not is_data_url(normalized_raw):
                raise ValueError("data_url resource must start with 'data:'.")
            if not normalized_mime:
                normalized_mime, _ = data_url_to_inline(normalized_raw)
        elif self.kind == "base64":
            normalized_raw = normalize_base64_payload(normalized_raw)
        else:
            raise ValueError(f"unsupported resource kind: {self.kind}")

        self.raw = normalized_raw
        self.mime = normalized_mime

    @classmethod
    def from_http_url(cls, raw: str, *, mime: str = "") -> ResourceSpec:
        return cls(kind="http_url", raw=raw, mime=mime)

    @classmethod
    def from_data_url(cls, raw: str, *, mime: str = "") -> ResourceSpec:
        return cls(kind="data_url", raw=raw, mime=mime)

    @classmethod
    def from_base64(cls, raw: str, *, mime: str = "") -> ResourceSpec:
        return cls(kind="base64", raw=raw, mime=mime)

    @classmethod
    def parse(cls, raw: str) -> ResourceSpec:
        """按前缀识别输入：http(s) URL、data URL，其余按 base64 处理。"""
        normalized = raw.strip()
        if is_http_url(normalized):
            return cls.from_http_url(normalized)
        if is_data_url(normalized):
            return cls.from_data_url(normalized)
        return cls.from_base64(normalized)

    async def to_bytes(self, *, timeout_sec: float = 60) -> tuple[bytes, str]:
        """取出原始字节与 MIME；http URL 会被下载。"""
        if self.kind == "http_url":
            res = await get_bytes(
                url=self.raw, timeout_sec=timeout_sec, source="ReferenceImage"
            )
            data = res["data"]
            return data, res["mime"] or self.mime or sniff_image_mime(data)
        if self.kind == "data_url":
            data, mime = data_url_to_bytes(self.raw)
            return data, mime or self.mime or sniff_image_mime(data)
        data = decode_base64_payload(self.raw)
        return data, self.mime or sniff_image_mime(data)

    async def to_base64(self, *, timeout_sec: float = 60) -> str:
        if self.kind == "base64":
            return self.raw
        if self.kind == "data_url":
            _, payload = data_url_to_inline(self.raw)
            return payload
        data, _ = await self.to_bytes(timeout_sec=timeout_sec)
        return encode_base64_payload(data)

    async def to_inline(self, *, timeout_sec: float = 60) -> tuple[str, str]:
        """返回 `(mime, base64)`；data URL 在本地解码，不产生网络请求。"""
        if self.kind == "data_url":
            return data_url_to_inline(self.raw, default_mime="image/png")
        data, mime = await self.to_bytes(timeout_sec=timeout_sec)
        return mime, encode_base64_payload(data)

    async def to_data_url(self, *, timeout_sec: float = 60) -> str:
        if self.kind == "data_url":
            return self.raw
        mime, payload = await self.to_inline(timeout_sec=timeout_sec)
        return build_data_url(mime or "image/png", payload)
