from __future__ import annotations

import mimetypes
from urllib.parse import urlparse

import filetype

from .normalize import normalize_mime

IMAGE_EXTENSIONS = ("png", "jpg", "jpeg", "webp", "gif")


def guess_mime_from_http_url(url: str, default_mime: str = "") -> str:
    parsed = urlparse(url.strip())
    guessed_mime, _ = mimetypes.guess_type(parsed.path)
    return guessed_mime or default_mime


def sniff_image_mime(data: bytes, default_mime: str = "image/png") -> str:
    """根据字节头嗅探图片 MIME，无法识别时回退 default_mime。"""
    guessed = filetype.guess(data)
    mime = getattr(guessed, "mime", "") or ""
    if mime.startswith("image/"):
        return mime
    return normalize_mime(default_mime)
