"""从二进制容器中切出内嵌 PNG。

部分供应商返回的不是 JSON，而是把多张 PNG 打包在一起的字节流（例如 stored 模式的 zip）。
这里不依赖容器格式本身：按 PNG 签名定位起点，再沿 chunk 结构走到 `IEND`，
结构异常时退回到直接搜索 `IEND` 标记。
"""

from __future__ import annotations

import struct
from collections.abc import Iterator

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PNG_MAGIC = PNG_SIGNATURE[:4]
IEND_MARKER = b"IEND"
# chunk = length(4) + type(4) + data(length) + crc(4)
_CHUNK_OVERHEAD = 12


def _walk_chunks(buffer: bytes, start: int) -> int | None:
    """从签名之后逐个 chunk 前进，返回 IEND chunk 结束位置；结构损坏时返回 None。"""
    pos = start + len(PNG_SIGNATURE)
    size = len(buffer)
    while pos + _CHUNK_OVERHEAD <= size:
        (length,) = struct.unpack(">I", buffer[pos : pos + 4])
        chunk_type = buffer[pos + 4 : pos + 8]
        if not chunk_type.isalpha():
            return None
        end = pos + _CHUNK_OVERHEAD + length
        if end > size:
            return None
        if chunk_type == IEND_MARKER:
            return end
        pos = end
    return None


def _scan_for_iend(buffer: bytes, start: int) -> int | None:
    marker = buffer.find(IEND_MARKER, start + len(PNG_MAGIC))
    if marker < 0:
        return None
    # IEND 之后紧跟 4 字节 CRC。
    end = marker + len(IEND_MARKER) + 4
    if end > len(buffer):
        return None
    return end


def iter_png_ranges(buffer: bytes) -> Iterator[tuple[int, int]]:
    """惰性产出每张内嵌 PNG 的 `(start, end)` 区间，end 为开区间。"""
    pos = 0
    while True:
        start = buffer.find(PNG_MAGIC, pos)
        if start < 0:
            return
        end = None
        if buffer.startswith(PNG_SIGNATURE, start):
            end = _walk_chunks(buffer, start)
        if end is None:
            end = _scan_for_iend(buffer, start)
        if end is None:
            return
        yield start, end
        pos = end


def carve_png_images(buffer: bytes) -> list[bytes]:
    return [buffer[start:end] for start, end in iter_png_ranges(buffer)]
