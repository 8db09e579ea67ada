from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from ..resources import ResourceSpec
from ..resources.codec import (
    build_data_url,
    data_url_to_bytes,
    decode_base64_payload,
    encode_base64_payload,
)
from ..resources.mime import sniff_image_mime
from ..resources.normalize import normalize_mime
from ..utils.url import is_data_url, is_http_url

GeneratedImageKind = Literal["url", "inline"]


@dataclass(slots=True)
class LoraSpec:
    id: str
    """LoRA 标识（各供应商自行解释）"""
    weight: float = 0.7
    """叠加权重"""


@dataclass(slots=True)
class GenerationRequest:
    prompt: str
    """生图提示词，必填且非空"""
    negative_prompt: str = ""
    """反向提示词"""
    width: int | None = None
    """宽度；None 表示使用供应商默认值"""
    height: int | None = None
    """高度；None 表示使用供应商默认值"""
    steps: int | None = None
    cfg_scale: float | None = None
    sampler: str | None = None
    """采样器标记，按供应商映射表翻译，未知值原样透传"""
    scheduler: str | None = None
    seed: int | None = None
    """None 或负数表示由供应商随机"""
    batch_count: int | None = None
    """期望张数，有效值为 max(1, 请求值)，再按供应商上限截断"""
    model: str | None = None
    loras: list[LoraSpec] = field(default_factory=list)
    init_image: ResourceSpec | None = None
    """图生图 / 局部重绘的底图"""
    mask: ResourceSpec | None = None
    strength: float | None = None
    """图生图重绘强度，取值 [0, 1]"""
    reference_images: list[ResourceSpec] = field(default_factory=list)
    """多模态供应商使用的参考图"""
    provider_options: dict[str, Any] = field(default_factory=dict)
    """仅特定适配器解释的扩展字段（比例、质量档位、工作流等）"""


@dataclass(slots=True)
class RoutingContext:
    backend_id: str
    """选择适配器"""
    api_key: str = ""
    base_url: str = ""
    """自托管或自定义供应商的地址"""
    timeout_sec: int | None = None
    """单次 HTTP 请求超时覆盖值"""


@dataclass(slots=True)
class GeneratedImage:
    """一张输出图：要么是可访问的 URL，要么是内联字节，二者恰有其一。"""

    url: str = ""
    data: bytes = b""
    mime: str = ""

    def __post_init__(self) -> None:
        normalized_url = self.url.strip()
        if normalized_url and self.data:
            raise ValueError("generated image must not carry both url and data.")
        if not normalized_url and not self.data:
            raise ValueError("generated image requires url or data.")
        if normalized_url and not is_http_url(normalized_url):
            raise ValueError("generated image url must be http(s).")
        normalized_mime = normalize_mime(self.mime)
        if self.data and not normalized_mime:
            normalized_mime = sniff_image_mime(self.data)
        self.url = normalized_url
        self.mime = normalized_mime

    @property
    def kind(self) -> GeneratedImageKind:
        return "url" if self.url else "inline"

    @classmethod
    def from_url(cls, url: str) -> GeneratedImage:
        return cls(url=url)

    @classmethod
    def from_bytes(cls, data: bytes, *, mime: str = "") -> GeneratedImage:
        return cls(data=data, mime=mime)

    @classmethod
    def from_base64(cls, payload: str, *, mime: str = "") -> GeneratedImage:
        return cls(data=decode_base64_payload(payload), mime=mime)

    @classmethod
    def from_data_url(cls, data_url: str) -> GeneratedImage:
        data, mime = data_url_to_bytes(data_url)
        return cls(data=data, mime=mime)

    @classmethod
    def from_reference(cls, value: str, *, mime: str = "") -> GeneratedImage:
        """识别供应商返回的字符串：http(s) URL、data URL 或裸 base64。"""
        normalized = value.strip()
        if is_http_url(normalized):
            return cls.from_url(normalized)
        if is_data_url(normalized):
            return cls.from_data_url(normalized)
        return cls.from_base64(normalized, mime=mime)

    def to_base64(self) -> str:
        if not self.data:
            raise ValueError("url image has no inline data.")
        return encode_base64_payload(self.data)

    def to_data_url(self) -> str:
        return build_data_url(self.mime or "image/png", self.to_base64())

    def to_openai_dict(self) -> dict[str, str]:
        if self.url:
            return {"url": self.url}
        return {"b64_json": self.to_base64()}


@dataclass(slots=True)
class InferenceMetadata:
    provider: str
    """供应商标识。"""
    model: str = ""
    """实际请求使用的模型名。"""
    elapsed_ms: int | None = None
    """从发起请求到收到最终结果的耗时（毫秒）。"""
    request_id: str = ""
    """调度器分配的请求 ID，用于日志关联。"""
    extra: dict[str, Any] = field(default_factory=dict)
    """供应商特有的附加信息（任务 ID、实际种子等）。"""


@dataclass(slots=True)
class GenerationResponse:
    images: list[GeneratedImage]
    metadata: InferenceMetadata | None = None
    """推理元数据"""
    warnings: list[str] = field(default_factory=list)
    zero_results: bool = False
    """适配器显式声明“成功但无结果”时为 True，只有此时 images 才允许为空。"""

    def __post_init__(self) -> None:
        if not self.images and not self.zero_results:
            raise ValueError(
                "images must not be empty unless zero_results is signalled."
            )

    @classmethod
    def empty(
        cls,
        metadata: InferenceMetadata | None = None,
        warnings: list[str] | None = None,
    ) -> GenerationResponse:
        return cls(
            images=[],
            metadata=metadata,
            warnings=list(warnings or []),
            zero_results=True,
        )
