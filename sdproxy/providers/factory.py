from __future__ import annotations

from collections.abc import Callable

from ..config import ProxySettings
from ..utils.errors import UnknownBackendError
from .a1111 import A1111Adapter
from .base import ProviderAdapter
from .comfyui import ComfyUIAdapter
from .custom_chat import CustomChatAdapter
from .dezgo import DezgoAdapter
from .gemini import GeminiAdapter
from .horde import HordeAdapter
from .nanogpt import NanoGPTAdapter
from .novelai import NovelAIAdapter
from .openai import OpenAIAdapter
from .openrouter import OpenRouterAdapter
from .pixai import PixAIAdapter
from .pollinations import PollinationsAdapter
from .replicate import ReplicateAdapter

AdapterBuilder = Callable[[ProxySettings], ProviderAdapter]


def _build_local(settings: ProxySettings) -> ProviderAdapter:
    # 本地出图耗时较长，至少给 300 秒。
    return A1111Adapter(
        base_url=settings.local_url,
        timeout_sec=max(settings.timeout_sec, 300),
    )


def _build_comfyui(settings: ProxySettings) -> ProviderAdapter:
    return ComfyUIAdapter(base_url=settings.comfyui_url, timeout_sec=settings.timeout_sec)


_ADAPTER_BUILDERS: dict[str, AdapterBuilder] = {
    "local": _build_local,
    "comfyui": _build_comfyui,
    "pollinations": lambda settings: PollinationsAdapter(timeout_sec=settings.timeout_sec),
    "nanogpt": lambda settings: NanoGPTAdapter(timeout_sec=settings.timeout_sec),
    "pixai": lambda settings: PixAIAdapter(timeout_sec=settings.timeout_sec),
    "custom": lambda settings: CustomChatAdapter(timeout_sec=settings.timeout_sec),
    "novelai": lambda settings: NovelAIAdapter(timeout_sec=max(settings.timeout_sec, 180)),
    "dezgo": lambda settings: DezgoAdapter(timeout_sec=settings.timeout_sec),
    "openai": lambda settings: OpenAIAdapter(timeout_sec=max(settings.timeout_sec, 180)),
    "openrouter": lambda settings: OpenRouterAdapter(timeout_sec=settings.timeout_sec),
    "gemini": lambda settings: GeminiAdapter(timeout_sec=settings.timeout_sec),
    "horde": lambda settings: HordeAdapter(timeout_sec=settings.timeout_sec),
    "replicate": lambda settings: ReplicateAdapter(timeout_sec=settings.timeout_sec),
}


def build_provider_adapter(backend_id: str, settings: ProxySettings) -> ProviderAdapter:
    builder = _ADAPTER_BUILDERS.get(backend_id.strip().lower())
    if builder is not None:
        return builder(settings)
    raise UnknownBackendError(backend_id)


def build_adapter_registry(settings: ProxySettings) -> dict[str, ProviderAdapter]:
    """启动时一次性构建全部适配器；注册表此后只读。"""
    return {backend_id: builder(settings) for backend_id, builder in _ADAPTER_BUILDERS.items()}
