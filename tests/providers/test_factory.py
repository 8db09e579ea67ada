from __future__ import annotations

import pytest

from sdproxy.config import ProxySettings
from sdproxy.providers.a1111 import A1111Adapter
from sdproxy.providers.comfyui import ComfyUIAdapter
from sdproxy.providers.factory import build_adapter_registry, build_provider_adapter
from sdproxy.providers.pollinations import PollinationsAdapter
from sdproxy.utils.errors import UnknownBackendError


def _make_settings() -> ProxySettings:
    return ProxySettings(
        timeout_sec=45,
        local_url="http://gpu-box:7860",
        comfyui_url="http://gpu-box:8188",
    )


def test_build_provider_adapter_maps_settings() -> None:
    """验证：自托管后端使用配置中的默认地址，本地出图至少 300 秒超时。"""
    settings = _make_settings()

    local = build_provider_adapter("local", settings)
    comfyui = build_provider_adapter(" ComfyUI ", settings)

    assert isinstance(local, A1111Adapter)
    assert local.base_url == "http://gpu-box:7860"
    assert local.timeout_sec == 300
    assert isinstance(comfyui, ComfyUIAdapter)
    assert comfyui.base_url == "http://gpu-box:8188"
    assert comfyui.timeout_sec == 45


def test_build_provider_adapter_unknown_backend() -> None:
    """验证：未注册的后端抛出 UnknownBackendError。"""
    with pytest.raises(UnknownBackendError, match="Unknown backend"):
        build_provider_adapter("unknown-backend", _make_settings())


def test_build_adapter_registry_ids_match_adapters() -> None:
    """验证：注册表的键与适配器声明的 backend_id 一致。"""
    registry = build_adapter_registry(_make_settings())

    assert len(registry) == 13
    assert isinstance(registry["pollinations"], PollinationsAdapter)
    for backend_id, adapter in registry.items():
        assert adapter.backend_id == backend_id
