from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any

from dotenv import load_dotenv

ENV_PREFIX = "SDPROXY_"


@dataclass(slots=True)
class ProxySettings:
    host: str = "127.0.0.1"
    """HTTP 服务监听地址"""
    port: int = 3001
    """HTTP 服务监听端口"""
    timeout_sec: int = 120
    """单次上游请求的默认超时；适配器自身的默认值优先于此值"""
    local_url: str = "http://127.0.0.1:7860"
    """A1111/Forge 的默认地址，请求头 X-Local-Url 可覆盖"""
    comfyui_url: str = "http://127.0.0.1:8188"
    """ComfyUI 的默认地址，请求头 X-Local-Url 可覆盖"""
    default_backend: str = "local"
    """images/generations 未携带 X-Backend 时使用的后端"""
    chat_backend: str = "pollinations"
    """chat/completions 未携带 X-Backend 时使用的后端"""
    log_level: str = "INFO"


def _require_mapping(raw_config: Any) -> Mapping[str, Any]:
    """确保原始配置是键值映射。"""
    if not isinstance(raw_config, Mapping):
        raise TypeError("Proxy settings must be a mapping object.")
    return raw_config


def _as_positive_int(key: str, value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be an integer, got {value!r}.") from exc
    if number <= 0:
        raise ValueError(f"{key} must be > 0, got {number}.")
    return number


def read_proxy_settings(raw_config: Any) -> ProxySettings:
    """读取配置映射；缺省字段取默认值，未知字段忽略。"""
    cfg = _require_mapping(raw_config)
    known = {f.name for f in fields(ProxySettings)}
    payload: dict[str, Any] = {}
    for key, value in cfg.items():
        if key not in known or value is None or value == "":
            continue
        if key in {"port", "timeout_sec"}:
            payload[key] = _as_positive_int(key, value)
        else:
            payload[key] = str(value).strip()
    settings = ProxySettings(**payload)
    settings.log_level = settings.log_level.upper()
    settings.default_backend = settings.default_backend.lower()
    settings.chat_backend = settings.chat_backend.lower()
    return settings


def load_proxy_settings(environ: Mapping[str, str] | None = None) -> ProxySettings:
    """从 `SDPROXY_*` 环境变量读取配置；会先加载当前目录的 .env。"""
    if environ is None:
        load_dotenv()
        environ = os.environ
    raw = {
        key[len(ENV_PREFIX) :].lower(): value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX)
    }
    return read_proxy_settings(raw)
