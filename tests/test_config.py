from __future__ import annotations

import pytest

from sdproxy.config import ProxySettings, load_proxy_settings, read_proxy_settings


def test_read_proxy_settings_defaults() -> None:
    """验证：空映射得到全部默认值。"""
    assert read_proxy_settings({}) == ProxySettings()


def test_read_proxy_settings_normalizes_values() -> None:
    """验证：数字字段从字符串转换，后端标识小写，日志级别大写，空值与未知字段忽略。"""
    settings = read_proxy_settings(
        {
            "host": " 0.0.0.0 ",
            "port": "8080",
            "timeout_sec": 30,
            "default_backend": "ComfyUI",
            "chat_backend": "",
            "log_level": "debug",
            "local_url": None,
            "unknown": "ignored",
        }
    )

    assert settings.host == "0.0.0.0"
    assert settings.port == 8080
    assert settings.timeout_sec == 30
    assert settings.default_backend == "comfyui"
    assert settings.chat_backend == "pollinations"
    assert settings.log_level == "DEBUG"
    assert settings.local_url == "http://127.0.0.1:7860"


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"port": "abc"}, "port must be an integer"),
        ({"port": 0}, "port must be > 0"),
        ({"timeout_sec": -5}, "timeout_sec must be > 0"),
    ],
)
def test_read_proxy_settings_rejects_invalid_numbers(raw: dict[str, object], message: str) -> None:
    """验证：端口与超时必须是正整数。"""
    with pytest.raises(ValueError, match=message):
        read_proxy_settings(raw)


def test_read_proxy_settings_requires_mapping() -> None:
    """验证：非映射输入直接报错。"""
    with pytest.raises(TypeError, match="mapping"):
        read_proxy_settings(["port", 1])


def test_load_proxy_settings_reads_prefixed_environment() -> None:
    """验证：只读取 SDPROXY_ 前缀的环境变量。"""
    settings = load_proxy_settings(
        {
            "SDPROXY_PORT": "4000",
            "SDPROXY_COMFYUI_URL": "http://gpu-box:8188",
            "SDPROXY_DEFAULT_BACKEND": "pollinations",
            "PORT": "9999",
        }
    )

    assert settings.port == 4000
    assert settings.comfyui_url == "http://gpu-box:8188"
    assert settings.default_backend == "pollinations"
