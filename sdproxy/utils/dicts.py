from __future__ import annotations

from typing import Any


def get_dict_value(data: Any, *keys: str) -> Any:
    """安全读取嵌套字典字段，路径不存在时返回 None。"""
    current = data
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def first_list_item(value: Any) -> Any:
    """返回列表首项；非列表或空列表返回 None。"""
    if isinstance(value, list) and value:
        return value[0]
    return None
