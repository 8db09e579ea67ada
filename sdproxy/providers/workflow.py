"""工作流图的占位符替换。

调用方提交完整的节点图，图中任意字符串字段都可以包含 `%token%` 标记，
这里递归遍历整棵树并返回一棵新树；调用方持有的原始结构不会被修改。
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

PLACEHOLDER_TOKENS = (
    "%prompt%",
    "%negative_prompt%",
    "%seed%",
    "%steps%",
    "%cfg%",
    "%width%",
    "%height%",
    "%sampler%",
    "%scheduler%",
    "%model%",
    "%batch_size%",
    "%denoise%",
)


def _substitute_text(text: str, values: Mapping[str, Any]) -> Any:
    # 整个字段恰好是一个标记时保留原始类型，数值字段（seed、steps 等）不会被字符串化。
    if text in values:
        return values[text]
    if not values:
        return text
    # 单次扫描，替换进来的值里即使含有标记也不会被再次展开。
    tokens = sorted(values, key=len, reverse=True)
    pattern = re.compile("|".join(re.escape(token) for token in tokens))
    return pattern.sub(lambda match: str(values[match.group(0)]), text)


def substitute_placeholders(node: Any, values: Mapping[str, Any]) -> Any:
    """递归替换 `%token%`；键名与嵌套结构保持不变。"""
    if isinstance(node, Mapping):
        return {key: substitute_placeholders(item, values) for key, item in node.items()}
    if isinstance(node, list):
        return [substitute_placeholders(item, values) for item in node]
    if isinstance(node, str):
        return _substitute_text(node, values)
    return node


def find_placeholders(node: Any) -> set[str]:
    """列出图中仍然出现的已知标记，用于诊断日志。"""
    found: set[str] = set()
    if isinstance(node, Mapping):
        for item in node.values():
            found |= find_placeholders(item)
    elif isinstance(node, list):
        for item in node:
            found |= find_placeholders(item)
    elif isinstance(node, str):
        found |= {token for token in PLACEHOLDER_TOKENS if token in node}
    return found
