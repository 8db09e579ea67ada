from __future__ import annotations

import copy

from sdproxy.providers.workflow import find_placeholders, substitute_placeholders

VALUES = {
    "%prompt%": "a red fox",
    "%negative_prompt%": "blurry",
    "%seed%": 1234,
    "%steps%": 20,
    "%cfg%": 6.5,
    "%width%": 768,
}


def _workflow() -> dict[str, object]:
    return {
        "3": {
            "class_type": "KSampler",
            "inputs": {"seed": "%seed%", "steps": "%steps%", "cfg": "%cfg%", "model": ["4", 0]},
        },
        "6": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": "masterpiece, %prompt%, seed %seed%"},
        },
        "7": {"class_type": "CLIPTextEncode", "inputs": {"text": "%negative_prompt%"}},
        "notes": ["%width%", {"deep": {"deeper": "%prompt%"}}, None, 3],
    }


def test_substitute_placeholders_keeps_types_for_exact_tokens() -> None:
    """验证：整个字段恰好是标记时保留数值类型，嵌在文本中时按字符串替换。"""
    result = substitute_placeholders(_workflow(), VALUES)

    assert result["3"]["inputs"]["seed"] == 1234
    assert result["3"]["inputs"]["steps"] == 20
    assert result["3"]["inputs"]["cfg"] == 6.5
    assert result["6"]["inputs"]["text"] == "masterpiece, a red fox, seed 1234"
    assert result["7"]["inputs"]["text"] == "blurry"


def test_substitute_placeholders_preserves_structure_and_input() -> None:
    """验证：键名与嵌套结构不变，非字符串叶子原样保留，调用方的原始图不被修改。"""
    workflow = _workflow()
    snapshot = copy.deepcopy(workflow)

    result = substitute_placeholders(workflow, VALUES)

    assert workflow == snapshot
    assert result.keys() == workflow.keys()
    assert result["3"]["inputs"]["model"] == ["4", 0]
    assert result["notes"] == [768, {"deep": {"deeper": "a red fox"}}, None, 3]


def test_find_placeholders_reports_unresolved_tokens() -> None:
    """验证：能列出图中剩余的已知标记。"""
    result = substitute_placeholders(_workflow(), {"%prompt%": "x"})

    assert find_placeholders(result) == {"%seed%", "%steps%", "%cfg%", "%negative_prompt%", "%width%"}
    assert find_placeholders(substitute_placeholders(_workflow(), VALUES)) == set()


def test_substitute_placeholders_does_not_expand_markers_inside_values() -> None:
    """验证：替换进来的提示词本身含有标记时不会被再次展开。"""
    result = substitute_placeholders(
        {"text": "%prompt%, seed %seed%", "exact": "%prompt%"},
        {"%prompt%": "50%seed% off", "%seed%": 7},
    )

    assert result == {"text": "50%seed% off, seed 7", "exact": "50%seed% off"}
