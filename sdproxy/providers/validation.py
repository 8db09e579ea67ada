from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Any

from ..resources import ResourceSpec
from ..utils.errors import InvalidRequestError
from .schema import GenerationRequest, LoraSpec

DEFAULT_LORA_WEIGHT = 0.7

# 线上字段名 -> GenerationRequest 字段名；同一字段的多个别名按顺序取第一个出现的。
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "negative_prompt": ("negative_prompt", "negativePrompt"),
    "cfg_scale": ("cfg_scale", "cfgScale", "cfg"),
    "batch_count": ("batch_count", "batchCount", "n"),
    "provider_options": ("provider_options", "providerOptions"),
    "init_image": ("init_image", "initImage"),
    "reference_images": ("reference_images", "referenceImages"),
}


def _require_mapping(raw: Any) -> Mapping[str, Any]:
    """确保原始请求体是键值映射。"""
    if not isinstance(raw, Mapping):
        raise InvalidRequestError("Generation request must be a JSON object.")
    return raw


def _pick(raw: Mapping[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES.get(name, (name,)):
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _as_int(name: str, value: Any) -> int | None:
    if value is None:
        return None
    # bool 是 int 的子类，需要单独排除。
    if isinstance(value, bool):
        raise InvalidRequestError(f"{name} must be an integer.", detail={name: value})
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise InvalidRequestError(f"{name} must be an integer.", detail={name: value})


def _as_float(name: str, value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            pass
    raise InvalidRequestError(f"{name} must be a number.", detail={name: value})


def _as_str(name: str, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequestError(f"{name} must be a string.", detail={name: value})
    return value


def _parse_size(value: Any) -> tuple[int, int]:
    """解析 OpenAI 风格的 `size: "WxH"`。"""
    if not isinstance(value, str) or "x" not in value.lower():
        raise InvalidRequestError("size must look like 'WIDTHxHEIGHT'.", detail={"size": value})
    width, height = value.lower().split("x", 1)
    return _as_int("width", width), _as_int("height", height)


def _parse_image(name: str, value: Any) -> ResourceSpec | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequestError(f"{name} must be a string.")
    try:
        return ResourceSpec.parse(value)
    except ValueError as exc:
        raise InvalidRequestError(f"{name} is not a valid image: {exc}") from exc


def _parse_loras(value: Any) -> list[LoraSpec]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidRequestError("loras must be a list.")
    loras: list[LoraSpec] = []
    for index, item in enumerate(value):
        if not isinstance(item, Mapping) or not str(item.get("id", "")).strip():
            raise InvalidRequestError(f"loras[{index}] requires an id.")
        weight = _as_float(f"loras[{index}].weight", item.get("weight"))
        loras.append(
            LoraSpec(
                id=str(item["id"]).strip(),
                weight=DEFAULT_LORA_WEIGHT if weight is None else weight,
            )
        )
    return loras


def read_generation_request(raw: Any) -> GenerationRequest:
    """把线上 JSON 请求体读取为 GenerationRequest；只做类型转换，不做业务校验。"""
    body = _require_mapping(raw)

    width = _as_int("width", body.get("width"))
    height = _as_int("height", body.get("height"))
    if body.get("size") is not None and width is None and height is None:
        width, height = _parse_size(body["size"])

    raw_references = _pick(body, "reference_images")
    if raw_references is not None and not isinstance(raw_references, list):
        raise InvalidRequestError("reference_images must be a list.")
    references = [
        _parse_image(f"reference_images[{index}]", item)
        for index, item in enumerate(raw_references or [])
    ]

    provider_options = _pick(body, "provider_options")
    if provider_options is not None and not isinstance(provider_options, Mapping):
        raise InvalidRequestError("provider_options must be an object.")

    return GenerationRequest(
        prompt=_as_str("prompt", body.get("prompt")) or "",
        negative_prompt=_as_str("negative_prompt", _pick(body, "negative_prompt")) or "",
        width=width,
        height=height,
        steps=_as_int("steps", body.get("steps")),
        cfg_scale=_as_float("cfg_scale", _pick(body, "cfg_scale")),
        sampler=_as_str("sampler", body.get("sampler")),
        scheduler=_as_str("scheduler", body.get("scheduler")),
        seed=_as_int("seed", body.get("seed")),
        batch_count=_as_int("batch_count", _pick(body, "batch_count")),
        model=_as_str("model", body.get("model")) or None,
        loras=_parse_loras(body.get("loras")),
        init_image=_parse_image("init_image", _pick(body, "init_image")),
        mask=_parse_image("mask", body.get("mask")),
        strength=_as_float("strength", body.get("strength")),
        reference_images=[ref for ref in references if ref is not None],
        provider_options=dict(provider_options or {}),
    )


def validate_generation_request(request: GenerationRequest) -> GenerationRequest:
    """校验并返回规范化后的请求副本，不修改调用方对象。

    - prompt 不能为空；
    - 显式给出的 width/height/steps 必须为正数，缺省值保留为 None；
    - seed < 0 视为“由供应商随机”；
    - batch_count 取 max(1, 请求值)。
    """
    prompt = request.prompt.strip() if isinstance(request.prompt, str) else ""
    if not prompt:
        raise InvalidRequestError("prompt must not be empty.")

    for name in ("width", "height", "steps"):
        value = getattr(request, name)
        if value is not None and value <= 0:
            raise InvalidRequestError(f"{name} must be > 0.", detail={name: value})

    if request.strength is not None and not 0 <= request.strength <= 1:
        raise InvalidRequestError(
            "strength must be in [0, 1].", detail={"strength": request.strength}
        )

    seed = request.seed
    if seed is not None and seed < 0:
        seed = None

    batch_count = max(1, request.batch_count or 1)

    return dataclasses.replace(
        request,
        prompt=prompt,
        seed=seed,
        batch_count=batch_count,
        loras=list(request.loras),
        reference_images=list(request.reference_images),
        provider_options=dict(request.provider_options),
    )
