"""Replicate 适配器：创建 prediction 后轮询，直到 succeeded / failed / canceled。"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, ClassVar

from ..utils.errors import ProviderError
from ..utils.http import get_json, post_json
from .base import ProviderAdapter
from .context import GenerationContext
from .polling import PollOutcome, PollPolicy, poll_until_complete
from .schema import (
    GeneratedImage,
    GenerationRequest,
    GenerationResponse,
    InferenceMetadata,
    RoutingContext,
)
from .utils import (
    bearer_headers,
    clamp_batch_count,
    count_mismatch_warning,
    parse_image_reference,
)

REPLICATE_API_URL = "https://api.replicate.com/v1"
DEFAULT_MODEL = "black-forest-labs/flux-schnell"
# 日志中的 tqdm 进度条，例如 " 45%|████▌     | 9/20"
_PROGRESS_PATTERN = re.compile(r"(\d{1,3})%\|")


def build_prediction_input(request: GenerationRequest, *, count: int) -> dict[str, Any]:
    prediction_input: dict[str, Any] = {"prompt": request.prompt, "num_outputs": count}
    if request.negative_prompt:
        prediction_input["negative_prompt"] = request.negative_prompt
    if request.width and request.height:
        prediction_input["width"] = request.width
        prediction_input["height"] = request.height
    if request.steps:
        prediction_input["num_inference_steps"] = request.steps
    if request.cfg_scale:
        prediction_input["guidance_scale"] = request.cfg_scale
    if request.seed is not None:
        prediction_input["seed"] = request.seed
    prediction_input.update(request.provider_options)
    return prediction_input


def resolve_prediction_target(model: str) -> tuple[str, dict[str, Any]]:
    """`owner/name` 走模型端点；带 `:version` 时走通用 predictions 端点。"""
    if ":" in model:
        _, version = model.split(":", 1)
        return f"{REPLICATE_API_URL}/predictions", {"version": version}
    return f"{REPLICATE_API_URL}/models/{model}/predictions", {}


def parse_log_progress(logs: Any) -> float | None:
    if not isinstance(logs, str):
        return None
    matches = _PROGRESS_PATTERN.findall(logs)
    if not matches:
        return None
    return min(100, int(matches[-1])) / 100


def _prediction_images(output: Any) -> list[GeneratedImage]:
    items = output if isinstance(output, list) else [output]
    return [
        parse_image_reference(item, source="Replicate")
        for item in items
        if isinstance(item, str) and item.strip()
    ]


@dataclass(slots=True)
class ReplicateAdapter(ProviderAdapter):
    timeout_sec: int = 60
    poll_interval_sec: float = 1.0
    max_poll_attempts: int = 300
    max_wait_sec: float = 300.0

    backend_id: ClassVar[str] = "replicate"
    display_name: ClassVar[str] = "Replicate"
    requires_api_key: ClassVar[bool] = True
    max_batch_count: ClassVar[int] = 4

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        timeout_sec = self.request_timeout(routing)
        headers = bearer_headers(routing.api_key)
        model = request.model or DEFAULT_MODEL
        count = clamp_batch_count(request, self.max_batch_count)
        url, target = resolve_prediction_target(model)

        created = await context.guard(
            post_json(
                url=url,
                payload={**target, "input": build_prediction_input(request, count=count)},
                headers=headers,
                timeout_sec=timeout_sec,
                source="Replicate",
            )
        )
        prediction_id = created["data"].get("id")
        if not prediction_id:
            raise ProviderError(
                str(created["data"].get("detail") or "Replicate did not return a prediction id."),
                detail={"response": created["data"]},
            )

        async def poll(attempt: int) -> PollOutcome:
            response = await get_json(
                url=f"{REPLICATE_API_URL}/predictions/{prediction_id}",
                headers=headers,
                timeout_sec=timeout_sec,
                source="Replicate",
            )
            prediction = response["data"]
            status = prediction.get("status")
            if status == "succeeded":
                return PollOutcome.completed(_prediction_images(prediction.get("output")))
            if status in {"failed", "canceled"}:
                return PollOutcome.failed(
                    str(prediction.get("error") or f"Replicate prediction {status}."),
                    detail={"prediction_id": prediction_id, "status": status},
                )
            return PollOutcome.pending(progress=parse_log_progress(prediction.get("logs")))

        images = await poll_until_complete(
            poll,
            policy=PollPolicy(
                interval_sec=self.poll_interval_sec,
                max_attempts=self.max_poll_attempts,
                max_wait_sec=self.max_wait_sec,
            ),
            context=context,
            source="Replicate",
            job_id=str(prediction_id),
        )
        warnings = count_mismatch_warning(len(images), count)
        if request.init_image is not None or request.reference_images:
            warnings.append("image inputs are passed only through provider_options on replicate.")
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=model,
                extra={"prediction_id": prediction_id},
            ),
            warnings=warnings,
        )
