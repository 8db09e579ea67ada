"""PixAI 适配器：创建任务后按 2 秒间隔轮询任务状态。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from ..utils.dicts import get_dict_value
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
    map_sampler,
    parse_image_reference,
)

PIXAI_TASK_URL = "https://api.pixai.art/v1/task"
DEFAULT_MODEL_ID = "1648918127446573124"
DEFAULT_WIDTH = 512
DEFAULT_HEIGHT = 768

PIXAI_SAMPLER_NAMES = {
    "euler_ancestral": "Euler a",
    "euler_a": "Euler a",
    "euler": "Euler",
    "dpmpp_2m": "DPM++ 2M Karras",
    "dpmpp_sde": "DPM++ SDE Karras",
    "dpmpp_2m_sde": "DPM++ 2M SDE Karras",
    "ddim": "DDIM",
}


def build_task_parameters(request: GenerationRequest, *, batch_size: int) -> dict[str, Any]:
    params: dict[str, Any] = {
        "prompts": request.prompt,
        "modelId": request.model or DEFAULT_MODEL_ID,
        "width": request.width or DEFAULT_WIDTH,
        "height": request.height or DEFAULT_HEIGHT,
        "batchSize": batch_size,
    }
    if request.negative_prompt:
        params["negativePrompts"] = request.negative_prompt
    if request.steps:
        params["samplingSteps"] = request.steps
    if request.cfg_scale:
        params["cfgScale"] = request.cfg_scale
    if request.sampler:
        params["samplingMethod"] = map_sampler(request.sampler, PIXAI_SAMPLER_NAMES, "")
    if request.seed is not None:
        params["seed"] = request.seed
    if request.loras:
        params["lora"] = {lora.id: lora.weight for lora in request.loras}
    return params


def _media_urls(task: Any) -> list[GeneratedImage]:
    urls = get_dict_value(task, "outputs", "mediaUrls")
    if not isinstance(urls, list):
        return []
    return [
        parse_image_reference(url, source="PixAI", url_only=True)
        for url in urls
        if isinstance(url, str) and url
    ]


@dataclass(slots=True)
class PixAIAdapter(ProviderAdapter):
    timeout_sec: int = 60
    poll_interval_sec: float = 2.0
    max_poll_attempts: int = 60

    backend_id: ClassVar[str] = "pixai"
    display_name: ClassVar[str] = "PixAI"
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
        batch_size = clamp_batch_count(request, self.max_batch_count)
        params = build_task_parameters(request, batch_size=batch_size)

        created = await context.guard(
            post_json(
                url=PIXAI_TASK_URL,
                payload={"parameters": params},
                headers=headers,
                timeout_sec=timeout_sec,
                source="PixAI",
            )
        )
        task_id = created["data"].get("id")
        if not task_id:
            raise ProviderError(
                str(created["data"].get("message") or "PixAI did not return a task id."),
                detail={"response": created["data"]},
            )
        task_id = str(task_id)

        async def poll(attempt: int) -> PollOutcome:
            response = await get_json(
                url=f"{PIXAI_TASK_URL}/{task_id}",
                headers=headers,
                timeout_sec=timeout_sec,
                source="PixAI",
            )
            task = response["data"]
            status = task.get("status")
            if status == "completed":
                images = _media_urls(task)
                # 状态可能先于 mediaUrls 变为 completed，拿到地址前继续轮询。
                return PollOutcome.completed(images) if images else PollOutcome.pending()
            if status in {"failed", "cancelled"}:
                return PollOutcome.failed(
                    f"PixAI task {status}.",
                    detail={"task_id": task_id, "status": status},
                )
            return PollOutcome.pending()

        images = await poll_until_complete(
            poll,
            policy=PollPolicy(
                interval_sec=self.poll_interval_sec,
                max_attempts=self.max_poll_attempts,
            ),
            context=context,
            source="PixAI",
            job_id=task_id,
        )
        warnings = count_mismatch_warning(len(images), batch_size)
        if request.init_image is not None or request.reference_images:
            warnings.append("image inputs are not supported by pixai and ignored.")
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=params["modelId"],
                extra={"task_id": task_id},
            ),
            warnings=warnings,
        )
