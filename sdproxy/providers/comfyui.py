"""ComfyUI 适配器：提交节点图到 /prompt，再轮询 /history/{prompt_id}。"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar
from urllib.parse import urlencode

from ..utils.errors import GenerationException, InvalidRequestError, ProviderError
from ..utils.http import get_json, post_json
from ..utils.log import get_structured_logger
from ..utils.url import join_url
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
from .utils import clamp_batch_count, map_sampler, parse_image_reference, resolve_seed
from .workflow import find_placeholders, substitute_placeholders

logger = get_structured_logger(__name__)

COMFYUI_DEFAULT_BASE_URL = "http://127.0.0.1:8188"
DEFAULT_CHECKPOINT = "v1-5-pruned-emaonly.safetensors"
SAVE_NODE_ID = "9"
LORA_NODE_ID_START = 100
COMFYUI_MAX_SEED = 999_999_999

# ComfyUI 原生使用下划线标记；这里只兼容 WebUI 风格的显示名。
COMFYUI_SAMPLER_NAMES = {
    "euler a": "euler_ancestral",
    "euler": "euler",
    "dpm++ 2m": "dpmpp_2m",
    "dpm++ sde": "dpmpp_sde",
    "dpm++ 2m sde": "dpmpp_2m_sde",
    "ddim": "ddim",
    "unipc": "uni_pc",
}
DEFAULT_SAMPLER = "dpmpp_2m"
DEFAULT_SCHEDULER = "karras"
DEFAULT_WIDTH = 512
DEFAULT_HEIGHT = 768
DEFAULT_STEPS = 25
DEFAULT_CFG_SCALE = 7.0


def build_default_workflow(
    request: GenerationRequest,
    *,
    seed: int,
    batch_size: int,
) -> dict[str, Any]:
    """内置的 txt2img 节点图；每个 LoRA 串接一个 LoraLoader 节点。"""
    model_ref: list[Any] = ["4", 0]
    clip_ref: list[Any] = ["4", 1]
    workflow: dict[str, Any] = {
        "4": {
            "class_type": "CheckpointLoaderSimple",
            "inputs": {"ckpt_name": request.model or DEFAULT_CHECKPOINT},
        },
        "5": {
            "class_type": "EmptyLatentImage",
            "inputs": {
                "width": request.width or DEFAULT_WIDTH,
                "height": request.height or DEFAULT_HEIGHT,
                "batch_size": batch_size,
            },
        },
    }
    for index, lora in enumerate(request.loras):
        node_id = str(LORA_NODE_ID_START + index)
        workflow[node_id] = {
            "class_type": "LoraLoader",
            "inputs": {
                "lora_name": lora.id,
                "strength_model": lora.weight,
                "strength_clip": lora.weight,
                "model": model_ref,
                "clip": clip_ref,
            },
        }
        model_ref = [node_id, 0]
        clip_ref = [node_id, 1]

    workflow.update(
        {
            "3": {
                "class_type": "KSampler",
                "inputs": {
                    "seed": seed,
                    "steps": request.steps or DEFAULT_STEPS,
                    "cfg": request.cfg_scale or DEFAULT_CFG_SCALE,
                    "sampler_name": map_sampler(
                        request.sampler, COMFYUI_SAMPLER_NAMES, DEFAULT_SAMPLER
                    ),
                    "scheduler": request.scheduler or DEFAULT_SCHEDULER,
                    "denoise": 1,
                    "model": model_ref,
                    "positive": ["6", 0],
                    "negative": ["7", 0],
                    "latent_image": ["5", 0],
                },
            },
            "6": {
                "class_type": "CLIPTextEncode",
                "inputs": {"text": request.prompt, "clip": clip_ref},
            },
            "7": {
                "class_type": "CLIPTextEncode",
                "inputs": {"text": request.negative_prompt, "clip": clip_ref},
            },
            "8": {
                "class_type": "VAEDecode",
                "inputs": {"samples": ["3", 0], "vae": ["4", 2]},
            },
            SAVE_NODE_ID: {
                "class_type": "SaveImage",
                "inputs": {"filename_prefix": "sdproxy", "images": ["8", 0]},
            },
        }
    )
    return workflow


def build_placeholder_values(
    request: GenerationRequest,
    *,
    seed: int,
    batch_size: int,
) -> dict[str, Any]:
    return {
        "%prompt%": request.prompt,
        "%negative_prompt%": request.negative_prompt,
        "%seed%": seed,
        "%steps%": request.steps or DEFAULT_STEPS,
        "%cfg%": request.cfg_scale or DEFAULT_CFG_SCALE,
        "%width%": request.width or DEFAULT_WIDTH,
        "%height%": request.height or DEFAULT_HEIGHT,
        "%sampler%": map_sampler(request.sampler, COMFYUI_SAMPLER_NAMES, DEFAULT_SAMPLER),
        "%scheduler%": request.scheduler or DEFAULT_SCHEDULER,
        "%model%": request.model or DEFAULT_CHECKPOINT,
        "%batch_size%": batch_size,
        "%denoise%": 1.0 if request.strength is None else request.strength,
    }


def build_view_url(base_url: str, image: Mapping[str, Any]) -> str:
    query = urlencode(
        {
            "filename": image.get("filename", ""),
            "subfolder": image.get("subfolder") or "",
            "type": image.get("type") or "output",
        }
    )
    return f"{join_url(base_url, 'view')}?{query}"


def _collect_output_images(base_url: str, outputs: Any) -> list[GeneratedImage]:
    """汇总所有输出节点的图片；存在正式输出时忽略 temp 预览图。"""
    if not isinstance(outputs, Mapping):
        return []
    saved: list[GeneratedImage] = []
    previews: list[GeneratedImage] = []
    for node_output in outputs.values():
        images = node_output.get("images") if isinstance(node_output, Mapping) else None
        if not isinstance(images, list):
            continue
        for image in images:
            if not isinstance(image, Mapping) or not image.get("filename"):
                continue
            generated = parse_image_reference(
                build_view_url(base_url, image), source="ComfyUI", url_only=True
            )
            if image.get("type") == "temp":
                previews.append(generated)
            else:
                saved.append(generated)
    return saved or previews


def _status_messages(status: Mapping[str, Any]) -> list[Any]:
    messages = status.get("messages")
    if not isinstance(messages, list):
        return []
    return [item for item in messages if isinstance(item, list) and item and item[0] == "execution_error"]


@dataclass(slots=True)
class ComfyUIAdapter(ProviderAdapter):
    base_url: str = COMFYUI_DEFAULT_BASE_URL
    timeout_sec: int = 60
    poll_interval_sec: float = 1.0
    max_poll_attempts: int = 120

    backend_id: ClassVar[str] = "comfyui"
    display_name: ClassVar[str] = "Local ComfyUI"
    max_batch_count: ClassVar[int] = 8

    def _resolve_base_url(self, routing: RoutingContext) -> str:
        return (routing.base_url.strip() or self.base_url).rstrip("/")

    def build_workflow(self, request: GenerationRequest) -> tuple[dict[str, Any], list[str]]:
        """生成最终提交的节点图：调用方工作流做占位符替换，否则使用内置图。"""
        warnings: list[str] = []
        seed = resolve_seed(request.seed, COMFYUI_MAX_SEED)
        batch_size = clamp_batch_count(request, self.max_batch_count)

        custom_workflow = request.provider_options.get("workflow")
        if custom_workflow is not None:
            if not isinstance(custom_workflow, Mapping) or not custom_workflow:
                raise InvalidRequestError(
                    "provider_options.workflow must be a non-empty object.",
                    detail={"backend_id": self.backend_id},
                )
            values = build_placeholder_values(request, seed=seed, batch_size=batch_size)
            workflow = substitute_placeholders(custom_workflow, values)
            if request.loras:
                warnings.append("loras ignored because a custom workflow was supplied.")
        else:
            workflow = build_default_workflow(request, seed=seed, batch_size=batch_size)

        if request.init_image is not None or request.mask is not None:
            warnings.append("init_image/mask are not uploaded by comfyui and ignored.")
        if request.reference_images:
            warnings.append("reference_images are not supported by comfyui and ignored.")
        return workflow, warnings

    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse:
        base_url = self._resolve_base_url(routing)
        timeout_sec = self.request_timeout(routing)
        workflow, warnings = self.build_workflow(request)

        leftover = find_placeholders(workflow)
        if leftover:
            logger.warning(
                "comfyui.workflow.unresolved_placeholders",
                {"placeholders": sorted(leftover)},
            )

        submitted = await context.guard(
            post_json(
                url=join_url(base_url, "prompt"),
                payload={"prompt": workflow, "client_id": context.request_id},
                headers={"Content-Type": "application/json"},
                timeout_sec=timeout_sec,
                source="ComfyUI",
            )
        )
        prompt_id = submitted["data"].get("prompt_id")
        if not isinstance(prompt_id, str) or not prompt_id:
            raise ProviderError(
                "ComfyUI did not return a prompt_id.",
                detail={
                    "error": submitted["data"].get("error"),
                    "node_errors": submitted["data"].get("node_errors"),
                },
            )
        context.log(f"ComfyUI queued prompt {prompt_id}")

        async def poll(attempt: int) -> PollOutcome:
            response = await get_json(
                url=join_url(base_url, f"history/{prompt_id}"),
                timeout_sec=timeout_sec,
                source="ComfyUI",
            )
            entry = response["data"].get(prompt_id)
            if not isinstance(entry, Mapping):
                return PollOutcome.pending()

            status = entry.get("status")
            status = status if isinstance(status, Mapping) else {}
            errors = _status_messages(status)
            if status.get("status_str") == "error" or errors:
                return PollOutcome.failed(
                    "ComfyUI execution failed.",
                    detail={"prompt_id": prompt_id, "messages": errors},
                )

            images = _collect_output_images(base_url, entry.get("outputs"))
            if images or status.get("completed") is True:
                return PollOutcome.completed(images)
            return PollOutcome.pending()

        images = await poll_until_complete(
            poll,
            policy=PollPolicy(
                interval_sec=self.poll_interval_sec,
                max_attempts=self.max_poll_attempts,
            ),
            context=context,
            source="ComfyUI",
            job_id=prompt_id,
        )
        return GenerationResponse(
            images=images,
            metadata=InferenceMetadata(
                provider=self.backend_id,
                model=request.model or "",
                extra={"prompt_id": prompt_id},
            ),
            warnings=warnings,
        )

    async def list_models(self, routing: RoutingContext) -> list[str]:
        try:
            response = await get_json(
                url=join_url(
                    self._resolve_base_url(routing),
                    "object_info/CheckpointLoaderSimple",
                ),
                timeout_sec=self.request_timeout(routing),
                source="ComfyUI",
            )
        except GenerationException as exc:
            logger.warning("comfyui.list_models_failed", {"error": str(exc)})
            return []
        node = response["data"].get("CheckpointLoaderSimple")
        choices = (
            node.get("input", {}).get("required", {}).get("ckpt_name")
            if isinstance(node, Mapping)
            else None
        )
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], list):
            return []
        return [str(name) for name in choices[0]]
