"""按 backend_id 把请求路由到适配器。

调度器只做查找、校验、凭据检查与日志；不重试，不回退到其他后端，
适配器抛出的异常原样向上传递。注册表在构造后只读，可被并发调用共享。
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass

from ..config import ProxySettings
from ..utils.errors import GenerationException, UnknownBackendError
from ..utils.log import get_structured_logger
from .base import ProviderAdapter
from .context import GenerationContext
from .factory import build_adapter_registry
from .schema import (
    GenerationRequest,
    GenerationResponse,
    InferenceMetadata,
    RoutingContext,
)
from .validation import validate_generation_request

logger = get_structured_logger(__name__)


@dataclass(slots=True)
class BackendInfo:
    id: str
    display_name: str
    requires_api_key: bool
    requires_base_url: bool
    max_batch_count: int

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.display_name,
            "requires_api_key": self.requires_api_key,
            "requires_base_url": self.requires_base_url,
            "max_batch_count": self.max_batch_count,
        }


class GenerationDispatcher:
    def __init__(self, adapters: Mapping[str, ProviderAdapter]) -> None:
        self._adapters = {key.strip().lower(): adapter for key, adapter in adapters.items()}

    @classmethod
    def from_settings(cls, settings: ProxySettings) -> GenerationDispatcher:
        return cls(build_adapter_registry(settings))

    def get_adapter(self, backend_id: str) -> ProviderAdapter:
        adapter = self._adapters.get(backend_id.strip().lower())
        if adapter is None:
            raise UnknownBackendError(backend_id)
        return adapter

    def list_backends(self) -> list[BackendInfo]:
        return [
            BackendInfo(
                id=backend_id,
                display_name=adapter.display_name,
                requires_api_key=adapter.requires_api_key,
                requires_base_url=adapter.requires_base_url,
                max_batch_count=adapter.max_batch_count,
            )
            for backend_id, adapter in self._adapters.items()
        ]

    async def dispatch(
        self,
        backend_id: str,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext | None = None,
    ) -> GenerationResponse:
        """查找适配器 → 校验请求 → 检查凭据 → 调用适配器。

        前三步都在任何网络请求之前完成，失败时不会产生出站调用。
        """
        adapter = self.get_adapter(backend_id)
        normalized = validate_generation_request(request)
        adapter.check_credentials(routing)

        context = context or GenerationContext()
        detail = {
            "backend_id": adapter.backend_id,
            "request_id": context.request_id,
            "prompt": normalized.prompt,
            "batch_count": normalized.batch_count,
            "model": normalized.model,
        }
        logger.info("generation.start", detail)
        started_at = time.perf_counter()
        try:
            response = await context.guard(adapter.generate(normalized, routing, context))
        except GenerationException as exc:
            logger.warning(
                "generation.failed",
                {**detail, "error": exc.to_dict()},
            )
            raise
        except asyncio.CancelledError:
            logger.info("generation.cancelled", detail)
            raise
        except Exception:
            logger.exception("generation crashed: %s", detail)
            raise

        if response.metadata is None:
            response.metadata = InferenceMetadata(provider=adapter.backend_id)
        response.metadata.request_id = context.request_id
        logger.info(
            "generation.done",
            {
                **detail,
                "image_count": len(response.images),
                "elapsed_ms": int((time.perf_counter() - started_at) * 1000),
                "warnings": response.warnings,
            },
        )
        return response

    async def list_models(self, backend_id: str, routing: RoutingContext) -> list[str]:
        return await self.get_adapter(backend_id).list_models(routing)


async def generate_image(
    request: GenerationRequest,
    routing: RoutingContext,
    *,
    dispatcher: GenerationDispatcher,
    context: GenerationContext | None = None,
) -> GenerationResponse:
    """对外的单一入口：按 `routing.backend_id` 分发。"""
    return await dispatcher.dispatch(routing.backend_id, request, routing, context)
