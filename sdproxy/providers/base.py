from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar

from ..utils.errors import MissingCredentialError
from .context import GenerationContext
from .schema import GenerationRequest, GenerationResponse, RoutingContext


class ProviderAdapter(ABC):
    backend_id: ClassVar[str]
    display_name: ClassVar[str]
    requires_api_key: ClassVar[bool] = False
    requires_base_url: ClassVar[bool] = False
    max_batch_count: ClassVar[int] = 1
    timeout_sec: int

    def check_credentials(self, routing: RoutingContext) -> None:
        """在任何网络请求之前校验必填凭据。"""
        if self.requires_api_key and not routing.api_key.strip():
            raise MissingCredentialError(self.backend_id, "api_key")
        if self.requires_base_url and not routing.base_url.strip():
            raise MissingCredentialError(self.backend_id, "base_url")

    def request_timeout(self, routing: RoutingContext) -> int:
        return routing.timeout_sec or self.timeout_sec

    @abstractmethod
    async def generate(
        self,
        request: GenerationRequest,
        routing: RoutingContext,
        context: GenerationContext,
    ) -> GenerationResponse: ...

    async def list_models(self, routing: RoutingContext) -> list[str]:
        """可选的模型列表查询；不支持的供应商返回空列表。"""
        return []
