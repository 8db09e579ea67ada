from __future__ import annotations

import json
from collections.abc import Mapping
from enum import Enum
from typing import Any

from .log import summarize_log_value


class GenerationErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    UNKNOWN_BACKEND = "UNKNOWN_BACKEND"
    MISSING_CREDENTIAL = "MISSING_CREDENTIAL"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    PARSE_ERROR = "PARSE_ERROR"
    CANCELLED = "CANCELLED"


class GenerationException(Exception):
    def __init__(
        self,
        code: GenerationErrorCode,
        message: str,
        retryable: bool,
        detail: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.detail = dict(detail) if detail else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "detail": self.detail,
        }

    def __str__(self) -> str:
        base = f"[{self.code.value}] {self.message} (retryable={self.retryable})"
        if not self.detail:
            return base
        detail_json = json.dumps(
            summarize_log_value(self.detail), ensure_ascii=False, default=str
        )
        return f"{base} detail={detail_json}"


class InvalidRequestError(GenerationException):
    """请求未通过校验，不会发往任何供应商。"""

    def __init__(self, message: str, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            code=GenerationErrorCode.INVALID_REQUEST,
            message=message,
            retryable=False,
            detail=detail,
        )


class UnknownBackendError(GenerationException):
    def __init__(self, backend_id: str) -> None:
        super().__init__(
            code=GenerationErrorCode.UNKNOWN_BACKEND,
            message=f"Unknown backend: {backend_id}",
            retryable=False,
            detail={"backend_id": backend_id},
        )
        self.backend_id = backend_id


class MissingCredentialError(GenerationException):
    """适配器声明为必填的 api_key / base_url 缺失。"""

    def __init__(
        self,
        provider: str,
        credential: str,
        message: str = "",
    ) -> None:
        super().__init__(
            code=GenerationErrorCode.MISSING_CREDENTIAL,
            message=message or f"{provider} requires {credential}.",
            retryable=False,
            detail={"provider": provider, "credential": credential},
        )
        self.provider = provider
        self.credential = credential


class ProviderError(GenerationException):
    """供应商返回非成功状态，或任务进入显式失败状态。"""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
        retryable: bool = False,
        code: GenerationErrorCode = GenerationErrorCode.PROVIDER_ERROR,
        detail: Mapping[str, Any] | None = None,
    ) -> None:
        merged: dict[str, Any] = dict(detail) if detail else {}
        if status_code is not None:
            merged.setdefault("status_code", status_code)
        if body is not None:
            merged.setdefault("body", body)
        super().__init__(
            code=code,
            message=message,
            retryable=retryable,
            detail=merged,
        )
        self.status_code = status_code
        self.body = body


class ProviderTimeoutError(GenerationException):
    def __init__(self, message: str, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            code=GenerationErrorCode.TIMEOUT,
            message=message,
            retryable=True,
            detail=detail,
        )


class ResponseParseError(GenerationException):
    """供应商响应无法解析，或所有提取策略都没有得到图片。"""

    def __init__(self, message: str, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            code=GenerationErrorCode.PARSE_ERROR,
            message=message,
            retryable=True,
            detail=detail,
        )


class GenerationCancelledError(GenerationException):
    def __init__(self, message: str, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            code=GenerationErrorCode.CANCELLED,
            message=message,
            retryable=False,
            detail=detail,
        )
