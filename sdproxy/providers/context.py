from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

from ..utils.errors import GenerationCancelledError
from ..utils.id import generate_id
from ..utils.log import get_structured_logger
from .schema import GeneratedImage

logger = get_structured_logger(__name__)

T = TypeVar("T")


class ProgressSink(Protocol):
    """调用方注入的进度/日志接收端，只用于遥测，不影响生成结果。"""

    def report_progress(
        self,
        fraction: float,
        eta_seconds: float | None = None,
        preview_image: GeneratedImage | None = None,
    ) -> None: ...

    def log(self, message: str, level: str = "info") -> None: ...


@dataclass(slots=True)
class LoggingProgressSink:
    """把进度转发到结构化日志的默认实现。"""

    backend_id: str = ""

    def report_progress(
        self,
        fraction: float,
        eta_seconds: float | None = None,
        preview_image: GeneratedImage | None = None,
    ) -> None:
        logger.info(
            "generation.progress",
            {
                "backend_id": self.backend_id,
                "fraction": round(fraction, 3),
                "eta_seconds": eta_seconds,
                "has_preview": preview_image is not None,
            },
        )

    def log(self, message: str, level: str = "info") -> None:
        detail = {"backend_id": self.backend_id, "message": message}
        if level == "error":
            logger.error("generation.log", detail)
        elif level == "warning":
            logger.warning("generation.log", detail)
        else:
            logger.info("generation.log", detail)


@dataclass(slots=True)
class GenerationContext:
    """单次调用的上下文：进度接收端 + 取消信号，由调用方持有，没有进程级共享状态。"""

    sink: ProgressSink | None = None
    cancel_event: asyncio.Event | None = None
    request_id: str = field(default_factory=generate_id)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise GenerationCancelledError(
                "Generation cancelled by caller.",
                detail={"request_id": self.request_id},
            )

    async def sleep(self, seconds: float) -> None:
        """定时挂起；取消信号到达时立即结束并抛出 GenerationCancelledError。"""
        self.raise_if_cancelled()
        if self.cancel_event is None:
            await asyncio.sleep(seconds)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """执行一次上游调用，与取消信号赛跑。

        取消信号先到达时取消仍在进行的调用（并发子请求随之取消），
        等它退出后抛出 GenerationCancelledError。
        """
        task = asyncio.ensure_future(awaitable)
        if self.cancel_event is None:
            return await task
        if not self.cancelled:
            waiter = asyncio.ensure_future(self.cancel_event.wait())
            try:
                await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            except BaseException:
                task.cancel()
                raise
            finally:
                waiter.cancel()
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self.raise_if_cancelled()
        return task.result()

    def report_progress(
        self,
        fraction: float,
        eta_seconds: float | None = None,
        preview_image: GeneratedImage | None = None,
    ) -> None:
        if self.sink is None:
            return
        clamped = min(1.0, max(0.0, fraction))
        try:
            self.sink.report_progress(clamped, eta_seconds, preview_image)
        except Exception as exc:
            logger.debug(
                "progress_sink.failed",
                {"request_id": self.request_id, "error": repr(exc)},
            )

    def log(self, message: str, level: str = "info") -> None:
        if self.sink is None:
            return
        try:
            self.sink.log(message, level)
        except Exception as exc:
            logger.debug(
                "progress_sink.failed",
                {"request_id": self.request_id, "error": repr(exc)},
            )
