"""提交-轮询型供应商的通用状态机。

状态流转：Submitted → Polling → {Completed | Failed | TimedOut}。
每次非终态的轮询结果都会重新进入 Polling，不存在跳过 Polling 的路径。
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..utils.errors import ProviderError, ProviderTimeoutError, ResponseParseError
from ..utils.log import get_structured_logger
from .context import GenerationContext
from .schema import GeneratedImage

logger = get_structured_logger(__name__)


class PollState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(slots=True)
class PollOutcome:
    state: PollState
    images: list[GeneratedImage] = field(default_factory=list)
    message: str = ""
    detail: dict[str, Any] = field(default_factory=dict)
    progress: float | None = None
    eta_seconds: float | None = None
    preview_image: GeneratedImage | None = None

    @classmethod
    def pending(
        cls,
        *,
        progress: float | None = None,
        eta_seconds: float | None = None,
        preview_image: GeneratedImage | None = None,
    ) -> PollOutcome:
        return cls(
            state=PollState.POLLING,
            progress=progress,
            eta_seconds=eta_seconds,
            preview_image=preview_image,
        )

    @classmethod
    def completed(cls, images: list[GeneratedImage]) -> PollOutcome:
        return cls(state=PollState.COMPLETED, images=images)

    @classmethod
    def failed(cls, message: str, detail: dict[str, Any] | None = None) -> PollOutcome:
        return cls(state=PollState.FAILED, message=message, detail=detail or {})


@dataclass(slots=True)
class PollPolicy:
    interval_sec: float
    """两次轮询之间的固定间隔"""
    max_attempts: int
    """最多轮询次数"""
    max_wait_sec: float | None = None
    """墙钟预算；None 表示只按次数限制"""


PollFn = Callable[[int], Awaitable[PollOutcome]]


async def poll_until_complete(
    poll: PollFn,
    *,
    policy: PollPolicy,
    context: GenerationContext,
    source: str,
    job_id: str,
) -> list[GeneratedImage]:
    """按固定间隔调用 `poll(attempt)` 直到终态。

    - Completed：返回图片；图片为空视为解析失败；
    - Failed：抛出 ProviderError；
    - 次数或墙钟预算耗尽：抛出 ProviderTimeoutError；
    - 等待期间通过 `context.sleep` 挂起，调用方取消时立即终止。
    """
    started_at = time.monotonic()
    state = PollState.SUBMITTED
    detail = {"source": source, "job_id": job_id, "request_id": context.request_id}
    logger.debug("poll.state", {**detail, "state": state.value})

    for attempt in range(1, policy.max_attempts + 1):
        await context.sleep(policy.interval_sec)
        state = PollState.POLLING
        outcome = await context.guard(poll(attempt))

        if outcome.state == PollState.COMPLETED:
            logger.debug(
                "poll.state",
                {**detail, "state": outcome.state.value, "attempt": attempt},
            )
            if not outcome.images:
                raise ResponseParseError(
                    f"{source} job completed without images.",
                    detail={**detail, "attempt": attempt},
                )
            context.report_progress(1.0, 0)
            return outcome.images

        if outcome.state == PollState.FAILED:
            logger.debug(
                "poll.state",
                {**detail, "state": outcome.state.value, "attempt": attempt},
            )
            raise ProviderError(
                outcome.message or f"{source} job failed.",
                detail={**detail, **outcome.detail, "attempt": attempt},
            )

        if outcome.progress is not None:
            context.report_progress(
                outcome.progress, outcome.eta_seconds, outcome.preview_image
            )

        elapsed = time.monotonic() - started_at
        if policy.max_wait_sec is not None and elapsed >= policy.max_wait_sec:
            break

    logger.debug(
        "poll.state",
        {**detail, "state": PollState.TIMED_OUT.value, "last_state": state.value},
    )
    raise ProviderTimeoutError(
        f"{source} job did not finish in time.",
        detail={
            **detail,
            "max_attempts": policy.max_attempts,
            "max_wait_sec": policy.max_wait_sec,
            "elapsed_sec": round(time.monotonic() - started_at, 3),
        },
    )
