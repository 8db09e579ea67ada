from __future__ import annotations

import asyncio

import pytest

from sdproxy.providers.context import GenerationContext
from sdproxy.providers.polling import PollOutcome, PollPolicy, poll_until_complete
from sdproxy.providers.schema import GeneratedImage
from sdproxy.utils.errors import (
    GenerationCancelledError,
    ProviderError,
    ProviderTimeoutError,
    ResponseParseError,
)

IMAGE = GeneratedImage.from_url("https://example.com/done.png")


class RecordingSink:
    def __init__(self) -> None:
        self.progress: list[tuple[float, float | None]] = []
        self.messages: list[str] = []

    def report_progress(self, fraction, eta_seconds=None, preview_image=None) -> None:
        self.progress.append((fraction, eta_seconds))

    def log(self, message: str, level: str = "info") -> None:
        self.messages.append(message)


class BrokenSink:
    def report_progress(self, fraction, eta_seconds=None, preview_image=None) -> None:
        raise RuntimeError("sink exploded")

    def log(self, message: str, level: str = "info") -> None:
        raise RuntimeError("sink exploded")


def _scripted(outcomes: list[PollOutcome]):
    calls: list[int] = []

    async def poll(attempt: int) -> PollOutcome:
        calls.append(attempt)
        return outcomes[min(attempt, len(outcomes)) - 1]

    return poll, calls


@pytest.mark.asyncio
async def test_poll_until_complete_returns_images_and_reports_progress() -> None:
    """验证：轮询到完成态返回图片，中间进度转发给 sink，完成时上报 1.0。"""
    sink = RecordingSink()
    poll, calls = _scripted(
        [
            PollOutcome.pending(progress=0.25, eta_seconds=9),
            PollOutcome.pending(progress=0.5),
            PollOutcome.completed([IMAGE]),
        ]
    )

    images = await poll_until_complete(
        poll,
        policy=PollPolicy(interval_sec=0, max_attempts=10),
        context=GenerationContext(sink=sink),
        source="Test",
        job_id="job-1",
    )

    assert images == [IMAGE]
    assert calls == [1, 2, 3]
    assert sink.progress == [(0.25, 9), (0.5, None), (1.0, 0)]


@pytest.mark.asyncio
async def test_poll_until_complete_failed_raises_provider_error() -> None:
    """验证：上游显式失败时抛出 ProviderError，并携带任务信息。"""
    poll, _ = _scripted([PollOutcome.failed("boom", detail={"status": "failed"})])

    with pytest.raises(ProviderError, match="boom") as exc_info:
        await poll_until_complete(
            poll,
            policy=PollPolicy(interval_sec=0, max_attempts=3),
            context=GenerationContext(),
            source="Test",
            job_id="job-2",
        )

    assert exc_info.value.detail["job_id"] == "job-2"
    assert exc_info.value.detail["status"] == "failed"


@pytest.mark.asyncio
async def test_poll_until_complete_times_out_after_max_attempts() -> None:
    """验证：一直未完成时在达到次数上限后抛出超时，且恰好轮询 max_attempts 次。"""
    poll, calls = _scripted([PollOutcome.pending()])

    with pytest.raises(ProviderTimeoutError):
        await poll_until_complete(
            poll,
            policy=PollPolicy(interval_sec=0, max_attempts=5),
            context=GenerationContext(),
            source="Test",
            job_id="job-3",
        )

    assert calls == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_poll_until_complete_honours_wall_clock_limit() -> None:
    """验证：墙钟预算耗尽时即使次数未满也会超时。"""
    poll, calls = _scripted([PollOutcome.pending()])

    with pytest.raises(ProviderTimeoutError):
        await poll_until_complete(
            poll,
            policy=PollPolicy(interval_sec=0.01, max_attempts=1000, max_wait_sec=0.05),
            context=GenerationContext(),
            source="Test",
            job_id="job-4",
        )

    assert len(calls) < 1000


@pytest.mark.asyncio
async def test_poll_until_complete_without_images_is_parse_error() -> None:
    """验证：完成态但没有图片视为解析失败。"""
    poll, _ = _scripted([PollOutcome.completed([])])

    with pytest.raises(ResponseParseError):
        await poll_until_complete(
            poll,
            policy=PollPolicy(interval_sec=0, max_attempts=3),
            context=GenerationContext(),
            source="Test",
            job_id="job-5",
        )


@pytest.mark.asyncio
async def test_poll_until_complete_stops_promptly_on_cancel_event() -> None:
    """验证：取消信号到达时立即结束等待，不会睡满整个间隔。"""
    cancel_event = asyncio.Event()
    poll, calls = _scripted([PollOutcome.pending()])
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, cancel_event.set)
    started_at = loop.time()

    with pytest.raises(GenerationCancelledError):
        await poll_until_complete(
            poll,
            policy=PollPolicy(interval_sec=30, max_attempts=10),
            context=GenerationContext(cancel_event=cancel_event),
            source="Test",
            job_id="job-6",
        )

    assert loop.time() - started_at < 5
    assert calls == []


@pytest.mark.asyncio
async def test_poll_until_complete_task_cancellation_propagates() -> None:
    """验证：调用方取消任务时，轮询协程随之以 CancelledError 结束。"""
    poll, _ = _scripted([PollOutcome.pending()])
    task = asyncio.create_task(
        poll_until_complete(
            poll,
            policy=PollPolicy(interval_sec=30, max_attempts=10),
            context=GenerationContext(),
            source="Test",
            job_id="job-7",
        )
    )
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_broken_sink_does_not_affect_result() -> None:
    """验证：sink 抛异常只记日志，不影响生成结果。"""
    context = GenerationContext(sink=BrokenSink())
    poll, _ = _scripted([PollOutcome.pending(progress=0.3), PollOutcome.completed([IMAGE])])

    context.log("hello")
    images = await poll_until_complete(
        poll,
        policy=PollPolicy(interval_sec=0, max_attempts=3),
        context=context,
        source="Test",
        job_id="job-8",
    )

    assert images == [IMAGE]


def test_context_report_progress_clamps_fraction() -> None:
    """验证：进度值被限制在 [0, 1]。"""
    sink = RecordingSink()
    context = GenerationContext(sink=sink)

    context.report_progress(1.7)
    context.report_progress(-0.2, 3)

    assert sink.progress == [(1.0, None), (0.0, 3)]


@pytest.mark.asyncio
async def test_context_guard_returns_result_when_not_cancelled() -> None:
    """验证：没有取消信号时 guard 原样返回上游调用的结果。"""

    async def call() -> str:
        await asyncio.sleep(0)
        return "ok"

    assert await GenerationContext().guard(call()) == "ok"
    assert await GenerationContext(cancel_event=asyncio.Event()).guard(call()) == "ok"


@pytest.mark.asyncio
async def test_context_guard_cancels_in_flight_call() -> None:
    """验证：调用进行中触发取消信号时，调用被取消并抛出 GenerationCancelledError。"""
    cancel_event = asyncio.Event()
    cancelled: list[bool] = []

    async def slow_call() -> str:
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise
        return "late"

    asyncio.get_running_loop().call_later(0.05, cancel_event.set)

    with pytest.raises(GenerationCancelledError):
        await asyncio.wait_for(
            GenerationContext(cancel_event=cancel_event).guard(slow_call()),
            timeout=1.0,
        )

    assert cancelled == [True]


@pytest.mark.asyncio
async def test_context_guard_skips_call_when_already_cancelled() -> None:
    """验证：取消信号已经触发时，上游调用不会开始执行。"""
    cancel_event = asyncio.Event()
    cancel_event.set()
    started: list[bool] = []

    async def call() -> str:
        started.append(True)
        return "ok"

    with pytest.raises(GenerationCancelledError):
        await GenerationContext(cancel_event=cancel_event).guard(call())

    assert started == []
