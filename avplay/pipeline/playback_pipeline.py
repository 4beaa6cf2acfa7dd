"""
재생 파이프라인 오케스트레이터 모듈입니다.

역할:
- 소스 열기 → 스트림 선택 → FrameBuffer/DecodeContext/Scheduler/렌더러 구성
- Demux Loop는 워커 스레드(asyncio.to_thread), Scheduler와 렌더러 소비자는 asyncio 태스크로 병렬 실행
- 세 태스크는 FrameBuffer와 공유 CancelToken으로만 협력
- request_shutdown(): 취소 신호 → 버퍼 비움, 렌더러 중단, 컨텍스트/소스 닫기
- apply_config(): 설정 핫스왑 시 스케줄러 임계값 즉시 반영

파이프라인 구조:
    [Source] ──read_packet──▶ [DemuxLoop (thread)] ──send──▶ [DecodeContext × N]
                                                                   │ push
                                                                   ▼
    [PreviewRenderer] ◀──enqueue── [PlaybackScheduler] ◀──next── [FrameBuffer]

사용 예시:
    >>> pipeline = PlaybackPipeline(config)
    >>> result = await pipeline.run()
    >>> result.raise_for_errors()
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol

from avplay.buffer.frame_buffer import FrameBuffer
from avplay.config.schema import AppConfig
from avplay.decode.decode_context import DecodeContext
from avplay.decode.demux_loop import DemuxLoop, DemuxOutcome, DemuxResult
from avplay.decode.stream_selector import StreamSelector
from avplay.engine import MediaKind, Source, StreamDescriptor
from avplay.engine.errors import BadParameterError, PlaybackError
from avplay.metrics.lateness_tracker import LatenessTracker
from avplay.metrics.metrics_store import PlaybackMetrics
from avplay.pipeline import PipelineOutcome, PipelineResult
from avplay.playback import SchedulerStats
from avplay.playback.scheduler import PlaybackScheduler
from avplay.render import RenderStats
from avplay.render.preview_renderer import PreviewRenderer
from avplay.render.queue_renderer import FrameQueueRenderer
from avplay.runtime.cancellation import CancelToken

logger = logging.getLogger(__name__)


class FrameConsumer(Protocol):
    """렌더러 큐를 소비하는 외부 렌더러 태스크 인터페이스입니다."""

    def run(self, cancel_token: CancelToken) -> Awaitable[RenderStats]: ...


SourceOpener = Callable[[AppConfig], Source]
ConsumerFactory = Callable[[AppConfig, FrameQueueRenderer], FrameConsumer]


def open_configured_source(config: AppConfig) -> Source:
    """
    system.mode에 따라 소스를 엽니다 (워커 스레드에서 호출).

    에러:
        BadParameterError: file 모드인데 source.locator가 비어있을 때
        SourceIOError: 소스를 열 수 없을 때
    """
    if config.system.mode == "synthetic":
        from avplay.engine.synthetic_source import build_synthetic_source
        return build_synthetic_source(config.synthetic)

    if not config.source.locator:
        raise BadParameterError("file 모드에는 source.locator(--input)가 필요합니다")

    from avplay.engine.av_source import open_source
    return open_source(
        config.source.locator,
        input_format=config.source.input_format,
        options=config.source.options,
        output=config.output,
    )


def _in_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class PlaybackPipeline:
    """
    재생 파이프라인 전체를 관리하는 오케스트레이터 클래스입니다.

    run()은 한 번의 재생을 수행하며, 종료 시 모든 리소스(컨텍스트, 버퍼 프레임, 소스)를 정리합니다.
    """

    def __init__(
        self,
        config: AppConfig,
        source_opener: Optional[SourceOpener] = None,
        consumer_factory: Optional[ConsumerFactory] = None,
        metrics: Optional[PlaybackMetrics] = None,
        *,
        display: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        파라미터:
            config: 전체 애플리케이션 설정
            source_opener: config → Source (None이면 system.mode 기준 기본 opener)
            consumer_factory: (config, 렌더러 큐) → 소비자 (None이면 PreviewRenderer)
            metrics: 카운터 저장소 (None이면 새로 생성)
            display: 프리뷰 창 표시 여부 (None이면 renderer.display 설정 사용)
            clock: 스케줄러 단조 시계
        """
        self._config = config
        self._source_opener = source_opener or open_configured_source
        self._consumer_factory = consumer_factory or self._default_consumer
        self._metrics = metrics or PlaybackMetrics()
        self._lateness = LatenessTracker(window_sec=config.metrics.lateness_window_sec)
        self._display = display
        self._clock = clock

        self._cancel_token = CancelToken()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._scheduler: Optional[PlaybackScheduler] = None
        self._renderer: Optional[FrameQueueRenderer] = None
        self._status: str = "idle"  # "idle" | "running" | "stopping"

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    @property
    def cancel_token(self) -> CancelToken:
        return self._cancel_token

    @property
    def metrics(self) -> PlaybackMetrics:
        return self._metrics

    @property
    def lateness(self) -> LatenessTracker:
        return self._lateness

    def get_status(self) -> str:
        """파이프라인의 현재 상태를 반환합니다."""
        return self._status

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        """외부(시그널 핸들러 등)에서 종료를 요청합니다. 어느 스레드에서 호출해도 안전합니다."""
        if self._cancel_token.cancel(reason):
            self._status = "stopping" if self._status == "running" else self._status
            logger.info(f"파이프라인 종료 요청: {reason}")

    def apply_config(self, old_config: AppConfig, new_config: AppConfig) -> None:
        """
        설정 변경을 실행 중인 파이프라인에 즉시 적용합니다 (핫스왑).

        ConfigManager.subscribe()에 콜백으로 등록되어 watchdog 스레드에서 호출됩니다.
        구조 변경(버퍼 크기, 스트림 선택)은 다음 run()부터 적용되고,
        scheduler.low_watermark / scheduler.late_drop_ms는 즉시 반영됩니다.

        파라미터:
            old_config: 이전 설정 객체 (미사용, 서명 일치를 위해 포함)
            new_config: 새 설정 객체
        """
        self._config = new_config
        scheduler = self._scheduler
        if scheduler is None:
            logger.info("파이프라인 설정 교체 (실행 중인 스케줄러 없음)")
            return

        low_watermark = new_config.scheduler.low_watermark
        late_drop_ms = new_config.scheduler.late_drop_ms
        loop = self._loop
        if loop is not None and loop.is_running() and not _in_loop_thread(loop):
            loop.call_soon_threadsafe(scheduler.update_thresholds, low_watermark, late_drop_ms)
        else:
            scheduler.update_thresholds(low_watermark, late_drop_ms)
        logger.info("파이프라인 설정 핫스왑 완료")

    async def run(self) -> PipelineResult:
        """
        재생을 한 번 수행하고 결과를 반환합니다.

        태스크 취소(asyncio.CancelledError)는 종료 요청으로 처리하여 정리 후 다시 전파합니다.

        반환값:
            PipelineResult: 종료 결과 및 단계별 통계
        """
        self._loop = asyncio.get_running_loop()
        self._status = "running"
        config = self._config
        logger.info(f"파이프라인 시작: mode={config.system.mode}")

        try:
            source = await asyncio.to_thread(self._source_opener, config)
        except PlaybackError as exc:
            logger.error(f"소스 열기 실패: {exc}")
            self._status = "idle"
            return PipelineResult(outcome=PipelineOutcome.FAILED, error=exc)

        frame_buffer: Optional[FrameBuffer] = None
        contexts: dict[int, DecodeContext] = {}
        result = PipelineResult(outcome=PipelineOutcome.COMPLETED)

        try:
            chosen = self._choose_streams(source)
            frame_buffer = FrameBuffer(
                [descriptor.index for descriptor in chosen],
                max_frames=config.buffer.max_frames,
                max_duration_ms=config.buffer.max_duration_ms,
            )
            selected = StreamSelector(source).bind(
                chosen,
                lambda descriptor: DecodeContext(
                    descriptor,
                    source.open_decoder(descriptor),
                    frame_buffer,
                    self._cancel_token,
                    retry_interval_sec=config.decode.buffer_full_retry_ms / 1000.0,
                    metrics=self._metrics,
                ),
            )
            contexts = {index: entry.context for index, entry in selected.items()}
            await self._run_tasks(source, frame_buffer, contexts, chosen, result)

        except PlaybackError as exc:
            logger.error(f"파이프라인 구성 실패: {exc}")
            result.outcome = PipelineOutcome.FAILED
            result.error = exc

        finally:
            await self._shutdown(source, frame_buffer, contexts)
            if frame_buffer is not None:
                result.buffer_stats = frame_buffer.stats()
            self._scheduler = None
            self._status = "idle"

        self._finalize(result)
        logger.info(
            f"파이프라인 종료: outcome={result.outcome.value}, "
            f"decode_errors={len(result.decode_errors)}, "
            f"cancel_reason={result.cancel_reason or '-'}"
        )
        return result

    # =========================================================================
    # 내부 실행 단계
    # =========================================================================

    def _choose_streams(self, source: Source) -> list[StreamDescriptor]:
        source_cfg = self._config.source
        selector = StreamSelector(source)
        return selector.choose(
            kinds=[MediaKind(kind) for kind in source_cfg.kinds],
            indices=source_cfg.stream_indices or None,
        )

    async def _run_tasks(
        self,
        source: Source,
        frame_buffer: FrameBuffer,
        contexts: dict[int, DecodeContext],
        chosen: list[StreamDescriptor],
        result: PipelineResult,
    ) -> None:
        config = self._config
        renderer = FrameQueueRenderer(maxsize=config.renderer.queue_size)
        self._renderer = renderer

        scheduler_cfg = config.scheduler
        scheduler = PlaybackScheduler(
            frame_buffer,
            renderer,
            self._cancel_token,
            stream_kinds={descriptor.index: descriptor.kind for descriptor in chosen},
            low_watermark=scheduler_cfg.low_watermark,
            late_drop_ms=scheduler_cfg.late_drop_ms,
            master_stream=scheduler_cfg.master_stream,
            prefer_audio=scheduler_cfg.prefer_audio,
            poll_interval_sec=scheduler_cfg.poll_interval_ms / 1000.0,
            queue_full_retry_sec=scheduler_cfg.queue_full_retry_ms / 1000.0,
            queue_full_max_retries=scheduler_cfg.queue_full_max_retries,
            clock=self._clock,
            metrics=self._metrics,
            lateness=self._lateness,
        )
        self._scheduler = scheduler
        consumer = self._consumer_factory(config, renderer)
        demux_loop = DemuxLoop(source, contexts, self._cancel_token, metrics=self._metrics)

        tasks = [
            asyncio.create_task(asyncio.to_thread(demux_loop.run), name="demux_loop"),
            asyncio.create_task(scheduler.run(), name="playback_scheduler"),
            asyncio.create_task(consumer.run(self._cancel_token), name="renderer_consumer"),
        ]
        for task in tasks:
            task.add_done_callback(self._on_task_done)

        reporter = asyncio.create_task(self._report_metrics(), name="metrics_reporter")

        try:
            outcomes = await asyncio.shield(asyncio.gather(*tasks, return_exceptions=True))
        except asyncio.CancelledError:
            # run() 자체가 취소됨: 종료 요청으로 처리하고 태스크가 정리될 때까지 대기
            self.request_shutdown("pipeline task cancelled")
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            reporter.cancel()
            await asyncio.gather(reporter, return_exceptions=True)

        demux_outcome, scheduler_outcome, render_outcome = outcomes
        for name, outcome in zip(("demux", "scheduler", "renderer"), outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"{name} 태스크 오류: {outcome}")
                if result.error is None:
                    result.error = outcome

        if isinstance(demux_outcome, DemuxResult):
            result.demux = demux_outcome
            result.decode_errors = list(demux_outcome.decode_errors)
        if isinstance(scheduler_outcome, SchedulerStats):
            result.scheduler = scheduler_outcome
        if isinstance(render_outcome, RenderStats):
            result.render = render_outcome

    async def _shutdown(
        self,
        source: Source,
        frame_buffer: Optional[FrameBuffer],
        contexts: dict[int, DecodeContext],
    ) -> None:
        """파이프라인 리소스를 순서대로 정리합니다."""
        logger.info("파이프라인 정리 시작")

        if self._cancel_token.is_cancelled:
            if frame_buffer is not None:
                frame_buffer.clear()
            if self._renderer is not None:
                self._renderer.stop()

        # Demux Loop가 시작되지 못한 경우를 포함해 모든 컨텍스트 닫기
        for context in contexts.values():
            context.close()

        await asyncio.to_thread(source.close)
        self._renderer = None
        logger.info("파이프라인 정리 완료")

    def _finalize(self, result: PipelineResult) -> None:
        if self._cancel_token.is_cancelled:
            result.outcome = PipelineOutcome.CANCELLED
            result.cancel_reason = self._cancel_token.reason
            return
        if result.error is not None:
            result.outcome = PipelineOutcome.FAILED
            return
        if result.demux is not None and result.demux.outcome == DemuxOutcome.IO_ERROR:
            result.outcome = PipelineOutcome.FAILED
            return
        if result.decode_errors:
            result.outcome = PipelineOutcome.FAILED
            return
        result.outcome = PipelineOutcome.COMPLETED

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"파이프라인 태스크 오류: {task.get_name()}: {exc}", exc_info=exc)
            self.request_shutdown(f"{task.get_name()} 오류")

    async def _report_metrics(self) -> None:
        interval = self._config.metrics.report_interval_sec
        if interval <= 0:
            return
        while not await self._cancel_token.sleep(interval, tick=min(0.1, interval)):
            self._metrics.log_summary()
            self._lateness.compute_stats()

    def _default_consumer(self, config: AppConfig, renderer: FrameQueueRenderer) -> FrameConsumer:
        return PreviewRenderer(config.renderer, renderer, display=self._display)
