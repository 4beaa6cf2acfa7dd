"""
Playback Scheduler 모듈입니다.

역할:
- FrameBuffer를 비우며 master 스트림 기준 wall-clock에 맞춰 프레임을 렌더러로 전달
- 상태 머신: WAITING_FOR_DATA → ANCHORING → STREAMING → STOPPED
- 앵커 (framePTS, wall-clock)는 실행당 정확히 한 번, master 스트림 첫 프레임에서 설정
  (master 프레임 없이 버퍼가 포화되면 가장 오래된 프레임에서 설정)
- 늦은 비디오 프레임은 late_drop_ms 임계값 초과 시 드롭 (오디오는 늦어도 항상 전달)
- 렌더러 QueueFull은 제한된 backoff로 재시도, 소진 시 드롭

페이싱:
    target = anchor_wall + (frame_pts - anchor_pts) / 1000
    delta  = target - now
    delta > 0  → target까지 대기 (취소 확인 지점)
    delta < 0  → 비디오이고 |delta| > late_drop_ms면 드롭

사용 예시:
    >>> scheduler = PlaybackScheduler(frame_buffer, renderer, cancel_token,
    ...                               stream_kinds={0: MediaKind.AUDIO, 1: MediaKind.VIDEO})
    >>> stats = await scheduler.run()
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional

from avplay.buffer.frame_buffer import FrameBuffer
from avplay.engine import Frame, MediaKind
from avplay.engine.errors import BadParameterError
from avplay.logging.structured_logger import StreamLoggerAdapter, get_stream_logger
from avplay.metrics.lateness_tracker import LatenessTracker
from avplay.metrics.metrics_store import PlaybackMetrics
from avplay.playback import SchedulerState, SchedulerStats
from avplay.render import EnqueueResult, Renderer
from avplay.runtime.cancellation import CancelToken

logger = logging.getLogger(__name__)

# QueueFull backoff 상한 (초)
_MAX_QUEUE_FULL_BACKOFF_SEC = 0.05

# 늦은 프레임 드롭 요약 로그 간격 (드롭 횟수)
_LATE_DROP_LOG_EVERY = 50

# 전달 순서 기록 최대 개수
_DELIVERY_ORDER_LIMIT = 10_000

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[bool]]


class PlaybackScheduler:
    """
    FrameBuffer → Renderer 전달을 wall-clock에 맞춰 수행하는 스케줄러입니다.

    Scheduler는 이미 dequeue한 프레임만 드롭하며, 버퍼에 남은 프레임은 건드리지 않습니다.
    렌더러가 OK를 반환하면 프레임 소유권은 렌더러로 넘어가고,
    드롭/중단 시에는 Scheduler가 직접 release합니다.
    """

    def __init__(
        self,
        frame_buffer: FrameBuffer,
        renderer: Renderer,
        cancel_token: CancelToken,
        *,
        stream_kinds: dict[int, MediaKind],
        low_watermark: int = 8,
        late_drop_ms: int = 100,
        master_stream: Optional[int] = None,
        prefer_audio: bool = True,
        poll_interval_sec: float = 0.005,
        queue_full_retry_sec: float = 0.002,
        queue_full_max_retries: int = 5,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleeper] = None,
        metrics: Optional[PlaybackMetrics] = None,
        lateness: Optional[LatenessTracker] = None,
    ) -> None:
        """
        파라미터:
            frame_buffer: 소비할 공유 프레임 버퍼
            renderer: 프레임을 넘길 렌더러 (enqueue/close_input)
            cancel_token: 공유 취소 신호
            stream_kinds: 스트림 인덱스 → 미디어 종류
            low_watermark: 재생 시작에 필요한 최소 버퍼 프레임 수
            late_drop_ms: 늦은 비디오 드롭 임계값 (ms)
            master_stream: 명시적 master 스트림 (None이면 prefer_audio 정책)
            prefer_audio: True면 가장 낮은 인덱스의 오디오 스트림을 master로 사용
            poll_interval_sec: 빈 버퍼 폴링 주기 (초)
            queue_full_retry_sec: QueueFull 첫 재시도 간격 (초, 이후 2배씩 증가)
            queue_full_max_retries: QueueFull 최대 재시도 횟수
            clock: 단조 시계 함수 (초)
            sleep: 취소 확인 대기 함수 (None이면 cancel_token.sleep)
            metrics: 카운터 저장소 (선택)
            lateness: lateness 통계 추적기 (선택)

        에러:
            BadParameterError: master_stream이 버퍼 스트림에 없을 때
        """
        if master_stream is not None and master_stream not in stream_kinds:
            raise BadParameterError(
                f"master 스트림 {master_stream}이 선택된 스트림 {sorted(stream_kinds)}에 없습니다"
            )

        self._buffer = frame_buffer
        self._renderer = renderer
        self._cancel_token = cancel_token
        self._stream_kinds = dict(stream_kinds)
        self._low_watermark = low_watermark
        self._late_drop_ms = late_drop_ms
        self._poll_interval_sec = poll_interval_sec
        self._queue_full_retry_sec = queue_full_retry_sec
        self._queue_full_max_retries = queue_full_max_retries
        self._clock = clock
        self._sleep: Sleeper = sleep or self._cancel_token.sleep
        self._metrics = metrics
        self._lateness = lateness
        self._stream_logs: dict[int, StreamLoggerAdapter] = {
            index: get_stream_logger(__name__, index, kind) for index, kind in self._stream_kinds.items()
        }

        self._master: Optional[int] = self._resolve_master(master_stream, prefer_audio)
        self._renderer_stopped: bool = False
        self._retained: Optional[Frame] = None
        self._stats = SchedulerStats()

        logger.info(
            f"PlaybackScheduler 초기화: low_watermark={low_watermark}, "
            f"late_drop_ms={late_drop_ms}, "
            f"master={self._master if self._master is not None else 'first-frame'}"
        )

    # =========================================================================
    # 상태 조회 / 설정 변경
    # =========================================================================

    @property
    def state(self) -> SchedulerState:
        return self._stats.state

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    @property
    def anchor(self) -> Optional[tuple[int, float]]:
        return self._stats.anchor

    def update_thresholds(
        self,
        low_watermark: Optional[int] = None,
        late_drop_ms: Optional[int] = None,
    ) -> None:
        """재생 중 low-watermark와 late-drop 임계값을 변경합니다 (설정 핫스왑)."""
        if low_watermark is not None:
            self._low_watermark = low_watermark
        if late_drop_ms is not None:
            self._late_drop_ms = late_drop_ms
        logger.info(
            f"스케줄러 임계값 변경: low_watermark={self._low_watermark}, "
            f"late_drop_ms={self._late_drop_ms}"
        )

    # =========================================================================
    # 실행
    # =========================================================================

    async def run(self) -> SchedulerStats:
        """
        스케줄러 상태 머신을 실행합니다.

        종료 조건: 취소, 렌더러 STOPPED, 또는 모든 스트림 종료 + 버퍼 비움.
        종료 시 렌더러에 close_input()을 호출합니다.

        반환값:
            SchedulerStats: 실행 통계
        """
        try:
            if await self._wait_for_data() and await self._anchor():
                await self._stream()
        finally:
            if self._retained is not None:
                self._retained.release()
                self._retained = None
                self._stats.discarded_on_stop += 1
            self._set_state(SchedulerState.STOPPED)
            self._renderer.close_input()

        logger.info(
            f"스케줄러 종료: delivered={self._stats.delivered}, "
            f"dropped_late={self._stats.dropped_late}, "
            f"dropped_queue_full={self._stats.dropped_queue_full}, "
            f"cancel_reason={self._cancel_token.reason or '-'}"
        )
        return self._stats

    async def _wait_for_data(self) -> bool:
        self._set_state(SchedulerState.WAITING_FOR_DATA)
        while not self._should_stop():
            stats = self._buffer.stats()
            if self._metrics is not None:
                self._metrics.update_buffer_stats(stats)
            # 모든 스트림 생산이 끝났으면 low-watermark 미만이어도 남은 프레임 재생
            production_done = len(stats.closed_streams) == stats.streams
            if (
                stats.total_frames >= self._low_watermark
                or stats.full
                or stats.producer_blocked
                or production_done
            ):
                logger.info(
                    f"재생 준비 완료: buffered={stats.total_frames}, "
                    f"full={stats.full}, production_done={production_done}"
                )
                return True
            await self._sleep(self._poll_interval_sec)
        return False

    async def _anchor(self) -> bool:
        self._set_state(SchedulerState.ANCHORING)
        while not self._should_stop():
            if self._master is not None:
                frame = self._buffer.next(self._master)
                if frame is None:
                    if self._buffer.is_stream_drained(self._master):
                        logger.warning(
                            f"master 스트림 {self._master}에 프레임이 없어 첫 프레임 기준으로 앵커합니다"
                        )
                        self._master = None
                        continue
                    frame = self._take_when_saturated()
            else:
                frame = self._buffer.next()
                if frame is None and self._buffer.stats().all_closed:
                    logger.info("재생할 프레임이 없습니다")
                    return False

            if frame is None:
                await self._sleep(self._poll_interval_sec)
                continue

            self._master = frame.stream_index
            now = self._clock()
            self._stats.anchor = (frame.pts_ms, now)
            self._stats.master_stream = frame.stream_index
            logger.info(
                f"앵커 설정: master={frame.stream_index}, pts={frame.pts_ms}ms"
            )
            self._retained = frame
            await self._deliver(frame, lateness_ms=0.0)
            return True
        return False

    def _take_when_saturated(self) -> Optional[Frame]:
        # 다른 스트림이 버퍼를 채워 demux가 막히면 master 프레임은 영영 도착하지 않음
        stats = self._buffer.stats()
        if not (stats.full or stats.producer_blocked):
            return None
        frame = self._buffer.next()
        if frame is not None:
            logger.warning(
                f"버퍼 포화 상태에서 master 스트림 {self._master} 프레임이 없어 "
                f"스트림 {frame.stream_index} 프레임 기준으로 앵커합니다 "
                f"(buffered={stats.total_frames})"
            )
        return frame

    async def _stream(self) -> None:
        self._set_state(SchedulerState.STREAMING)
        while not self._should_stop():
            frame = self._buffer.next()
            if frame is None:
                if self._buffer.stats().all_closed:
                    logger.info("모든 스트림 재생 완료")
                    return
                await self._sleep(self._poll_interval_sec)
                continue

            self._retained = frame
            await self._present(frame)

            if self._metrics is not None and self._stats.delivered % 100 == 0:
                self._metrics.update_buffer_stats(self._buffer.stats())

    async def _present(self, frame: Frame) -> None:
        anchor_pts, anchor_wall = self._stats.anchor
        target = anchor_wall + (frame.pts_ms - anchor_pts) / 1000.0
        delta = target - self._clock()

        if delta > 0:
            if await self._sleep(delta):
                # 대기 중 취소: run()의 finally에서 release
                return
        elif frame.kind == MediaKind.VIDEO and -delta * 1000.0 > self._late_drop_ms:
            self._drop_late(frame, -delta * 1000.0)
            return

        lateness_ms = (self._clock() - target) * 1000.0
        await self._deliver(frame, lateness_ms)

    async def _deliver(self, frame: Frame, lateness_ms: float) -> None:
        backoff = self._queue_full_retry_sec
        retries = 0
        while True:
            result = self._renderer.enqueue(frame)

            if result == EnqueueResult.OK:
                self._retained = None
                self._record_delivered(frame, lateness_ms)
                return

            if result == EnqueueResult.STOPPED:
                logger.info("렌더러가 중단되어 스케줄러를 종료합니다")
                self._renderer_stopped = True
                return

            if retries >= self._queue_full_max_retries:
                self._drop_queue_full(frame, retries)
                return

            retries += 1
            if await self._sleep(backoff):
                return
            backoff = min(backoff * 2, _MAX_QUEUE_FULL_BACKOFF_SEC)

    # =========================================================================
    # 내부 헬퍼
    # =========================================================================

    def _resolve_master(self, master_stream: Optional[int], prefer_audio: bool) -> Optional[int]:
        if master_stream is not None:
            return master_stream
        if prefer_audio:
            audio_streams = sorted(
                index for index, kind in self._stream_kinds.items() if kind == MediaKind.AUDIO
            )
            if audio_streams:
                return audio_streams[0]
        return None

    def _stream_log(self, frame: Frame) -> StreamLoggerAdapter | logging.Logger:
        return self._stream_logs.get(frame.stream_index, logger)

    def _should_stop(self) -> bool:
        return self._cancel_token.is_cancelled or self._renderer_stopped

    def _set_state(self, state: SchedulerState) -> None:
        if self._stats.state != state:
            logger.info(f"스케줄러 상태 전이: {self._stats.state.value} -> {state.value}")
            self._stats.state = state

    def _record_delivered(self, frame: Frame, lateness_ms: float) -> None:
        stats = self._stats
        stats.delivered += 1
        stats.delivered_per_stream[frame.stream_index] = (
            stats.delivered_per_stream.get(frame.stream_index, 0) + 1
        )
        if len(stats.delivery_order) < _DELIVERY_ORDER_LIMIT:
            stats.delivery_order.append((frame.stream_index, frame.pts_ms))
        if self._metrics is not None:
            self._metrics.record_delivered(frame.stream_index)
        if self._lateness is not None:
            self._lateness.record(frame.kind.value, lateness_ms)
        self._stream_log(frame).debug(
            f"프레임 전달: pts={frame.pts_ms}ms, lateness={lateness_ms:.1f}ms"
        )

    def _drop_late(self, frame: Frame, late_ms: float) -> None:
        frame.release()
        self._retained = None
        stats = self._stats
        stats.dropped_late += 1
        stats.dropped_per_stream[frame.stream_index] = (
            stats.dropped_per_stream.get(frame.stream_index, 0) + 1
        )
        if self._metrics is not None:
            self._metrics.record_dropped(frame.stream_index, "late")
        if self._lateness is not None:
            self._lateness.record(frame.kind.value, late_ms)

        if stats.dropped_late % _LATE_DROP_LOG_EVERY == 0:
            logger.info(f"늦은 비디오 프레임 드롭 누적: {stats.dropped_late}개")
        else:
            self._stream_log(frame).debug(
                f"늦은 비디오 프레임 드롭: pts={frame.pts_ms}ms, late={late_ms:.1f}ms"
            )

    def _drop_queue_full(self, frame: Frame, retries: int) -> None:
        frame.release()
        self._retained = None
        stats = self._stats
        stats.dropped_queue_full += 1
        stats.dropped_per_stream[frame.stream_index] = (
            stats.dropped_per_stream.get(frame.stream_index, 0) + 1
        )
        if self._metrics is not None:
            self._metrics.record_dropped(frame.stream_index, "queue_full")
        self._stream_log(frame).warning(
            f"렌더러 큐 포화로 프레임 드롭: pts={frame.pts_ms}ms, retries={retries}"
        )
