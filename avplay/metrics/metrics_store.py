"""
공유 재생 메트릭 저장소 모듈입니다.

역할:
- Demux Loop(워커 스레드)와 Scheduler(이벤트 루프)가 함께 갱신하는 thread-safe 카운터
- 스트림별 디코드/재시도/전달/드롭/에러 수 집계
- 마지막 FrameBuffer 상태 기록
- snapshot()으로 일관된 복사본 제공 (주기 리포트 및 종료 요약에 사용)

사용 예시:
    >>> metrics = PlaybackMetrics()
    >>> metrics.record_decoded(0)
    >>> metrics.snapshot().streams[0].decoded
    1
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time

from avplay.buffer import BufferStats
from avplay.metrics import MetricsSnapshot, StreamCounters

logger = logging.getLogger(__name__)


class PlaybackMetrics:
    """
    재생 파이프라인 전체 카운터를 중앙에서 관리하는 thread-safe 저장소입니다.

    모든 공개 메서드는 RLock으로 보호됩니다.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._streams: dict[int, StreamCounters] = {}
        self._buffer_total_frames: int = 0
        self._buffer_duration_ms: int = 0
        self._updated_at_ns: int = 0

    # =========================================================================
    # 디코드 측 (Demux Loop 스레드)
    # =========================================================================

    def record_decoded(self, stream_index: int) -> None:
        """프레임 하나가 버퍼에 push되었음을 기록합니다."""
        with self._lock:
            self._counters(stream_index).decoded += 1
            self._touch()

    def record_buffer_full_retry(self, stream_index: int) -> None:
        """BufferFull 재시도 한 번을 기록합니다."""
        with self._lock:
            self._counters(stream_index).buffer_full_retries += 1
            self._touch()

    def record_decode_error(self, stream_index: int) -> None:
        """디코드 에러를 기록합니다."""
        with self._lock:
            self._counters(stream_index).decode_errors += 1
            self._touch()

    # =========================================================================
    # 재생 측 (Scheduler)
    # =========================================================================

    def record_delivered(self, stream_index: int) -> None:
        """렌더러 전달 성공을 기록합니다."""
        with self._lock:
            self._counters(stream_index).delivered += 1
            self._touch()

    def record_dropped(self, stream_index: int, reason: str) -> None:
        """
        프레임 드롭을 기록합니다.

        파라미터:
            stream_index: 스트림 인덱스
            reason: "late" | "queue_full"
        """
        with self._lock:
            counters = self._counters(stream_index)
            if reason == "late":
                counters.dropped_late += 1
            elif reason == "queue_full":
                counters.dropped_queue_full += 1
            else:
                raise ValueError(f"알 수 없는 드롭 사유: {reason}")
            self._touch()

    def update_buffer_stats(self, stats: BufferStats) -> None:
        """마지막 FrameBuffer 상태를 기록합니다."""
        with self._lock:
            self._buffer_total_frames = stats.total_frames
            self._buffer_duration_ms = stats.duration_ms
            self._touch()

    # =========================================================================
    # 조회
    # =========================================================================

    def snapshot(self) -> MetricsSnapshot:
        """현재 카운터의 복사본을 반환합니다."""
        with self._lock:
            return MetricsSnapshot(
                streams={
                    index: dataclasses.replace(counters)
                    for index, counters in self._streams.items()
                },
                buffer_total_frames=self._buffer_total_frames,
                buffer_duration_ms=self._buffer_duration_ms,
                updated_at_ns=self._updated_at_ns,
            )

    def log_summary(self) -> None:
        """스트림별 카운터 요약을 INFO 로그로 출력합니다."""
        snapshot = self.snapshot()
        if not snapshot.streams:
            return
        logger.info(
            "재생 메트릭: "
            + ", ".join(
                f"stream{index}(decoded={c.decoded}, delivered={c.delivered}, "
                f"late={c.dropped_late}, queue_full={c.dropped_queue_full}, "
                f"retries={c.buffer_full_retries}, errors={c.decode_errors})"
                for index, c in sorted(snapshot.streams.items())
            )
            + f", buffer={snapshot.buffer_total_frames}frames/{snapshot.buffer_duration_ms}ms"
        )

    # =========================================================================
    # 내부 헬퍼 (락 보유 상태에서 호출)
    # =========================================================================

    def _counters(self, stream_index: int) -> StreamCounters:
        counters = self._streams.get(stream_index)
        if counters is None:
            counters = StreamCounters()
            self._streams[stream_index] = counters
        return counters

    def _touch(self) -> None:
        self._updated_at_ns = time.time_ns()
