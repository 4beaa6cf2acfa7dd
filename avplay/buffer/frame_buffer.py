"""
다중 스트림 프레임 버퍼 모듈입니다.

역할:
- 디코드된 Frame을 스트림별 FIFO 큐에 보관 (삽입 순번 포함)
- 프레임 수 또는 버퍼된 표시 시간 구간(ms)으로 용량 제한
- 용량 초과 push는 상태 변경 없이 BUFFER_FULL로 거절 (유일한 backpressure 수단)
- next()는 블로킹 없이 가장 오래된 미소비 프레임을 반환 (스트림 필터 선택)
- 모든 스트림이 닫히고 비면 AllClosed 래치 설정 (이후 되돌아가지 않음)

동시성:
    단일 threading.Lock으로 모든 공개 메서드를 보호합니다.
    producer(Demux Loop 워커 스레드)와 consumer(Scheduler) 양쪽에서 안전하게 호출 가능합니다.

사용 예시:
    >>> buffer = FrameBuffer([0, 1], max_frames=10)
    >>> buffer.push(frame)
    <PushResult.OK: 'ok'>
    >>> buffer.next()
    Frame(stream_index=0, ...)
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Iterable, Optional

from avplay.buffer import BufferStats, PushResult
from avplay.engine import Frame
from avplay.engine.errors import BadParameterError

logger = logging.getLogger(__name__)


class _StreamQueue:
    """단일 스트림의 (삽입 순번, Frame) FIFO 큐입니다."""

    __slots__ = ("entries", "closed", "last_pts")

    def __init__(self) -> None:
        self.entries: deque[tuple[int, Frame]] = deque()
        self.closed: bool = False
        # 마지막으로 push된 PTS (소비 후에도 유지하여 역순 push 감지)
        self.last_pts: Optional[int] = None


class FrameBuffer:
    """
    bounded, thread-safe 다중 스트림 프레임 큐입니다.

    용량 규칙:
    - max_frames > 0: 전체 버퍼 프레임 수가 max_frames에 도달하면 push 거절
    - max_duration_ms > 0: push 후 (최신 PTS - 가장 오래된 미소비 PTS)가
      max_duration_ms를 초과하면 push 거절
    - 버퍼가 비어있으면 항상 push 허용 (단일 프레임은 항상 수용)

    소유권:
    - push 성공 시 Frame 소유권이 버퍼로 이동
    - next()가 반환한 Frame은 호출자가 소유하며 release() 책임을 가짐
    """

    def __init__(
        self,
        stream_indices: Iterable[int],
        *,
        max_frames: int = 0,
        max_duration_ms: int = 0,
    ) -> None:
        """
        FrameBuffer를 초기화합니다.

        파라미터:
            stream_indices: 버퍼가 관리할 스트림 인덱스 목록 (생성 후 추가 불가)
            max_frames: 최대 프레임 수 (0 = 제한 없음)
            max_duration_ms: 최대 버퍼 구간 (ms, 0 = 제한 없음)

        에러:
            BadParameterError: 스트림이 없거나, 중복 인덱스이거나, 두 한도가 모두 0일 때
        """
        indices = list(stream_indices)
        if not indices:
            raise BadParameterError("FrameBuffer에 최소 1개 스트림이 필요합니다")
        if len(set(indices)) != len(indices):
            raise BadParameterError(f"중복된 스트림 인덱스: {indices}")
        if max_frames < 0 or max_duration_ms < 0:
            raise BadParameterError(
                f"용량 한도는 음수일 수 없습니다: "
                f"max_frames={max_frames}, max_duration_ms={max_duration_ms}"
            )
        if max_frames == 0 and max_duration_ms == 0:
            raise BadParameterError("max_frames 또는 max_duration_ms 중 하나는 0보다 커야 합니다")

        self._max_frames = max_frames
        self._max_duration_ms = max_duration_ms
        self._lock = threading.Lock()
        self._queues: dict[int, _StreamQueue] = {index: _StreamQueue() for index in indices}

        self._sequence: int = 0
        self._total: int = 0
        self._all_closed: bool = False
        # BUFFER_FULL 거절 이후 next()/clear()로 공간이 생기기 전까지 True
        self._push_blocked: bool = False

        # 누적 카운터
        self._pushed: int = 0
        self._consumed: int = 0
        self._dropped: int = 0

        logger.info(
            f"FrameBuffer 초기화: streams={indices}, "
            f"max_frames={max_frames}, max_duration_ms={max_duration_ms}"
        )

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    def push(self, frame: Frame) -> PushResult:
        """
        프레임을 버퍼에 추가합니다. 블로킹하지 않습니다.

        파라미터:
            frame: 추가할 Frame (pts_ms는 스트림 내 비감소여야 함)

        반환값:
            PushResult.OK: 추가 성공 (소유권 이동)
            PushResult.BUFFER_FULL: 용량 초과로 거절 (버퍼 상태 변화 없음, 소유권 유지)

        에러:
            BadParameterError: 알 수 없는 스트림, 닫힌 스트림, 역순 PTS
        """
        with self._lock:
            queue = self._queues.get(frame.stream_index)
            if queue is None:
                raise BadParameterError(f"알 수 없는 스트림: {frame.stream_index}")
            if queue.closed:
                raise BadParameterError(f"닫힌 스트림에 push: {frame.stream_index}")
            if queue.last_pts is not None and frame.pts_ms < queue.last_pts:
                raise BadParameterError(
                    f"스트림 {frame.stream_index} PTS 역순: "
                    f"{frame.pts_ms} < {queue.last_pts}"
                )

            if self._total > 0 and self._would_overflow(frame.pts_ms):
                self._push_blocked = True
                return PushResult.BUFFER_FULL

            self._push_blocked = False

            queue.entries.append((self._sequence, frame))
            queue.last_pts = frame.pts_ms
            self._sequence += 1
            self._total += 1
            self._pushed += 1

        logger.debug(f"프레임 push: stream={frame.stream_index}, pts={frame.pts_ms}ms")
        return PushResult.OK

    def next(self, stream_index: Optional[int] = None) -> Optional[Frame]:
        """
        가장 오래된 미소비 프레임을 꺼냅니다. 비어있으면 None을 반환합니다.

        stream_index가 없으면 각 스트림 head 중 (pts, 삽입 순번)이 가장 작은 프레임을 반환합니다.

        파라미터:
            stream_index: 특정 스트림으로 제한 (None이면 전체)

        반환값:
            Optional[Frame]: 꺼낸 프레임 (소유권 이동) 또는 None

        에러:
            BadParameterError: 알 수 없는 스트림 인덱스
        """
        with self._lock:
            if stream_index is not None:
                if stream_index not in self._queues:
                    raise BadParameterError(f"알 수 없는 스트림: {stream_index}")
                queue = self._queues[stream_index]
            else:
                queue = self._oldest_head_queue()

            if queue is None or not queue.entries:
                return None

            _, frame = queue.entries.popleft()
            self._total -= 1
            self._consumed += 1
            self._push_blocked = False
            self._update_all_closed()
            return frame

    def close_stream(self, stream_index: int) -> None:
        """
        스트림의 생산 종료를 표시합니다. 여러 번 호출해도 안전합니다.

        에러:
            BadParameterError: 알 수 없는 스트림 인덱스
        """
        with self._lock:
            queue = self._queues.get(stream_index)
            if queue is None:
                raise BadParameterError(f"알 수 없는 스트림: {stream_index}")
            if queue.closed:
                return
            queue.closed = True
            self._update_all_closed()
            all_closed = self._all_closed

        logger.info(f"스트림 {stream_index} 닫힘 (all_closed={all_closed})")

    def clear(self) -> int:
        """
        버퍼된 모든 프레임을 release하고 버립니다 (취소 시 사용).

        닫힘 상태와 AllClosed 래치는 초기화하지 않습니다.

        반환값:
            int: 버려진 프레임 수
        """
        with self._lock:
            dropped = 0
            for queue in self._queues.values():
                while queue.entries:
                    _, frame = queue.entries.popleft()
                    frame.release()
                    dropped += 1
            self._total = 0
            self._dropped += dropped
            self._push_blocked = False
            self._update_all_closed()

        if dropped:
            logger.info(f"FrameBuffer 비움: {dropped}개 프레임 폐기")
        return dropped

    def stats(self) -> BufferStats:
        """현재 버퍼 상태 스냅샷을 반환합니다."""
        with self._lock:
            oldest, newest = self._pts_range()
            duration = (newest - oldest) if oldest is not None else 0
            return BufferStats(
                total_frames=self._total,
                all_closed=self._all_closed,
                per_stream_counts={
                    index: len(queue.entries) for index, queue in self._queues.items()
                },
                streams=len(self._queues),
                oldest_pts=oldest,
                newest_pts=newest,
                duration_ms=duration,
                full=self._is_full(duration),
                producer_blocked=self._push_blocked,
                closed_streams=[
                    index for index, queue in self._queues.items() if queue.closed
                ],
                pushed=self._pushed,
                consumed=self._consumed,
                dropped=self._dropped,
            )

    @property
    def stream_indices(self) -> list[int]:
        """버퍼가 관리하는 스트림 인덱스 목록입니다."""
        return list(self._queues)

    def is_stream_drained(self, stream_index: int) -> bool:
        """스트림이 닫혔고 버퍼된 프레임이 없으면 True를 반환합니다."""
        with self._lock:
            queue = self._queues.get(stream_index)
            if queue is None:
                raise BadParameterError(f"알 수 없는 스트림: {stream_index}")
            return queue.closed and not queue.entries

    # =========================================================================
    # 내부 헬퍼 (락 보유 상태에서 호출)
    # =========================================================================

    def _would_overflow(self, pts_ms: int) -> bool:
        if self._max_frames and self._total >= self._max_frames:
            return True
        if self._max_duration_ms:
            oldest, newest = self._pts_range()
            if oldest is not None:
                span = max(newest, pts_ms) - min(oldest, pts_ms)
                if span > self._max_duration_ms:
                    return True
        return False

    def _is_full(self, duration_ms: int) -> bool:
        if self._max_frames and self._total >= self._max_frames:
            return True
        return bool(self._max_duration_ms) and self._total > 0 and duration_ms >= self._max_duration_ms

    def _pts_range(self) -> tuple[Optional[int], Optional[int]]:
        oldest: Optional[int] = None
        newest: Optional[int] = None
        for queue in self._queues.values():
            if not queue.entries:
                continue
            head_pts = queue.entries[0][1].pts_ms
            tail_pts = queue.entries[-1][1].pts_ms
            oldest = head_pts if oldest is None else min(oldest, head_pts)
            newest = tail_pts if newest is None else max(newest, tail_pts)
        return oldest, newest

    def _oldest_head_queue(self) -> Optional[_StreamQueue]:
        best: Optional[_StreamQueue] = None
        best_key: Optional[tuple[int, int]] = None
        for queue in self._queues.values():
            if not queue.entries:
                continue
            sequence, frame = queue.entries[0]
            key = (frame.pts_ms, sequence)
            if best_key is None or key < best_key:
                best, best_key = queue, key
        return best

    def _update_all_closed(self) -> None:
        if self._all_closed:
            return
        if self._total == 0 and all(queue.closed for queue in self._queues.values()):
            self._all_closed = True
