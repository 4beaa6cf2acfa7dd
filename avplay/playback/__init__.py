"""
재생 스케줄링 모듈 패키지

공통 데이터 타입 정의:
- SchedulerState: Playback Scheduler 상태
- SchedulerStats: 스케줄러 전달/드롭 통계
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class SchedulerState(str, Enum):
    """Playback Scheduler 상태입니다."""
    WAITING_FOR_DATA = "waiting_for_data"
    ANCHORING = "anchoring"
    STREAMING = "streaming"
    STOPPED = "stopped"


@dataclass
class SchedulerStats:
    """
    스케줄러 실행 통계입니다.

    필드:
        state: 마지막 상태
        master_stream: 앵커를 잡은 master 스트림 인덱스
        anchor: (앵커 프레임 PTS ms, 앵커 wall-clock 초) 또는 None
        delivered: 렌더러에 전달된 프레임 수
        dropped_late: 늦어서 드롭된 비디오 프레임 수
        dropped_queue_full: QueueFull 재시도 소진으로 드롭된 프레임 수
        discarded_on_stop: 취소/중단 시점에 손에 쥐고 있다가 release한 프레임 수
        delivered_per_stream: 스트림별 전달 수
        dropped_per_stream: 스트림별 드롭 수
        delivery_order: 전달 순서 기록 (stream_index, pts_ms), 최대 record_limit개
    """
    state: SchedulerState = SchedulerState.WAITING_FOR_DATA
    master_stream: Optional[int] = None
    anchor: Optional[tuple[int, float]] = None
    delivered: int = 0
    dropped_late: int = 0
    dropped_queue_full: int = 0
    discarded_on_stop: int = 0
    delivered_per_stream: dict[int, int] = field(default_factory=dict)
    dropped_per_stream: dict[int, int] = field(default_factory=dict)
    delivery_order: list[tuple[int, int]] = field(default_factory=list)

    @property
    def dropped(self) -> int:
        return self.dropped_late + self.dropped_queue_full
