"""
프레임 버퍼 모듈 패키지

공통 데이터 타입 정의:
- PushResult: push 결과 (OK | BUFFER_FULL)
- BufferStats: 버퍼 상태 스냅샷
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class PushResult(str, Enum):
    """FrameBuffer.push() 결과입니다."""
    OK = "ok"
    BUFFER_FULL = "buffer_full"


@dataclass
class BufferStats:
    """
    FrameBuffer 상태의 읽기 전용 스냅샷입니다.

    필드:
        total_frames: 현재 버퍼에 남은 프레임 수
        all_closed: 모든 스트림이 닫히고 버퍼가 비었는지 여부 (한 번 True면 유지)
        per_stream_counts: 스트림 인덱스 → 버퍼된 프레임 수
        streams: 버퍼가 관리하는 스트림 수
        oldest_pts: 가장 오래된 미소비 프레임 PTS (ms, 비어있으면 None)
        newest_pts: 가장 최근 push된 미소비 프레임 PTS (ms, 비어있으면 None)
        duration_ms: newest_pts - oldest_pts
        full: 현재 용량 한도에 도달했는지 여부
        producer_blocked: 마지막 push가 BUFFER_FULL로 거절된 뒤 아직 소비가 없었는지 여부
        closed_streams: 닫힌 스트림 인덱스 목록
        pushed: 누적 push 성공 수
        consumed: 누적 next() 반환 수
        dropped: 누적 clear()로 버려진 프레임 수
    """
    total_frames: int = 0
    all_closed: bool = False
    per_stream_counts: dict[int, int] = field(default_factory=dict)
    streams: int = 0
    oldest_pts: Optional[int] = None
    newest_pts: Optional[int] = None
    duration_ms: int = 0
    full: bool = False
    producer_blocked: bool = False
    closed_streams: list[int] = field(default_factory=list)
    pushed: int = 0
    consumed: int = 0
    dropped: int = 0
