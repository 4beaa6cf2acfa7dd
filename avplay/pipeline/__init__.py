"""
재생 파이프라인 모듈 패키지

공통 데이터 타입 정의:
- PipelineOutcome: 파이프라인 종료 결과
- PipelineResult: 파이프라인 실행 결과 (각 단계 통계 + 에러)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from avplay.buffer import BufferStats
from avplay.decode.demux_loop import DemuxOutcome, DemuxResult
from avplay.engine.errors import (
    AggregateDecodeError,
    PlaybackCancelled,
    PlaybackError,
    StreamDecodeError,
)
from avplay.playback import SchedulerStats
from avplay.render import RenderStats


class PipelineOutcome(str, Enum):
    """파이프라인 종료 결과입니다."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class PipelineResult:
    """
    PlaybackPipeline.run() 결과입니다.

    필드:
        outcome: 종료 결과
        demux: Demux Loop 결과 (소스를 열지 못했으면 None)
        scheduler: 스케줄러 통계
        render: 렌더러 소비 통계
        decode_errors: 스트림별 디코드 실패 목록
        error: 파이프라인을 실패시킨 예외 (소스 열기 실패, 태스크 오류 등)
        cancel_reason: 취소 사유
        buffer_stats: 종료 시점 FrameBuffer 상태
    """
    outcome: PipelineOutcome
    demux: Optional[DemuxResult] = None
    scheduler: Optional[SchedulerStats] = None
    render: Optional[RenderStats] = None
    decode_errors: list[StreamDecodeError] = field(default_factory=list)
    error: Optional[BaseException] = None
    cancel_reason: str = ""
    buffer_stats: Optional[BufferStats] = None

    def raise_for_errors(self) -> None:
        """
        실패/취소 결과를 예외로 변환합니다. 정상 완료면 아무것도 하지 않습니다.

        에러:
            SourceIOError: 소스 열기/읽기 실패
            PlaybackCancelled: 취소됨
            AggregateDecodeError: 스트림 디코드 실패
            PlaybackError: 그 외 파이프라인 실패
        """
        if self.outcome == PipelineOutcome.CANCELLED:
            raise PlaybackCancelled(self.cancel_reason)
        if self.error is not None:
            if isinstance(self.error, PlaybackError):
                raise self.error
            raise PlaybackError(f"파이프라인 실패: {self.error}") from self.error
        if self.demux is not None and self.demux.outcome == DemuxOutcome.IO_ERROR:
            self.demux.raise_for_errors()
        if self.decode_errors:
            raise AggregateDecodeError(self.decode_errors)
