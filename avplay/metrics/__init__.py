"""
메트릭 모듈 패키지

공통 데이터 타입:
- LatenessStats: 프레임 전달 지연(lateness) 통계 컨테이너
- StreamCounters: 스트림별 재생 카운터
"""

from dataclasses import dataclass, field


@dataclass
class LatenessStats:
    """
    미디어 종류별 프레임 전달 지연 통계입니다.

    lateness는 (실제 전달 시각 - 목표 시각)이며 양수면 늦게 전달된 것입니다.

    필드:
        kind: 미디어 종류 ("audio" | "video" | "subtitle")
        count: 측정 샘플 수
        mean_ms: 평균 lateness (밀리초)
        min_ms: 최소 lateness (밀리초)
        max_ms: 최대 lateness (밀리초)
        p95_ms: 95th percentile lateness (밀리초)
        p99_ms: 99th percentile lateness (밀리초)
    """
    kind: str
    count: int
    mean_ms: float
    min_ms: float
    max_ms: float
    p95_ms: float
    p99_ms: float


@dataclass
class StreamCounters:
    """
    단일 스트림의 누적 재생 카운터입니다.

    필드:
        decoded: 디코드되어 버퍼에 push된 프레임 수
        buffer_full_retries: BufferFull로 인한 push 재시도 횟수
        delivered: 렌더러에 전달된 프레임 수
        dropped_late: 늦어서 드롭된 프레임 수
        dropped_queue_full: 렌더러 큐가 가득 차 드롭된 프레임 수
        decode_errors: 디코드 에러 횟수
    """
    decoded: int = 0
    buffer_full_retries: int = 0
    delivered: int = 0
    dropped_late: int = 0
    dropped_queue_full: int = 0
    decode_errors: int = 0

    @property
    def dropped(self) -> int:
        return self.dropped_late + self.dropped_queue_full


@dataclass
class MetricsSnapshot:
    """PlaybackMetrics.snapshot()이 반환하는 복사본입니다."""
    streams: dict[int, StreamCounters] = field(default_factory=dict)
    buffer_total_frames: int = 0
    buffer_duration_ms: int = 0
    updated_at_ns: int = 0
