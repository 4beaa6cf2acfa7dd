"""
avplay 설정 스키마 정의 모듈입니다.

역할:
- Pydantic v2 BaseModel 기반으로 config.yaml의 전체 구조를 타입 안전하게 정의
- 각 섹션(system, source, output, synthetic, buffer, decode, scheduler, renderer, metrics)을
  독립적인 중첩 모델로 분리
- 필드별 기본값, 허용 범위, 유효성 검증(validator)을 포함

사용 예시:
    >>> from avplay.config.schema import AppConfig
    >>> config = AppConfig(**yaml_data)
    >>> print(config.scheduler.late_drop_ms)
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# 모듈 로거 설정
logger = logging.getLogger(__name__)


# =============================================================================
# system 섹션: 시스템 전역 설정
# =============================================================================

class SystemConfig(BaseModel):
    """
    시스템 전역 설정을 정의하는 모델입니다.

    역할:
    - 실행 모드(file/synthetic) 결정
    - 로깅 레벨 및 포맷 지정
    - 세션 식별자 관리
    """
    # 실행 모드: "file"은 PyAV로 실제 미디어 재생, "synthetic"은 합성 소스 재생
    mode: str = Field(default="file", description="실행 모드 (file | synthetic)")
    # 로그 출력 레벨
    log_level: str = Field(default="INFO", description="로그 레벨 (DEBUG | INFO | WARNING | ERROR)")
    # 로그 출력 포맷
    log_format: str = Field(default="json", description="로그 포맷 (json | text)")
    # 로그 파일 저장 디렉토리 경로
    log_dir: str = Field(default="output/logs", description="로그 저장 디렉토리")
    # 세션 고유 식별자 (빈 문자열이면 UUID로 자동 생성)
    session_id: str = Field(default="", description="세션 ID (비어있으면 UUID 자동생성)")

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, value: str) -> str:
        """실행 모드가 허용된 값인지 검증합니다."""
        allowed_modes = ("file", "synthetic")
        if value not in allowed_modes:
            error_message = f"mode는 {allowed_modes} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """로그 레벨이 유효한 Python 로깅 레벨인지 검증합니다."""
        allowed_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        # 대소문자 구분 없이 비교 후 대문자로 정규화
        upper_value = value.upper()
        if upper_value not in allowed_levels:
            error_message = f"log_level은 {allowed_levels} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return upper_value

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, value: str) -> str:
        """로그 포맷이 지원되는 형식인지 검증합니다."""
        allowed_formats = ("json", "text")
        if value not in allowed_formats:
            error_message = f"log_format은 {allowed_formats} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value


# =============================================================================
# source / output / synthetic 섹션: 입력 소스 설정
# =============================================================================

class SourceConfig(BaseModel):
    """
    재생할 입력 소스와 스트림 선택 규칙입니다.

    역할:
    - 파일 경로/URL 및 demuxer 옵션 지정
    - 종류 필터(kinds) 또는 명시적 스트림 인덱스(stream_indices)로 스트림 선택
    """
    # 파일 경로 또는 URL (file 모드 전용)
    locator: str = Field(default="", description="입력 파일 경로 또는 URL")
    # 강제 입력 포맷 (빈 문자열이면 자동 감지)
    input_format: str = Field(default="", description="입력 포맷 이름 (비어있으면 자동)")
    # demuxer 옵션
    options: dict[str, str] = Field(default_factory=dict, description="demuxer 옵션")
    # 디코드할 미디어 종류 (종류별 best 스트림 1개씩 선택)
    kinds: list[str] = Field(default=["audio", "video"], description="디코드할 미디어 종류")
    # 명시적 스트림 인덱스 (지정 시 kinds보다 우선)
    stream_indices: list[int] = Field(default_factory=list, description="디코드할 스트림 인덱스")

    @field_validator("kinds")
    @classmethod
    def validate_kinds(cls, value: list[str]) -> list[str]:
        """미디어 종류가 디코드 가능한 종류인지 검증합니다."""
        allowed_kinds = ("audio", "video", "subtitle")
        normalized = [kind.lower() for kind in value]
        for kind in normalized:
            if kind not in allowed_kinds:
                error_message = f"kinds는 {allowed_kinds} 중에서 선택해야 합니다. 입력값: '{kind}'"
                raise ValueError(error_message)
        return normalized

    @field_validator("stream_indices")
    @classmethod
    def validate_stream_indices(cls, value: list[int]) -> list[int]:
        """스트림 인덱스가 음수가 아닌지 검증합니다."""
        if any(index < 0 for index in value):
            raise ValueError(f"stream_indices는 0 이상이어야 합니다. 입력값: {value}")
        return value


class OutputConfig(BaseModel):
    """
    디코드 출력 포맷 변환 설정입니다. 빈 값/0은 원본 포맷 유지를 의미합니다.
    """
    # 비디오 출력 픽셀 포맷 (예: "bgr24", "yuv420p")
    video_pixel_format: str = Field(default="", description="비디오 출력 픽셀 포맷")
    # 오디오 출력 샘플 포맷 (예: "s16", "fltp")
    audio_sample_format: str = Field(default="", description="오디오 출력 샘플 포맷")
    # 오디오 출력 채널 레이아웃 (예: "stereo")
    audio_layout: str = Field(default="", description="오디오 출력 채널 레이아웃")
    # 오디오 출력 샘플링레이트 (Hz)
    audio_sample_rate: int = Field(default=0, ge=0, description="오디오 출력 샘플링레이트 (0=원본)")


class SyntheticConfig(BaseModel):
    """
    합성 소스(mode=synthetic) 생성 파라미터입니다.

    오디오 1개 + 비디오 1개 스트림을 duration_ms 동안 생성합니다.
    """
    # 총 재생 길이 (ms)
    duration_ms: int = Field(default=5000, gt=0, description="합성 소스 길이 (ms)")
    # 오디오 프레임 간격 (ms)
    audio_interval_ms: int = Field(default=20, gt=0, description="오디오 프레임 간격 (ms)")
    # 비디오 프레임 간격 (ms)
    video_interval_ms: int = Field(default=33, gt=0, description="비디오 프레임 간격 (ms)")
    # 비디오 크기
    width: int = Field(default=320, gt=0, description="비디오 가로 픽셀 수")
    height: int = Field(default=180, gt=0, description="비디오 세로 픽셀 수")
    # 오디오 샘플링레이트 (Hz)
    sample_rate: int = Field(default=48000, gt=0, description="오디오 샘플링레이트 (Hz)")


# =============================================================================
# buffer / decode 섹션: 프레임 버퍼 및 디코드 설정
# =============================================================================

class BufferConfig(BaseModel):
    """
    FrameBuffer 용량 설정입니다. 두 한도 중 하나 이상은 0보다 커야 합니다.
    """
    # 최대 버퍼 프레임 수 (0 = 제한 없음)
    max_frames: int = Field(default=120, ge=0, description="최대 버퍼 프레임 수")
    # 최대 버퍼 구간 (ms, 0 = 제한 없음)
    max_duration_ms: int = Field(default=0, ge=0, description="최대 버퍼 구간 (ms)")

    @model_validator(mode="after")
    def validate_bounds(self) -> BufferConfig:
        """최소 하나의 용량 한도가 설정되었는지 검증합니다."""
        if self.max_frames == 0 and self.max_duration_ms == 0:
            raise ValueError("buffer.max_frames 또는 buffer.max_duration_ms 중 하나는 0보다 커야 합니다")
        return self


class DecodeConfig(BaseModel):
    """디코드 컨텍스트 설정입니다."""
    # BufferFull 재시도 간격 (ms)
    buffer_full_retry_ms: int = Field(default=5, gt=0, description="BufferFull 재시도 간격 (ms)")


# =============================================================================
# scheduler / renderer 섹션: 재생 스케줄링 설정
# =============================================================================

class SchedulerConfig(BaseModel):
    """
    Playback Scheduler 설정입니다.

    역할:
    - 재생 시작 low-watermark, 늦은 비디오 드롭 임계값 지정
    - master 스트림 정책 (명시적 인덱스 또는 오디오 우선)
    - 빈 버퍼 폴링 주기 및 렌더러 QueueFull 재시도 정책
    """
    # 재생 시작에 필요한 최소 버퍼 프레임 수
    low_watermark: int = Field(default=8, ge=0, description="재생 시작 최소 버퍼 프레임 수")
    # 늦은 비디오 프레임 드롭 임계값 (ms)
    late_drop_ms: int = Field(default=100, ge=0, description="늦은 비디오 드롭 임계값 (ms)")
    # master 스트림 인덱스 (None이면 prefer_audio 정책)
    master_stream: Optional[int] = Field(default=None, ge=0, description="master 스트림 인덱스")
    # 오디오 스트림을 master로 우선 선택
    prefer_audio: bool = Field(default=True, description="오디오 master 우선 여부")
    # 빈 버퍼 폴링 주기 (ms)
    poll_interval_ms: int = Field(default=5, gt=0, description="빈 버퍼 폴링 주기 (ms)")
    # 렌더러 QueueFull 재시도 초기 간격 (ms, 재시도마다 2배)
    queue_full_retry_ms: int = Field(default=2, gt=0, description="QueueFull 재시도 간격 (ms)")
    # 렌더러 QueueFull 최대 재시도 횟수
    queue_full_max_retries: int = Field(default=5, ge=0, description="QueueFull 최대 재시도 횟수")


class RendererConfig(BaseModel):
    """렌더러 큐 및 프리뷰 창 설정입니다."""
    # 렌더러 입력 큐 최대 크기
    queue_size: int = Field(default=32, gt=0, description="렌더러 큐 최대 프레임 수")
    # OpenCV 프리뷰 창 표시 여부
    display: bool = Field(default=True, description="OpenCV 프리뷰 창 표시 여부")
    # 프리뷰 창 이름
    window_name: str = Field(default="avplay preview", description="프리뷰 창 이름")


# =============================================================================
# metrics 섹션: 메트릭 수집 설정
# =============================================================================

class MetricsConfig(BaseModel):
    """지연 통계 수집 설정입니다."""
    # lateness 통계 계산 슬라이딩 윈도우 (초)
    lateness_window_sec: int = Field(default=60, gt=0, description="lateness 통계 윈도우 (초)")
    # 주기적 메트릭 요약 로그 간격 (초, 0 = 비활성)
    report_interval_sec: float = Field(default=5.0, ge=0, description="메트릭 요약 로그 간격 (초)")


# =============================================================================
# 최상위 AppConfig: 모든 섹션을 통합하는 루트 모델
# =============================================================================

class AppConfig(BaseModel):
    """
    애플리케이션 전체 설정을 통합하는 최상위 모델입니다.

    역할:
    - config.yaml의 모든 섹션을 하나의 타입 안전한 객체로 통합
    - 섹션 간 교차 검증 (low_watermark ≤ max_frames)
    - 각 섹션이 누락된 경우 기본값으로 자동 생성

    사용 예시:
        >>> config = AppConfig(**{"buffer": {"max_frames": 10}, "scheduler": {"low_watermark": 4}})
        >>> config.scheduler.low_watermark
        4
    """
    system: SystemConfig = Field(default_factory=SystemConfig, description="시스템 설정")
    source: SourceConfig = Field(default_factory=SourceConfig, description="입력 소스 설정")
    output: OutputConfig = Field(default_factory=OutputConfig, description="출력 포맷 설정")
    synthetic: SyntheticConfig = Field(default_factory=SyntheticConfig, description="합성 소스 설정")
    buffer: BufferConfig = Field(default_factory=BufferConfig, description="프레임 버퍼 설정")
    decode: DecodeConfig = Field(default_factory=DecodeConfig, description="디코드 설정")
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig, description="스케줄러 설정")
    renderer: RendererConfig = Field(default_factory=RendererConfig, description="렌더러 설정")
    metrics: MetricsConfig = Field(default_factory=MetricsConfig, description="메트릭 설정")

    @model_validator(mode="after")
    def validate_watermark(self) -> AppConfig:
        """low_watermark가 프레임 수 한도를 넘지 않는지 검증합니다."""
        max_frames = self.buffer.max_frames
        if max_frames > 0 and self.scheduler.low_watermark > max_frames:
            error_message = (
                f"scheduler.low_watermark({self.scheduler.low_watermark})는 "
                f"buffer.max_frames({max_frames}) 이하여야 합니다"
            )
            raise ValueError(error_message)
        return self
