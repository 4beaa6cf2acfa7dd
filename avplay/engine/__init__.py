"""
디코드 엔진 모듈 패키지

외부 demux/decode 엔진과 코어 사이에서 주고받는 공통 데이터 타입 정의:
- MediaKind: 스트림 미디어 종류
- StreamDescriptor: 소스가 보고하는 스트림 정보 (불변)
- Packet: 압축 패킷 (스트림 timebase 기준 타임스탬프)
- DecodeStatus / DecodeResult: 디코드 호출의 태그드 결과
- Frame: 공통 버퍼 timebase(ms)로 재조정된 디코드 프레임
- Source / DecoderHandle: 엔진 어댑터가 구현해야 하는 인터페이스
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Any, Optional, Protocol


class MediaKind(str, Enum):
    """스트림 미디어 종류입니다."""
    AUDIO = "audio"
    VIDEO = "video"
    SUBTITLE = "subtitle"
    DATA = "data"
    UNKNOWN = "unknown"


# 디코드 컨텍스트를 만들 수 있는 미디어 종류
DECODABLE_KINDS = (MediaKind.AUDIO, MediaKind.VIDEO, MediaKind.SUBTITLE)


@dataclass(frozen=True)
class StreamDescriptor:
    """
    소스 내 단일 스트림 정보입니다.

    필드:
        index: 컨테이너 내 스트림 인덱스
        kind: 미디어 종류
        time_base: 스트림 timebase (예: Fraction(1, 48000))
        codec_name: 코덱 이름 (예: "aac", "h264")
        sample_rate: 오디오 샘플링레이트 (Hz, 비오디오는 0)
        channels: 오디오 채널 수 (비오디오는 0)
        width: 비디오 가로 픽셀 수 (비비디오는 0)
        height: 비디오 세로 픽셀 수 (비비디오는 0)
        pixel_format: 비디오 픽셀 포맷 이름
        rank: 소스가 보고한 선호 순위 (작을수록 우선, 0 = best stream)
    """
    index: int
    kind: MediaKind
    time_base: Fraction
    codec_name: str = ""
    sample_rate: int = 0
    channels: int = 0
    width: int = 0
    height: int = 0
    pixel_format: str = ""
    rank: int = 0


@dataclass
class Packet:
    """
    압축 패킷 컨테이너입니다.

    Demux Loop가 생성하고 해당 스트림의 DecodeContext가 정확히 한 번 소비한 뒤 버려집니다.

    필드:
        stream_index: 패킷이 속한 스트림 인덱스
        payload: 엔진 고유 형태의 압축 데이터 (bytes 또는 av.Packet)
        pts: 표시 타임스탬프 (스트림 timebase, 없으면 None)
        dts: 디코드 타임스탬프 (스트림 timebase, 없으면 None)
        is_keyframe: 키프레임 여부
    """
    stream_index: int
    payload: Any
    pts: Optional[int] = None
    dts: Optional[int] = None
    is_keyframe: bool = False


class DecodeStatus(str, Enum):
    """디코드 호출 결과 태그입니다."""
    FRAME = "frame"
    WOULD_BLOCK = "would_block"
    END_OF_STREAM = "end_of_stream"
    ERROR = "error"


@dataclass
class DecodeResult:
    """
    디코드 호출의 태그드 결과입니다.

    status에 따라 의미 있는 필드가 달라집니다:
    - FRAME: pts, payload, time_base(선택)
    - ERROR: error
    - WOULD_BLOCK / END_OF_STREAM: 추가 필드 없음
    """
    status: DecodeStatus
    pts: Optional[int] = None
    payload: Any = None
    time_base: Optional[Fraction] = None
    error: str = ""

    @classmethod
    def frame(
        cls,
        payload: Any,
        pts: Optional[int],
        time_base: Optional[Fraction] = None,
    ) -> DecodeResult:
        return cls(DecodeStatus.FRAME, pts=pts, payload=payload, time_base=time_base)

    @classmethod
    def would_block(cls) -> DecodeResult:
        return cls(DecodeStatus.WOULD_BLOCK)

    @classmethod
    def end_of_stream(cls) -> DecodeResult:
        return cls(DecodeStatus.END_OF_STREAM)

    @classmethod
    def failed(cls, error: str) -> DecodeResult:
        return cls(DecodeStatus.ERROR, error=error)


@dataclass
class Frame:
    """
    디코드된 프레임 컨테이너입니다.

    소유권은 마지막으로 프레임을 성공적으로 받은 컴포넌트에 있습니다
    (DecodeContext → FrameBuffer → Scheduler/렌더러).
    소비자는 사용이 끝나면 release()를 호출해야 합니다.

    필드:
        stream_index: 소속 스트림 인덱스
        kind: 미디어 종류
        pts_ms: 공통 버퍼 timebase(밀리초)로 재조정된 표시 타임스탬프
        payload: 샘플 블록 또는 픽처 (av.AudioFrame/av.VideoFrame/numpy 배열)
        released: release() 호출 여부
    """
    stream_index: int
    kind: MediaKind
    pts_ms: int
    payload: Any = None
    released: bool = False

    def release(self) -> None:
        """페이로드 참조를 해제합니다. 여러 번 호출해도 안전합니다."""
        self.payload = None
        self.released = True


class DecoderHandle(Protocol):
    """
    스트림 하나의 외부 디코더 인터페이스입니다.

    send()는 패킷(None이면 flush 마커)을 전달하고 성공 시 None, 실패 시 ERROR 결과를 반환합니다.
    receive()는 FRAME | WOULD_BLOCK | END_OF_STREAM | ERROR 중 하나를 반환합니다.
    """

    def send(self, packet: Optional[Packet]) -> Optional[DecodeResult]: ...

    def receive(self) -> DecodeResult: ...

    def close(self) -> None: ...


class Source(Protocol):
    """
    열린 컨테이너 핸들 인터페이스입니다.

    read_packet()은 EOF에서 None을 반환하고, 그 외 읽기 오류는 SourceIOError로 전파합니다.
    """

    def streams(self) -> list[StreamDescriptor]: ...

    def read_packet(self) -> Optional[Packet]: ...

    def open_decoder(self, descriptor: StreamDescriptor) -> DecoderHandle: ...

    def close(self) -> None: ...
