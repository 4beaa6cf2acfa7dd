"""
합성(모의) 소스 모듈입니다.

역할:
- 실제 미디어 파일 없이 Source/DecoderHandle 인터페이스를 구현하는 인프로세스 엔진
- 스트림별 프레임 간격, 프레임 수, timebase, 디코더 지연, 디코드 실패 지점 지정
- 모든 스트림의 패킷을 PTS(초) 순으로 인터리브하여 반환
- 지정한 패킷 수 이후 SourceIOError 발생 옵션 (I/O 장애 시뮬레이션)
- system.mode=synthetic 실행과 단위 테스트에서 공통 사용

사용 예시:
    >>> source = SyntheticSource([
    ...     SyntheticStreamSpec(kind=MediaKind.AUDIO, frame_interval_ms=20, frame_count=50),
    ...     SyntheticStreamSpec(kind=MediaKind.VIDEO, frame_interval_ms=33, frame_count=30),
    ... ])
    >>> packet = source.read_packet()
"""

from __future__ import annotations

import heapq
import logging
import math
from collections import deque
from dataclasses import dataclass
from fractions import Fraction
from typing import Iterator, Optional

import numpy as np

from avplay.config.schema import SyntheticConfig
from avplay.engine import (
    DECODABLE_KINDS,
    DecodeResult,
    MediaKind,
    Packet,
    StreamDescriptor,
)
from avplay.engine.errors import BadParameterError, SourceIOError

logger = logging.getLogger(__name__)

# 비디오 스트림 기본 timebase (MPEG-TS 90kHz 클럭)
_VIDEO_TIME_BASE = Fraction(1, 90000)


@dataclass
class SyntheticStreamSpec:
    """
    합성 스트림 하나의 생성 규칙입니다.

    필드:
        kind: 미디어 종류
        frame_interval_ms: 프레임 간 표시 간격 (ms)
        frame_count: 생성할 총 프레임 수
        time_base: 스트림 timebase (기본 1/1000)
        decode_delay: 디코더가 프레임을 내보내기 전 보유하는 패킷 수 (flush 시 배출)
        fail_at: 이 순번(0부터)의 패킷 전달 시 디코드 에러 반환 (None이면 실패 없음)
        frames_per_packet: 패킷 하나가 만드는 프레임 수
        rank: 소스 선호 순위 (0 = best)
        width / height: 비디오 크기
        sample_rate / channels: 오디오 파라미터
    """
    kind: MediaKind
    frame_interval_ms: int
    frame_count: int
    time_base: Fraction = Fraction(1, 1000)
    decode_delay: int = 0
    fail_at: Optional[int] = None
    frames_per_packet: int = 1
    rank: int = 0
    width: int = 64
    height: int = 48
    sample_rate: int = 48000
    channels: int = 2

    def __post_init__(self) -> None:
        if self.frame_interval_ms <= 0:
            raise BadParameterError(f"frame_interval_ms는 양수여야 합니다: {self.frame_interval_ms}")
        if self.frame_count < 0:
            raise BadParameterError(f"frame_count는 음수일 수 없습니다: {self.frame_count}")
        if self.frames_per_packet <= 0:
            raise BadParameterError(f"frames_per_packet은 양수여야 합니다: {self.frames_per_packet}")

    @property
    def interval_ticks(self) -> int:
        """프레임 간격을 스트림 timebase 단위로 환산한 값입니다."""
        return round(Fraction(self.frame_interval_ms, 1000) / self.time_base)

    @property
    def packet_count(self) -> int:
        return math.ceil(self.frame_count / self.frames_per_packet)


class SyntheticDecoder:
    """
    SyntheticStreamSpec에 따라 프레임을 생성하는 모의 디코더입니다.

    decode_delay개의 패킷 분량은 내부에 보유하다가 flush(None) 시 배출하여
    실제 코덱의 지연(B-frame reorder 등)을 흉내냅니다.
    """

    def __init__(self, descriptor: StreamDescriptor, spec: SyntheticStreamSpec) -> None:
        self._descriptor = descriptor
        self._spec = spec
        self._held: deque[int] = deque()
        self._ready: deque[int] = deque()
        self._packets_received: int = 0
        self._flushing: bool = False
        self._closed: bool = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, packet: Optional[Packet]) -> Optional[DecodeResult]:
        """패킷(또는 flush 마커 None)을 디코더에 전달합니다."""
        if self._closed:
            return DecodeResult.failed("디코더가 이미 닫혔습니다")

        if packet is None:
            self._flushing = True
            self._ready.extend(self._held)
            self._held.clear()
            return None

        packet_number = self._packets_received
        self._packets_received += 1

        if self._spec.fail_at is not None and packet_number == self._spec.fail_at:
            return DecodeResult.failed(f"합성 디코드 실패 (packet #{packet_number})")

        first_frame = packet_number * self._spec.frames_per_packet
        last_frame = min(first_frame + self._spec.frames_per_packet, self._spec.frame_count)
        for frame_number in range(first_frame, last_frame):
            self._held.append(frame_number)

        hold_limit = self._spec.decode_delay * self._spec.frames_per_packet
        while len(self._held) > hold_limit:
            self._ready.append(self._held.popleft())
        return None

    def receive(self) -> DecodeResult:
        """준비된 프레임 하나를 반환하거나 WOULD_BLOCK/END_OF_STREAM을 반환합니다."""
        if self._ready:
            frame_number = self._ready.popleft()
            return DecodeResult.frame(
                payload=self._make_payload(frame_number),
                pts=frame_number * self._spec.interval_ticks,
                time_base=self._spec.time_base,
            )
        if self._flushing:
            return DecodeResult.end_of_stream()
        return DecodeResult.would_block()

    def close(self) -> None:
        self._held.clear()
        self._ready.clear()
        self._closed = True

    def _make_payload(self, frame_number: int):
        spec = self._spec
        if spec.kind == MediaKind.VIDEO:
            # 프레임 번호에 따라 밝기가 변하는 BGR 픽처
            return np.full((spec.height, spec.width, 3), frame_number % 256, dtype=np.uint8)
        if spec.kind == MediaKind.AUDIO:
            samples = spec.sample_rate * spec.frame_interval_ms // 1000
            return np.zeros((spec.channels, samples), dtype=np.float32)
        return f"subtitle #{frame_number}"


class SyntheticSource:
    """
    SyntheticStreamSpec 목록으로 구성된 모의 Source입니다.

    스트림 인덱스는 SyntheticStreamSpec 목록 순서를 따릅니다.
    """

    def __init__(
        self,
        specs: list[SyntheticStreamSpec],
        *,
        io_error_after: Optional[int] = None,
        locator: str = "synthetic://",
    ) -> None:
        """
        파라미터:
            specs: 스트림 생성 규칙 목록
            io_error_after: 이 수만큼 패킷을 반환한 뒤 SourceIOError 발생 (None이면 없음)
            locator: 로그 표시용 소스 이름
        """
        self._specs = list(specs)
        self._io_error_after = io_error_after
        self._locator = locator
        self._descriptors = [
            StreamDescriptor(
                index=index,
                kind=spec.kind,
                time_base=spec.time_base,
                codec_name=f"synthetic_{spec.kind.value}",
                sample_rate=spec.sample_rate if spec.kind == MediaKind.AUDIO else 0,
                channels=spec.channels if spec.kind == MediaKind.AUDIO else 0,
                width=spec.width if spec.kind == MediaKind.VIDEO else 0,
                height=spec.height if spec.kind == MediaKind.VIDEO else 0,
                pixel_format="bgr24" if spec.kind == MediaKind.VIDEO else "",
                rank=spec.rank,
            )
            for index, spec in enumerate(self._specs)
        ]
        self._packets: Iterator[Packet] = self._interleave()
        self._packets_read: int = 0
        self._closed: bool = False
        self._decoders: list[SyntheticDecoder] = []

        logger.info(
            f"SyntheticSource 초기화: locator={locator}, "
            f"streams={[f'{d.index}:{d.kind.value}' for d in self._descriptors]}"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def packets_read(self) -> int:
        return self._packets_read

    def streams(self) -> list[StreamDescriptor]:
        return list(self._descriptors)

    def read_packet(self) -> Optional[Packet]:
        """
        다음 패킷을 반환합니다.

        반환값:
            Optional[Packet]: 다음 패킷, EOF이면 None

        에러:
            SourceIOError: 닫힌 소스에서 읽거나 io_error_after 한도에 도달했을 때
        """
        if self._closed:
            raise SourceIOError(f"닫힌 소스에서 읽기 시도: {self._locator}")
        if self._io_error_after is not None and self._packets_read >= self._io_error_after:
            raise SourceIOError(
                f"합성 I/O 에러: {self._packets_read}개 패킷 이후 읽기 실패"
            )

        packet = next(self._packets, None)
        if packet is not None:
            self._packets_read += 1
        return packet

    def open_decoder(self, descriptor: StreamDescriptor) -> SyntheticDecoder:
        """스트림의 모의 디코더를 생성합니다."""
        if descriptor.index >= len(self._specs) or descriptor.index < 0:
            raise BadParameterError(f"알 수 없는 스트림: {descriptor.index}")
        if descriptor.kind not in DECODABLE_KINDS:
            raise BadParameterError(
                f"디코드할 수 없는 스트림 종류: {descriptor.index}:{descriptor.kind.value}"
            )
        decoder = SyntheticDecoder(descriptor, self._specs[descriptor.index])
        self._decoders.append(decoder)
        return decoder

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info(f"SyntheticSource 닫힘: {self._packets_read}개 패킷 읽음")

    # =========================================================================
    # 내부 헬퍼
    # =========================================================================

    def _stream_packets(self, index: int, spec: SyntheticStreamSpec) -> Iterator[tuple[Fraction, int, Packet]]:
        packet_ticks = spec.interval_ticks * spec.frames_per_packet
        for number in range(spec.packet_count):
            pts = number * packet_ticks
            packet = Packet(
                stream_index=index,
                payload=bytes([number % 256]),
                pts=pts,
                dts=pts,
                is_keyframe=(number == 0 or spec.kind != MediaKind.VIDEO),
            )
            yield pts * spec.time_base, index, packet

    def _interleave(self) -> Iterator[Packet]:
        streams = [
            self._stream_packets(index, spec) for index, spec in enumerate(self._specs)
        ]
        for _, _, packet in heapq.merge(*streams, key=lambda item: (item[0], item[1])):
            yield packet


def build_synthetic_source(config: SyntheticConfig) -> SyntheticSource:
    """
    synthetic 설정 섹션으로 오디오+비디오 2개 스트림 SyntheticSource를 만듭니다.

    오디오 timebase는 1/sample_rate, 비디오 timebase는 1/90000을 사용합니다.
    """
    specs = [
        SyntheticStreamSpec(
            kind=MediaKind.AUDIO,
            frame_interval_ms=config.audio_interval_ms,
            frame_count=config.duration_ms // config.audio_interval_ms,
            time_base=Fraction(1, config.sample_rate),
            sample_rate=config.sample_rate,
        ),
        SyntheticStreamSpec(
            kind=MediaKind.VIDEO,
            frame_interval_ms=config.video_interval_ms,
            frame_count=config.duration_ms // config.video_interval_ms,
            time_base=_VIDEO_TIME_BASE,
            width=config.width,
            height=config.height,
        ),
    ]
    return SyntheticSource(specs, locator=f"synthetic://{config.duration_ms}ms")
