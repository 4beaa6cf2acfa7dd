"""
PyAV(FFmpeg) 기반 소스 어댑터 모듈입니다.

역할:
- av.open으로 컨테이너를 열고 Source 인터페이스로 노출
- container.demux()로 패킷을 읽어 Packet으로 변환 (EOF는 None, 그 외 오류는 SourceIOError)
- 스트림별 codec_context로 디코드하는 AVDecoder 제공 (send/receive 태그드 결과)
- 출력 포맷 변환: 비디오 frame.reformat, 오디오 av.AudioResampler

사용 예시:
    >>> source = open_source("movie.mp4")
    >>> for descriptor in source.streams():
    ...     print(descriptor.index, descriptor.kind)
    >>> packet = source.read_packet()
    >>> source.close()
"""

from __future__ import annotations

import logging
from collections import deque
from fractions import Fraction
from typing import Any, Optional

import av

from avplay.config.schema import OutputConfig
from avplay.engine import (
    DECODABLE_KINDS,
    DecodeResult,
    MediaKind,
    Packet,
    StreamDescriptor,
)
from avplay.engine.errors import BadParameterError, SourceIOError

logger = logging.getLogger(__name__)

# PyAV stream.type 문자열 → MediaKind
_KIND_BY_TYPE = {
    "audio": MediaKind.AUDIO,
    "video": MediaKind.VIDEO,
    "subtitle": MediaKind.SUBTITLE,
    "data": MediaKind.DATA,
}


def open_source(
    locator: str,
    *,
    input_format: str = "",
    options: Optional[dict[str, str]] = None,
    output: Optional[OutputConfig] = None,
) -> AVSource:
    """
    미디어 컨테이너를 열어 AVSource를 반환합니다.

    파라미터:
        locator: 파일 경로 또는 URL
        input_format: 강제 입력 포맷 이름 (빈 문자열이면 자동 감지)
        options: demuxer 옵션 (FFmpeg AVDictionary)
        output: 디코드 출력 변환 설정 (None이면 원본 포맷 유지)

    반환값:
        AVSource: 열린 소스

    에러:
        SourceIOError: 파일이 없거나 컨테이너를 열 수 없을 때
    """
    logger.info(f"소스 열기: locator={locator}, format={input_format or 'auto'}")
    try:
        container = av.open(
            locator,
            mode="r",
            format=input_format or None,
            options=dict(options or {}),
        )
    except (av.error.FFmpegError, OSError) as exc:
        error_message = f"소스 열기 실패: {locator}: {exc}"
        logger.error(error_message)
        raise SourceIOError(error_message) from exc

    return AVSource(container, locator=locator, output=output)


class AVDecoder:
    """
    PyAV codec_context 하나를 감싸는 DecoderHandle 구현입니다.

    codec_context.decode()가 반환한 프레임을 내부 큐에 보관하고 receive()로 하나씩 꺼냅니다.
    decode(None) 호출은 디코더 flush이며, 이후 큐가 비면 END_OF_STREAM을 반환합니다.
    """

    def __init__(
        self,
        stream: Any,
        descriptor: StreamDescriptor,
        output: Optional[OutputConfig] = None,
    ) -> None:
        self._stream = stream
        self._codec_context = stream.codec_context
        self._descriptor = descriptor
        self._pending: deque[Any] = deque()
        self._flushed: bool = False
        self._closed: bool = False

        output = output or OutputConfig()
        self._video_format = output.video_pixel_format
        self._resampler: Optional[av.AudioResampler] = None
        if descriptor.kind == MediaKind.AUDIO and (
            output.audio_sample_format or output.audio_layout or output.audio_sample_rate
        ):
            self._resampler = av.AudioResampler(
                format=output.audio_sample_format or None,
                layout=output.audio_layout or None,
                rate=output.audio_sample_rate or None,
            )

    def send(self, packet: Optional[Packet]) -> Optional[DecodeResult]:
        """패킷을 디코더에 전달합니다. None이면 flush합니다."""
        if self._closed:
            return DecodeResult.failed("디코더가 이미 닫혔습니다")

        try:
            frames = self._codec_context.decode(packet.payload if packet is not None else None)
        except av.error.EOFError:
            frames = []
        except (av.error.FFmpegError, ValueError) as exc:
            return DecodeResult.failed(f"{type(exc).__name__}: {exc}")

        try:
            for frame in frames:
                self._pending.extend(self._convert(frame))
            if packet is None:
                self._flushed = True
                if self._resampler is not None:
                    self._pending.extend(self._resampler.resample(None))
        except (av.error.FFmpegError, ValueError) as exc:
            return DecodeResult.failed(f"출력 변환 실패: {exc}")
        return None

    def receive(self) -> DecodeResult:
        """디코드된 프레임 하나를 반환합니다."""
        if self._pending:
            frame = self._pending.popleft()
            time_base = getattr(frame, "time_base", None) or self._descriptor.time_base
            return DecodeResult.frame(
                payload=frame,
                pts=frame.pts,
                time_base=Fraction(time_base),
            )
        if self._flushed:
            return DecodeResult.end_of_stream()
        return DecodeResult.would_block()

    def close(self) -> None:
        self._pending.clear()
        self._resampler = None
        self._closed = True

    def _convert(self, frame: Any) -> list[Any]:
        if self._descriptor.kind == MediaKind.VIDEO and self._video_format:
            converted = frame.reformat(format=self._video_format)
            if converted.pts is None:
                converted.pts = frame.pts
                converted.time_base = frame.time_base
            return [converted]
        if self._resampler is not None:
            return list(self._resampler.resample(frame))
        return [frame]


class AVSource:
    """
    av.container.InputContainer를 감싸는 Source 구현입니다.

    read_packet()은 Demux Loop 워커 스레드 한 곳에서만 호출됩니다.
    """

    def __init__(
        self,
        container: Any,
        *,
        locator: str = "",
        output: Optional[OutputConfig] = None,
    ) -> None:
        self._container = container
        self._locator = locator
        self._output = output
        self._streams = {stream.index: stream for stream in container.streams}
        self._descriptors = self._describe_streams()
        self._demuxer = container.demux()
        self._closed: bool = False

        logger.info(
            f"소스 열림: {locator}, "
            f"streams={[f'{d.index}:{d.kind.value}:{d.codec_name}' for d in self._descriptors]}"
        )

    def streams(self) -> list[StreamDescriptor]:
        return list(self._descriptors)

    def read_packet(self) -> Optional[Packet]:
        """
        다음 패킷을 읽습니다.

        반환값:
            Optional[Packet]: 다음 패킷, EOF이면 None

        에러:
            SourceIOError: EOF가 아닌 demux 오류
        """
        if self._closed:
            raise SourceIOError(f"닫힌 소스에서 읽기 시도: {self._locator}")

        while True:
            try:
                av_packet = next(self._demuxer)
            except StopIteration:
                return None
            except av.error.EOFError:
                return None
            except av.error.FFmpegError as exc:
                error_message = f"패킷 읽기 실패: {self._locator}: {exc}"
                logger.error(error_message)
                raise SourceIOError(error_message) from exc

            # demux()가 입력 끝에서 내보내는 빈 flush 패킷은 건너뜀
            if av_packet.size == 0:
                continue

            return Packet(
                stream_index=av_packet.stream.index,
                payload=av_packet,
                pts=av_packet.pts,
                dts=av_packet.dts,
                is_keyframe=bool(av_packet.is_keyframe),
            )

    def open_decoder(self, descriptor: StreamDescriptor) -> AVDecoder:
        """스트림의 codec_context를 사용하는 디코더를 생성합니다."""
        stream = self._streams.get(descriptor.index)
        if stream is None:
            raise BadParameterError(f"알 수 없는 스트림: {descriptor.index}")
        if descriptor.kind not in DECODABLE_KINDS or stream.codec_context is None:
            raise BadParameterError(
                f"디코드할 수 없는 스트림: {descriptor.index}:{descriptor.kind.value}"
            )
        if descriptor.kind == MediaKind.VIDEO:
            stream.thread_type = "AUTO"
        return AVDecoder(stream, descriptor, self._output)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._container.close()
        except av.error.FFmpegError as exc:
            logger.warning(f"소스 닫기 중 오류: {exc}")
        logger.info(f"소스 닫힘: {self._locator}")

    def _describe_streams(self) -> list[StreamDescriptor]:
        best_indices = set()
        for kind_name in ("audio", "video", "subtitle"):
            try:
                best = self._container.streams.best(kind_name)
            except ValueError:
                best = None
            if best is not None:
                best_indices.add(best.index)

        descriptors = []
        for index, stream in sorted(self._streams.items()):
            kind = _KIND_BY_TYPE.get(stream.type, MediaKind.UNKNOWN)
            codec_context = stream.codec_context
            params: dict[str, Any] = {}
            if codec_context is not None:
                params["codec_name"] = codec_context.name or ""
                if kind == MediaKind.AUDIO:
                    params["sample_rate"] = codec_context.sample_rate or 0
                    params["channels"] = len(codec_context.layout.channels)
                elif kind == MediaKind.VIDEO:
                    params["width"] = codec_context.width or 0
                    params["height"] = codec_context.height or 0
                    params["pixel_format"] = codec_context.pix_fmt or ""

            descriptors.append(
                StreamDescriptor(
                    index=index,
                    kind=kind,
                    time_base=Fraction(stream.time_base or Fraction(1, 1000)),
                    rank=0 if index in best_indices else 1,
                    **params,
                )
            )
        return descriptors
