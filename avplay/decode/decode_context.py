"""
스트림별 디코드 컨텍스트 모듈입니다.

역할:
- 스트림 하나의 외부 디코더를 소유하고 send → receive drain 루프 수행
- 디코드된 단위를 공통 timebase(ms)의 Frame으로 변환하여 FrameBuffer에 push
- BufferFull이면 짧게 대기 후 재시도 (취소 신호 확인, 프레임은 절대 버리지 않음)
- 디코드 에러는 이 컨텍스트만 닫고 StreamDecodeError로 기록 (다른 스트림은 계속)

디코드 결과 처리:
    FRAME          → Frame 생성 후 push
    WOULD_BLOCK    → 입력 부족, 다음 패킷까지 drain 중단 (flush 중이면 컨텍스트 종료)
    END_OF_STREAM  → 컨텍스트 종료 (FrameBuffer 스트림 닫기)
    ERROR          → 에러 기록 후 컨텍스트 종료

동시성:
    Demux Loop 워커 스레드에서만 호출되므로 자체 락이 없습니다.

사용 예시:
    >>> context = DecodeContext(descriptor, decoder, frame_buffer, cancel_token)
    >>> context.send(packet)
    >>> context.send(None)  # EOF flush
"""

from __future__ import annotations

from fractions import Fraction
from typing import Optional

from avplay.buffer import PushResult
from avplay.buffer.frame_buffer import FrameBuffer
from avplay.engine import (
    DecodeResult,
    DecodeStatus,
    DecoderHandle,
    Frame,
    Packet,
    StreamDescriptor,
)
from avplay.engine.errors import PlaybackCancelled, StreamDecodeError
from avplay.logging.structured_logger import get_stream_logger
from avplay.metrics.metrics_store import PlaybackMetrics
from avplay.runtime.cancellation import CancelToken

# BufferFull 재시도 요약 로그 간격 (재시도 횟수)
_RETRY_LOG_EVERY = 200


def rescale_to_ms(pts: int, time_base: Fraction) -> int:
    """스트림 timebase 단위 PTS를 밀리초로 반올림 변환합니다."""
    return round(Fraction(pts) * time_base * 1000)


class DecodeContext:
    """
    스트림 하나의 디코더 구동기입니다.

    Demux Loop가 생성/소유/파기하며, 닫힌 뒤 들어오는 패킷은 무시합니다.
    """

    def __init__(
        self,
        descriptor: StreamDescriptor,
        decoder: DecoderHandle,
        frame_buffer: FrameBuffer,
        cancel_token: CancelToken,
        *,
        retry_interval_sec: float = 0.005,
        metrics: Optional[PlaybackMetrics] = None,
    ) -> None:
        """
        파라미터:
            descriptor: 대상 스트림 정보
            decoder: 외부 디코더 핸들 (소유권 이동)
            frame_buffer: 디코드 결과를 push할 공유 버퍼
            cancel_token: 공유 취소 신호
            retry_interval_sec: BufferFull 재시도 간격 (초)
            metrics: 카운터 저장소 (선택)
        """
        self._descriptor = descriptor
        self._decoder = decoder
        self._buffer = frame_buffer
        self._cancel_token = cancel_token
        self._retry_interval_sec = retry_interval_sec
        self._metrics = metrics
        self._log = get_stream_logger(__name__, descriptor.index, descriptor.kind)

        self._closed: bool = False
        self._error: Optional[StreamDecodeError] = None
        self._last_pts_ms: Optional[int] = None
        self._frames_pushed: int = 0
        self._packets_sent: int = 0
        self._buffer_full_retries: int = 0

    # =========================================================================
    # 상태 조회
    # =========================================================================

    @property
    def stream_index(self) -> int:
        return self._descriptor.index

    @property
    def descriptor(self) -> StreamDescriptor:
        return self._descriptor

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> Optional[StreamDecodeError]:
        """디코드 실패로 닫혔으면 그 에러, 아니면 None입니다."""
        return self._error

    @property
    def frames_pushed(self) -> int:
        return self._frames_pushed

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    def send(self, packet: Optional[Packet]) -> None:
        """
        패킷(또는 flush 마커 None)을 디코더에 보내고 생성된 프레임을 모두 버퍼로 drain합니다.

        에러:
            PlaybackCancelled: BufferFull 재시도 중 취소되었을 때
        """
        if self._closed:
            self._log.debug("닫힌 컨텍스트로 패킷 전달 무시")
            return

        flushing = packet is None
        try:
            send_result = self._decoder.send(packet)
        except Exception as exc:
            self._fail(f"디코더 send 예외: {type(exc).__name__}: {exc}")
            return

        if send_result is not None and send_result.status == DecodeStatus.ERROR:
            self._fail(send_result.error)
            return
        if not flushing:
            self._packets_sent += 1

        self._drain(flushing)

    def close(self) -> None:
        """
        디코더를 닫고 버퍼의 해당 스트림을 닫습니다. 여러 번 호출해도 안전합니다.
        """
        if self._closed:
            return
        self._closed = True

        try:
            self._decoder.close()
        except Exception as exc:
            self._log.warning(f"디코더 닫기 중 오류: {exc}")

        self._buffer.close_stream(self.stream_index)
        self._log.info(
            f"DecodeContext 종료: packets={self._packets_sent}, frames={self._frames_pushed}, "
            f"buffer_full_retries={self._buffer_full_retries}"
        )

    # =========================================================================
    # 내부 drain 루프
    # =========================================================================

    def _drain(self, flushing: bool) -> None:
        while not self._closed:
            try:
                result = self._decoder.receive()
            except Exception as exc:
                self._fail(f"디코더 receive 예외: {type(exc).__name__}: {exc}")
                return

            if result.status == DecodeStatus.FRAME:
                self._push(self._make_frame(result))
            elif result.status == DecodeStatus.WOULD_BLOCK:
                if flushing:
                    # flush 후 더 이상 출력이 없으면 종료
                    self.close()
                return
            elif result.status == DecodeStatus.END_OF_STREAM:
                self._log.debug("END_OF_STREAM")
                self.close()
                return
            else:
                self._fail(result.error or "알 수 없는 디코드 에러")
                return

    def _make_frame(self, result: DecodeResult) -> Frame:
        time_base = result.time_base or self._descriptor.time_base
        if result.pts is None:
            # PTS 없는 프레임은 직전 PTS 재사용
            pts_ms = self._last_pts_ms if self._last_pts_ms is not None else 0
        else:
            pts_ms = rescale_to_ms(result.pts, time_base)

        # 스트림 내 비감소 PTS 보장
        if self._last_pts_ms is not None and pts_ms < self._last_pts_ms:
            self._log.debug(f"PTS 역행 보정: {pts_ms}ms -> {self._last_pts_ms}ms")
            pts_ms = self._last_pts_ms

        self._last_pts_ms = pts_ms
        return Frame(
            stream_index=self.stream_index,
            kind=self._descriptor.kind,
            pts_ms=pts_ms,
            payload=result.payload,
        )

    def _push(self, frame: Frame) -> None:
        retries = 0
        while True:
            if self._buffer.push(frame) == PushResult.OK:
                break

            retries += 1
            self._buffer_full_retries += 1
            if self._metrics is not None:
                self._metrics.record_buffer_full_retry(self.stream_index)
            if self._buffer_full_retries % _RETRY_LOG_EVERY == 0:
                self._log.info(f"BufferFull 재시도 누적: total={self._buffer_full_retries}")
            else:
                self._log.debug(f"BufferFull: pts={frame.pts_ms}ms, retry={retries}")

            if self._cancel_token.wait(self._retry_interval_sec):
                frame.release()
                raise PlaybackCancelled(self._cancel_token.reason)

        self._frames_pushed += 1
        if self._metrics is not None:
            self._metrics.record_decoded(self.stream_index)

    def _fail(self, message: str) -> None:
        self._error = StreamDecodeError(self.stream_index, message)
        self._log.error(f"디코드 실패, 컨텍스트 종료: {message}")
        if self._metrics is not None:
            self._metrics.record_decode_error(self.stream_index)
        self.close()
