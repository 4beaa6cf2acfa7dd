"""
DecodeContext 단위 테스트

검증 항목:
- send → receive drain: FRAME은 ms로 재조정되어 push, WOULD_BLOCK이면 drain 중단
- flush(None) 후 END_OF_STREAM이면 컨텍스트와 버퍼 스트림 닫힘
- 디코더 지연(decode_delay) 프레임이 flush 시 배출
- PTS 없음 / PTS 역행 보정으로 스트림 내 비감소 PTS 보장
- 디코드 에러는 해당 컨텍스트만 닫고 StreamDecodeError로 기록
- BufferFull은 재시도 (프레임 유실 없음), 재시도 중 취소 시 PlaybackCancelled
"""

from __future__ import annotations

import threading
from fractions import Fraction
from typing import Optional

import pytest

from avplay.buffer.frame_buffer import FrameBuffer
from avplay.decode.decode_context import DecodeContext, rescale_to_ms
from avplay.engine import DecodeResult, Frame, MediaKind, Packet, StreamDescriptor
from avplay.engine.errors import PlaybackCancelled
from avplay.engine.synthetic_source import SyntheticSource, SyntheticStreamSpec
from avplay.metrics.metrics_store import PlaybackMetrics
from avplay.runtime.cancellation import CancelToken


class _ScriptedDecoder:
    """receive() 결과를 미리 정한 순서대로 돌려주는 디코더입니다."""

    def __init__(self, results: list[DecodeResult], send_error: Optional[Exception] = None) -> None:
        self._results = list(results)
        self._send_error = send_error
        self.sent: list[Optional[Packet]] = []
        self.closed = False

    def send(self, packet: Optional[Packet]) -> Optional[DecodeResult]:
        if self._send_error is not None:
            raise self._send_error
        self.sent.append(packet)
        return None

    def receive(self) -> DecodeResult:
        if self._results:
            return self._results.pop(0)
        return DecodeResult.would_block()

    def close(self) -> None:
        self.closed = True


def _descriptor(index: int = 0, kind: MediaKind = MediaKind.AUDIO) -> StreamDescriptor:
    return StreamDescriptor(index=index, kind=kind, time_base=Fraction(1, 48000))


def _packet(index: int = 0, pts: int = 0) -> Packet:
    return Packet(stream_index=index, payload=b"\x00", pts=pts, dts=pts)


def _drain_pts(buffer: FrameBuffer, stream_index: int = 0) -> list[int]:
    pts_values = []
    while (frame := buffer.next(stream_index)) is not None:
        pts_values.append(frame.pts_ms)
    return pts_values


# =============================================================================
# PTS 변환
# =============================================================================

@pytest.mark.parametrize(
    "pts, time_base, expected",
    [
        (48000, Fraction(1, 48000), 1000),
        (2970, Fraction(1, 90000), 33),
        (3003, Fraction(1, 90000), 33),
        (15, Fraction(1, 1000), 15),
    ],
)
def test_rescale_to_ms(pts, time_base, expected):
    assert rescale_to_ms(pts, time_base) == expected


# =============================================================================
# drain 루프
# =============================================================================

def test_frames_pushed_with_rescaled_pts():
    buffer = FrameBuffer([0], max_frames=10)
    decoder = _ScriptedDecoder([
        DecodeResult.frame("a", pts=0),
        DecodeResult.frame("b", pts=960),
        DecodeResult.would_block(),
    ])
    context = DecodeContext(_descriptor(), decoder, buffer, CancelToken())

    context.send(_packet())

    assert context.frames_pushed == 2
    assert context.closed is False
    assert _drain_pts(buffer) == [0, 20]


def test_frame_time_base_overrides_stream_time_base():
    buffer = FrameBuffer([0], max_frames=10)
    decoder = _ScriptedDecoder([DecodeResult.frame("a", pts=90, time_base=Fraction(1, 1000))])
    context = DecodeContext(_descriptor(), decoder, buffer, CancelToken())
    context.send(_packet())
    assert _drain_pts(buffer) == [90]


def test_flush_end_of_stream_closes_context_and_buffer_stream():
    buffer = FrameBuffer([0], max_frames=10)
    decoder = _ScriptedDecoder([DecodeResult.end_of_stream()])
    context = DecodeContext(_descriptor(), decoder, buffer, CancelToken())

    context.send(None)

    assert context.closed is True
    assert decoder.closed is True
    assert decoder.sent == [None]
    assert buffer.stats().all_closed is True


def test_flush_would_block_also_closes():
    """flush 후 WOULD_BLOCK은 더 이상 출력이 없음을 의미하므로 컨텍스트를 닫습니다."""
    buffer = FrameBuffer([0], max_frames=10)
    context = DecodeContext(_descriptor(), _ScriptedDecoder([]), buffer, CancelToken())
    context.send(None)
    assert context.closed is True


def test_packets_after_close_are_ignored():
    buffer = FrameBuffer([0], max_frames=10)
    decoder = _ScriptedDecoder([DecodeResult.end_of_stream()])
    context = DecodeContext(_descriptor(), decoder, buffer, CancelToken())
    context.send(None)
    context.send(_packet())
    assert decoder.sent == [None]


def test_delayed_frames_released_on_flush():
    """디코더가 보유한 프레임이 flush 시 배출되어야 합니다."""
    source = SyntheticSource([
        SyntheticStreamSpec(kind=MediaKind.VIDEO, frame_interval_ms=40, frame_count=5, decode_delay=2),
    ])
    descriptor = source.streams()[0]
    buffer = FrameBuffer([0], max_frames=10)
    context = DecodeContext(descriptor, source.open_decoder(descriptor), buffer, CancelToken())

    while (packet := source.read_packet()) is not None:
        context.send(packet)
    assert context.frames_pushed == 3

    context.send(None)
    assert context.frames_pushed == 5
    assert context.closed is True
    assert _drain_pts(buffer) == [0, 40, 80, 120, 160]


# =============================================================================
# PTS 보정
# =============================================================================

def test_missing_pts_reuses_previous_and_backwards_pts_clamped():
    buffer = FrameBuffer([0], max_frames=10)
    decoder = _ScriptedDecoder([
        DecodeResult.frame("a", pts=None),      # 첫 프레임 PTS 없음 → 0
        DecodeResult.frame("b", pts=4800),      # 100ms
        DecodeResult.frame("c", pts=None),      # 직전 재사용 → 100ms
        DecodeResult.frame("d", pts=2400),      # 50ms 역행 → 100ms로 보정
        DecodeResult.frame("e", pts=9600),      # 200ms
    ])
    context = DecodeContext(_descriptor(), decoder, buffer, CancelToken())
    context.send(_packet())
    assert _drain_pts(buffer) == [0, 100, 100, 100, 200]
    assert context.error is None


# =============================================================================
# 디코드 에러
# =============================================================================

def test_decode_error_result_closes_only_this_context():
    buffer = FrameBuffer([0, 1], max_frames=10)
    metrics = PlaybackMetrics()
    failing = DecodeContext(
        _descriptor(0),
        _ScriptedDecoder([DecodeResult.frame("a", pts=0), DecodeResult.failed("손상된 패킷")]),
        buffer, CancelToken(), metrics=metrics,
    )
    healthy = DecodeContext(
        _descriptor(1, MediaKind.VIDEO),
        _ScriptedDecoder([DecodeResult.frame("v", pts=0)]),
        buffer, CancelToken(),
    )

    failing.send(_packet(0))
    healthy.send(_packet(1))

    assert failing.closed is True
    assert failing.error is not None
    assert failing.error.stream_index == 0
    assert "손상된 패킷" in str(failing.error)
    assert healthy.closed is False
    assert healthy.frames_pushed == 1
    # 실패 전에 push된 프레임은 유효
    assert buffer.stats().per_stream_counts == {0: 1, 1: 1}
    assert metrics.snapshot().streams[0].decode_errors == 1


def test_decoder_exception_becomes_stream_error():
    buffer = FrameBuffer([0], max_frames=10)
    decoder = _ScriptedDecoder([], send_error=ValueError("invalid data"))
    context = DecodeContext(_descriptor(), decoder, buffer, CancelToken())
    context.send(_packet())
    assert context.closed is True
    assert "invalid data" in str(context.error)


def test_synthetic_fail_at_packet():
    source = SyntheticSource([
        SyntheticStreamSpec(kind=MediaKind.AUDIO, frame_interval_ms=20, frame_count=5, fail_at=2),
    ])
    descriptor = source.streams()[0]
    buffer = FrameBuffer([0], max_frames=10)
    context = DecodeContext(descriptor, source.open_decoder(descriptor), buffer, CancelToken())
    while (packet := source.read_packet()) is not None:
        context.send(packet)
    assert context.frames_pushed == 2
    assert context.error is not None


# =============================================================================
# BufferFull 재시도 / 취소
# =============================================================================

def _fill_other_stream(buffer: FrameBuffer) -> None:
    buffer.push(Frame(stream_index=1, kind=MediaKind.VIDEO, pts_ms=0))


def test_buffer_full_is_retried_until_space():
    buffer = FrameBuffer([0, 1], max_frames=1)
    _fill_other_stream(buffer)
    metrics = PlaybackMetrics()
    decoder = _ScriptedDecoder([DecodeResult.frame("a", pts=0)])
    context = DecodeContext(
        _descriptor(), decoder, buffer, CancelToken(), retry_interval_sec=0.005, metrics=metrics,
    )

    consumer = threading.Timer(0.05, buffer.next)
    consumer.start()
    context.send(_packet())
    consumer.join()

    assert context.frames_pushed == 1
    assert buffer.stats().per_stream_counts[0] == 1
    assert metrics.snapshot().streams[0].buffer_full_retries >= 1


def test_cancel_during_buffer_full_raises_and_releases_frame():
    buffer = FrameBuffer([0, 1], max_frames=1)
    _fill_other_stream(buffer)
    token = CancelToken()
    pending = DecodeResult.frame("held", pts=0)
    context = DecodeContext(
        _descriptor(), _ScriptedDecoder([pending]), buffer, token, retry_interval_sec=0.005,
    )

    threading.Timer(0.03, token.cancel, args=("테스트 취소",)).start()
    with pytest.raises(PlaybackCancelled) as exc_info:
        context.send(_packet())

    assert exc_info.value.reason == "테스트 취소"
    assert context.frames_pushed == 0
    assert buffer.stats().per_stream_counts[0] == 0
