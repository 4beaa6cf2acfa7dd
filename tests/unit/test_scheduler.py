"""
PlaybackScheduler 단위 테스트

가짜 시계(_FakeClock)로 wall-clock을 제어하여 페이싱을 결정적으로 검증합니다.

검증 항목:
- low-watermark 도달 전에는 재생을 시작하지 않음
- 앵커는 실행당 한 번, master(오디오 우선) 스트림 첫 프레임에서 설정
- 오디오가 없으면 첫 프레임 기준 앵커
- master 프레임 없이 버퍼가 포화되면 가장 오래된 프레임 기준 앵커 (생산 재개)
- 프레임은 t0 + (pts - pts0) 이전에 전달되지 않음
- 늦은 비디오 프레임(300ms)은 드롭, 같은 시점의 오디오는 전달
- QueueFull은 제한된 재시도 후 드롭, STOPPED면 스케줄러 종료
- 취소 시 STOPPED 전이, 렌더러 입력 종료
- 전달 + 드롭 == 투입 프레임 수
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import pytest

from avplay.buffer import PushResult
from avplay.buffer.frame_buffer import FrameBuffer
from avplay.engine import Frame, MediaKind
from avplay.engine.errors import BadParameterError
from avplay.metrics.lateness_tracker import LatenessTracker
from avplay.metrics.metrics_store import PlaybackMetrics
from avplay.playback import SchedulerState
from avplay.playback.scheduler import PlaybackScheduler
from avplay.render import EnqueueResult
from avplay.runtime.cancellation import CancelToken

AUDIO, VIDEO = 0, 1
KINDS = {AUDIO: MediaKind.AUDIO, VIDEO: MediaKind.VIDEO}


# =============================================================================
# 테스트 더블
# =============================================================================

class _FakeClock:
    """sleep 호출 시 시간을 그만큼 전진시키는 가짜 단조 시계입니다."""

    def __init__(self, token: CancelToken, max_sleeps: int = 10_000) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []
        self.on_sleep: Optional[Callable[[], None]] = None
        self._token = token
        self._max_sleeps = max_sleeps

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> bool:
        self.sleeps.append(delay)
        self.now += delay
        if self.on_sleep is not None:
            self.on_sleep()
        if len(self.sleeps) > self._max_sleeps:
            self._token.cancel("테스트 안전장치: sleep 한도 초과")
        await asyncio.sleep(0)
        return self._token.is_cancelled


class _RecordingRenderer:
    """enqueue 결과를 스크립트로 제어하고 전달 시각을 기록하는 렌더러입니다."""

    def __init__(self, clock: _FakeClock, results: Optional[list[EnqueueResult]] = None) -> None:
        self.clock = clock
        self.results = list(results or [])
        self.delivered: list[tuple[int, int, float]] = []
        self.attempts = 0
        self.input_closed = False
        self.on_enqueue: Optional[Callable[[Frame], None]] = None

    def enqueue(self, frame: Frame) -> EnqueueResult:
        self.attempts += 1
        result = self.results.pop(0) if self.results else EnqueueResult.OK
        if result == EnqueueResult.OK:
            self.delivered.append((frame.stream_index, frame.pts_ms, self.clock.now))
            if self.on_enqueue is not None:
                self.on_enqueue(frame)
        return result

    def close_input(self) -> None:
        self.input_closed = True


def _frame(stream_index: int, pts_ms: int) -> Frame:
    return Frame(stream_index=stream_index, kind=KINDS[stream_index], pts_ms=pts_ms, payload=object())


def _fill(buffer: FrameBuffer, audio_pts=(), video_pts=(), close: bool = True) -> list[Frame]:
    frames = [_frame(AUDIO, pts) for pts in audio_pts] + [_frame(VIDEO, pts) for pts in video_pts]
    for frame in frames:
        buffer.push(frame)
    if close:
        buffer.close_stream(AUDIO)
        buffer.close_stream(VIDEO)
    return frames


def _make_scheduler(buffer, renderer, token, clock, **kwargs) -> PlaybackScheduler:
    kwargs.setdefault("stream_kinds", KINDS)
    kwargs.setdefault("low_watermark", 1)
    return PlaybackScheduler(buffer, renderer, token, clock=clock, sleep=clock.sleep, **kwargs)


@pytest.fixture
def token():
    return CancelToken()


@pytest.fixture
def clock(token):
    return _FakeClock(token)


# =============================================================================
# 생성자 / 설정
# =============================================================================

def test_explicit_master_must_be_selected_stream(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    with pytest.raises(BadParameterError):
        _make_scheduler(buffer, _RecordingRenderer(clock), token, clock, master_stream=5)


def test_update_thresholds(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    scheduler = _make_scheduler(buffer, _RecordingRenderer(clock), token, clock)
    scheduler.update_thresholds(low_watermark=6, late_drop_ms=250)
    assert scheduler._low_watermark == 6
    assert scheduler._late_drop_ms == 250


# =============================================================================
# WaitingForData / Anchoring
# =============================================================================

@pytest.mark.asyncio
async def test_waits_for_low_watermark(token, clock):
    """버퍼가 low-watermark(4)에 도달할 때까지 첫 전달이 일어나지 않아야 합니다."""
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    pending = [_frame(AUDIO, 0), _frame(VIDEO, 0), _frame(AUDIO, 20), _frame(VIDEO, 33), _frame(AUDIO, 40)]
    pushed = {"count": 0}

    def produce_one():
        if pending:
            buffer.push(pending.pop(0))
            pushed["count"] += 1
        elif not buffer.stats().closed_streams:
            buffer.close_stream(AUDIO)
            buffer.close_stream(VIDEO)

    clock.on_sleep = produce_one
    renderer = _RecordingRenderer(clock)
    first_delivery_pushed = []
    renderer.on_enqueue = lambda frame: first_delivery_pushed.append(pushed["count"])

    scheduler = _make_scheduler(buffer, renderer, token, clock, low_watermark=4)
    stats = await scheduler.run()

    assert first_delivery_pushed[0] >= 4
    assert stats.delivered == 5
    assert stats.state == SchedulerState.STOPPED


@pytest.mark.asyncio
async def test_anchor_on_audio_master_delivers_audio_first(token, clock):
    """비디오가 먼저 버퍼에 들어와도 오디오 PTS 0 프레임이 먼저 전달되어야 합니다."""
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    buffer.push(_frame(VIDEO, 0))
    buffer.push(_frame(VIDEO, 33))
    _fill(buffer, audio_pts=(0, 20, 40))

    renderer = _RecordingRenderer(clock)
    scheduler = _make_scheduler(buffer, renderer, token, clock, low_watermark=4)
    stats = await scheduler.run()

    assert renderer.delivered[0][:2] == (AUDIO, 0)
    assert stats.master_stream == AUDIO
    assert stats.anchor == (0, 100.0)


@pytest.mark.asyncio
async def test_anchor_set_exactly_once(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=20)
    _fill(buffer, audio_pts=range(0, 200, 20), video_pts=range(0, 200, 33))

    scheduler = _make_scheduler(buffer, _RecordingRenderer(clock), token, clock)
    anchors = []
    original = scheduler._anchor

    async def counting_anchor():
        result = await original()
        anchors.append(scheduler.anchor)
        return result

    scheduler._anchor = counting_anchor
    await scheduler.run()

    assert anchors == [(0, 100.0)]
    assert scheduler.anchor == (0, 100.0)


@pytest.mark.asyncio
async def test_first_frame_anchor_without_audio(token, clock):
    """오디오 스트림이 없으면 첫 프레임(가장 오래된 PTS) 기준으로 앵커합니다."""
    buffer = FrameBuffer([1, 2], max_frames=10)
    kinds = {1: MediaKind.VIDEO, 2: MediaKind.SUBTITLE}
    buffer.push(Frame(stream_index=2, kind=MediaKind.SUBTITLE, pts_ms=500))
    buffer.push(Frame(stream_index=1, kind=MediaKind.VIDEO, pts_ms=480))
    buffer.close_stream(1)
    buffer.close_stream(2)

    renderer = _RecordingRenderer(clock)
    stats = await _make_scheduler(buffer, renderer, token, clock, stream_kinds=kinds).run()

    assert stats.master_stream == 1
    assert stats.anchor[0] == 480
    assert [entry[:2] for entry in renderer.delivered] == [(1, 480), (2, 500)]


@pytest.mark.asyncio
async def test_prefer_audio_disabled_uses_first_frame(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    buffer.push(_frame(VIDEO, 0))
    _fill(buffer, audio_pts=(10,))

    stats = await _make_scheduler(
        buffer, _RecordingRenderer(clock), token, clock, prefer_audio=False,
    ).run()
    assert stats.master_stream == VIDEO


@pytest.mark.asyncio
async def test_drained_master_falls_back_to_first_frame(token, clock):
    """master 스트림이 프레임 없이 닫히면 첫 프레임 기준으로 앵커합니다."""
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    _fill(buffer, video_pts=(0, 33))

    stats = await _make_scheduler(buffer, _RecordingRenderer(clock), token, clock).run()
    assert stats.master_stream == VIDEO
    assert stats.delivered == 2


@pytest.mark.asyncio
async def test_empty_closed_buffer_stops_without_anchor(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    _fill(buffer)
    renderer = _RecordingRenderer(clock)

    stats = await _make_scheduler(buffer, renderer, token, clock).run()

    assert stats.anchor is None
    assert stats.delivered == 0
    assert renderer.input_closed is True


@pytest.mark.asyncio
async def test_full_buffer_without_master_frame_anchors_on_oldest(token, clock):
    """비디오가 버퍼를 채우고 오디오(master)가 비어 있으면 가장 오래된 비디오로 앵커하고 생산을 풀어줍니다."""
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=4)
    for pts in (0, 33, 66, 100):
        buffer.push(_frame(VIDEO, pts))
    assert buffer.push(_frame(VIDEO, 133)) == PushResult.BUFFER_FULL
    pending = [_frame(VIDEO, 133), _frame(AUDIO, 120)]

    def produce():
        if pending and buffer.push(pending[0]) == PushResult.OK:
            pending.pop(0)
        if not pending and not buffer.stats().closed_streams:
            buffer.close_stream(AUDIO)
            buffer.close_stream(VIDEO)

    clock.on_sleep = produce
    renderer = _RecordingRenderer(clock)
    stats = await _make_scheduler(buffer, renderer, token, clock, prefer_audio=True).run()

    assert stats.master_stream == VIDEO
    assert stats.anchor == (0, 100.0)
    assert pending == []
    assert [entry[:2] for entry in renderer.delivered] == [
        (VIDEO, 0), (VIDEO, 33), (VIDEO, 66), (VIDEO, 100), (AUDIO, 120), (VIDEO, 133),
    ]
    assert buffer.stats().all_closed is True


@pytest.mark.asyncio
async def test_rejected_push_starts_playback_below_watermark(token, clock):
    """시간 구간 한도로 push가 거절되면 low-watermark 미만이어도 재생을 시작합니다."""
    buffer = FrameBuffer([AUDIO, VIDEO], max_duration_ms=100)
    for pts in (0, 33, 66):
        buffer.push(_frame(VIDEO, pts))
    late_frame = _frame(VIDEO, 133)
    assert buffer.push(late_frame) == PushResult.BUFFER_FULL
    assert buffer.stats().full is False
    pending = [late_frame]

    def produce():
        if pending and buffer.push(pending[0]) == PushResult.OK:
            pending.pop(0)
            buffer.close_stream(AUDIO)
            buffer.close_stream(VIDEO)

    clock.on_sleep = produce
    renderer = _RecordingRenderer(clock)
    stats = await _make_scheduler(buffer, renderer, token, clock, low_watermark=10).run()

    assert stats.master_stream == VIDEO
    assert [entry[:2] for entry in renderer.delivered] == [
        (VIDEO, 0), (VIDEO, 33), (VIDEO, 66), (VIDEO, 133),
    ]


# =============================================================================
# Streaming: 페이싱 / 늦은 프레임 드롭
# =============================================================================

@pytest.mark.asyncio
async def test_frames_never_delivered_before_due_time(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=40)
    _fill(buffer, audio_pts=range(0, 400, 20), video_pts=range(0, 400, 33))

    renderer = _RecordingRenderer(clock)
    stats = await _make_scheduler(buffer, renderer, token, clock).run()

    anchor_pts, anchor_wall = stats.anchor
    for _, pts, delivered_at in renderer.delivered:
        assert delivered_at >= anchor_wall + (pts - anchor_pts) / 1000.0 - 1e-9
    assert stats.dropped == 0
    # 마지막 프레임(비디오 396ms)까지 가짜 시계가 진행
    assert clock.now == pytest.approx(anchor_wall + 0.396)


@pytest.mark.asyncio
async def test_late_video_dropped_late_audio_delivered(token, clock):
    """앵커 이후 시계가 600ms 점프하면 300ms 늦은 비디오는 드롭, 같은 시점 오디오는 전달됩니다."""
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    _fill(buffer, audio_pts=(0, 300), video_pts=(300,))

    renderer = _RecordingRenderer(clock)

    def jump_after_anchor(frame: Frame):
        if frame.pts_ms == 0:
            clock.now += 0.6

    renderer.on_enqueue = jump_after_anchor
    lateness = LatenessTracker()
    metrics = PlaybackMetrics()
    scheduler = _make_scheduler(
        buffer, renderer, token, clock, late_drop_ms=100, lateness=lateness, metrics=metrics,
    )
    stats = await scheduler.run()

    assert [entry[:2] for entry in renderer.delivered] == [(AUDIO, 0), (AUDIO, 300)]
    assert stats.dropped_late == 1
    assert stats.dropped_per_stream == {VIDEO: 1}
    assert metrics.snapshot().streams[VIDEO].dropped_late == 1
    assert lateness.compute_stats()["audio"].max_ms == pytest.approx(300.0)


@pytest.mark.asyncio
async def test_video_within_threshold_delivered(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    _fill(buffer, audio_pts=(0,), video_pts=(100,))

    renderer = _RecordingRenderer(clock)
    renderer.on_enqueue = lambda frame: setattr(clock, "now", clock.now + 0.15)
    stats = await _make_scheduler(buffer, renderer, token, clock, late_drop_ms=100).run()

    # 비디오 100ms는 50ms 늦음 → 임계값 이내이므로 전달
    assert stats.delivered == 2
    assert stats.dropped_late == 0


@pytest.mark.asyncio
async def test_delivered_plus_dropped_equals_pushed(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=40)
    frames = _fill(buffer, audio_pts=range(0, 400, 20), video_pts=range(0, 400, 33))

    renderer = _RecordingRenderer(clock)
    renderer.on_enqueue = lambda frame: setattr(clock, "now", clock.now + 0.012)
    stats = await _make_scheduler(buffer, renderer, token, clock, late_drop_ms=10).run()

    assert stats.delivered + stats.dropped == len(frames)
    assert stats.delivered_per_stream[AUDIO] == 20
    assert stats.dropped_late > 0
    assert buffer.stats().total_frames == 0


@pytest.mark.asyncio
async def test_master_stream_delivered_in_pts_order(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=40)
    _fill(buffer, audio_pts=range(0, 300, 20), video_pts=range(0, 300, 33))

    renderer = _RecordingRenderer(clock)
    await _make_scheduler(buffer, renderer, token, clock).run()

    audio = [pts for stream, pts, _ in renderer.delivered if stream == AUDIO]
    assert audio == sorted(audio)


# =============================================================================
# 렌더러 QueueFull / STOPPED
# =============================================================================

@pytest.mark.asyncio
async def test_queue_full_retried_then_delivered(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    _fill(buffer, audio_pts=(0,))

    renderer = _RecordingRenderer(clock, [EnqueueResult.QUEUE_FULL, EnqueueResult.QUEUE_FULL])
    stats = await _make_scheduler(
        buffer, renderer, token, clock, queue_full_retry_sec=0.002,
    ).run()

    assert stats.delivered == 1
    assert renderer.attempts == 3
    # backoff는 2배씩 증가
    assert clock.sleeps[:2] == pytest.approx([0.002, 0.004])


@pytest.mark.asyncio
async def test_queue_full_exhausted_drops_frame(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    frames = _fill(buffer, audio_pts=(0,))

    renderer = _RecordingRenderer(clock, [EnqueueResult.QUEUE_FULL] * 10)
    stats = await _make_scheduler(buffer, renderer, token, clock, queue_full_max_retries=3).run()

    assert stats.delivered == 0
    assert stats.dropped_queue_full == 1
    assert renderer.attempts == 4
    assert frames[0].released is True


@pytest.mark.asyncio
async def test_renderer_stopped_ends_scheduler(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    frames = _fill(buffer, audio_pts=(0, 20, 40))

    renderer = _RecordingRenderer(clock, [EnqueueResult.OK, EnqueueResult.STOPPED])
    stats = await _make_scheduler(buffer, renderer, token, clock).run()

    assert stats.delivered == 1
    assert stats.discarded_on_stop == 1
    assert frames[1].released is True
    assert stats.state == SchedulerState.STOPPED
    assert renderer.input_closed is True


# =============================================================================
# 취소
# =============================================================================

@pytest.mark.asyncio
async def test_cancel_while_pacing_releases_retained_frame(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    frames = _fill(buffer, audio_pts=(0, 1000, 2000))

    renderer = _RecordingRenderer(clock)
    # 첫 페이싱 대기 중 취소
    clock.on_sleep = lambda: token.cancel("SIGINT")
    stats = await _make_scheduler(buffer, renderer, token, clock).run()

    assert stats.delivered == 1
    assert stats.discarded_on_stop == 1
    assert frames[1].released is True
    assert stats.state == SchedulerState.STOPPED
    assert renderer.input_closed is True
    # 버퍼에 남은 프레임은 스케줄러가 건드리지 않음
    assert buffer.stats().total_frames == 1


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_data(token, clock):
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    clock.on_sleep = lambda: token.cancel("shutdown")

    renderer = _RecordingRenderer(clock)
    stats = await _make_scheduler(buffer, renderer, token, clock, low_watermark=4).run()

    assert stats.anchor is None
    assert stats.state == SchedulerState.STOPPED
    assert len(clock.sleeps) == 1
    assert renderer.input_closed is True


@pytest.mark.asyncio
async def test_real_cancel_token_sleep_wakes_promptly():
    """실제 CancelToken.sleep을 쓰는 스케줄러가 취소 후 한 tick 안에 종료되어야 합니다."""
    token = CancelToken()
    buffer = FrameBuffer([AUDIO, VIDEO], max_frames=10)
    buffer.push(_frame(AUDIO, 0))
    buffer.push(_frame(AUDIO, 60_000))  # 1분 뒤 프레임

    renderer = _RecordingRenderer(_FakeClock(token))
    scheduler = PlaybackScheduler(buffer, renderer, token, stream_kinds=KINDS, low_watermark=2)

    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.1)
    token.cancel("test")
    stats = await asyncio.wait_for(task, timeout=1.0)

    assert stats.delivered == 1
    assert stats.state == SchedulerState.STOPPED
