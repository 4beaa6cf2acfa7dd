"""
PreviewRenderer 단위 테스트

OpenCV 창 함수(imshow, waitKey, destroyAllWindows)는 monkeypatch로 대체합니다.

검증 항목:
- 종류별 프레임 카운트, 소비한 모든 프레임 release
- display=False면 창을 열지 않음
- 'q' 키 입력 시 취소 신호 발생
- BGR 변환: 3채널 그대로, 4채널/그레이스케일 변환, to_ndarray 객체, 미지원 payload
"""

from __future__ import annotations

import numpy as np
import pytest

from avplay.config.schema import RendererConfig
from avplay.engine import Frame, MediaKind
from avplay.render.preview_renderer import PreviewRenderer, _frame_to_bgr
from avplay.render.queue_renderer import FrameQueueRenderer
from avplay.runtime.cancellation import CancelToken


class _FakeCV2Window:
    def __init__(self, keys: list[int] | None = None) -> None:
        self.shown: list[tuple[str, tuple]] = []
        self.keys = list(keys or [])
        self.destroyed = 0

    def imshow(self, name, image):
        self.shown.append((name, image.shape))

    def wait_key(self, delay):
        return self.keys.pop(0) if self.keys else -1

    def destroy_all(self):
        self.destroyed += 1


@pytest.fixture
def fake_window(monkeypatch):
    window = _FakeCV2Window()
    monkeypatch.setattr("avplay.render.preview_renderer.cv2.imshow", window.imshow)
    monkeypatch.setattr("avplay.render.preview_renderer.cv2.waitKey", window.wait_key)
    monkeypatch.setattr("avplay.render.preview_renderer.cv2.destroyAllWindows", window.destroy_all)
    return window


def _video(pts_ms: int) -> Frame:
    return Frame(
        stream_index=1, kind=MediaKind.VIDEO, pts_ms=pts_ms,
        payload=np.zeros((18, 32, 3), dtype=np.uint8),
    )


def _audio(pts_ms: int) -> Frame:
    return Frame(
        stream_index=0, kind=MediaKind.AUDIO, pts_ms=pts_ms,
        payload=np.zeros((2, 960), dtype=np.float32),
    )


def _queue_with(frames: list[Frame]) -> FrameQueueRenderer:
    queue = FrameQueueRenderer(maxsize=len(frames) + 1, poll_interval_sec=0.01)
    for frame in frames:
        queue.enqueue(frame)
    queue.close_input()
    return queue


# =============================================================================
# run()
# =============================================================================

@pytest.mark.asyncio
async def test_counts_and_releases_every_frame(fake_window):
    frames = [_audio(0), _video(0), _audio(20), _video(33)]
    preview = PreviewRenderer(RendererConfig(window_name="test"), _queue_with(frames))

    stats = await preview.run(CancelToken())

    assert stats.frames_by_kind == {"audio": 2, "video": 2}
    assert stats.displayed == 2
    assert stats.total == 4
    assert all(frame.released for frame in frames)
    assert [name for name, _ in fake_window.shown] == ["test", "test"]
    assert fake_window.destroyed == 1


@pytest.mark.asyncio
async def test_display_disabled_opens_no_window(fake_window):
    frames = [_video(0), _video(33)]
    preview = PreviewRenderer(RendererConfig(), _queue_with(frames), display=False)

    stats = await preview.run(CancelToken())

    assert stats.frames_by_kind == {"video": 2}
    assert stats.displayed == 0
    assert fake_window.shown == []
    assert fake_window.destroyed == 0


@pytest.mark.asyncio
async def test_q_key_cancels_playback(fake_window):
    fake_window.keys = [-1, ord("q")]
    frames = [_video(0), _video(33), _video(66)]
    token = CancelToken()
    preview = PreviewRenderer(RendererConfig(), _queue_with(frames))

    stats = await preview.run(token)

    assert stats.user_quit is True
    assert token.is_cancelled is True
    assert stats.displayed == 1
    # 취소 후 남은 프레임은 소비하지 않음
    assert stats.frames_by_kind == {"video": 2}


@pytest.mark.asyncio
async def test_unconvertible_payload_counted(fake_window):
    frame = Frame(stream_index=1, kind=MediaKind.VIDEO, pts_ms=0, payload="not a picture")
    preview = PreviewRenderer(RendererConfig(), _queue_with([frame]))

    stats = await preview.run(CancelToken())

    assert stats.conversion_errors == 1
    assert frame.released is True


# =============================================================================
# BGR 변환
# =============================================================================

class _FakeVideoFrame:
    def __init__(self) -> None:
        self.requested_format = None

    def to_ndarray(self, format=None):
        self.requested_format = format
        return np.ones((4, 6, 3), dtype=np.uint8)


def test_bgr_passthrough():
    image = np.zeros((4, 6, 3), dtype=np.uint8)
    assert _frame_to_bgr(image) is image


@pytest.mark.parametrize("shape", [(4, 6, 4), (4, 6)])
def test_bgra_and_gray_converted_to_bgr(shape):
    converted = _frame_to_bgr(np.zeros(shape, dtype=np.uint8))
    assert converted.shape == (4, 6, 3)


def test_to_ndarray_object_requests_bgr24():
    video_frame = _FakeVideoFrame()
    converted = _frame_to_bgr(video_frame)
    assert video_frame.requested_format == "bgr24"
    assert converted.shape == (4, 6, 3)


def test_unsupported_payload_returns_none():
    assert _frame_to_bgr(np.zeros((2, 2, 2), dtype=np.uint8)) is None
    assert _frame_to_bgr(object()) is None
