"""
OpenCV 프리뷰 렌더러 모듈입니다.

역할:
- FrameQueueRenderer에서 프레임을 소비하는 렌더러 consumer 태스크
- 비디오 payload(av.VideoFrame 또는 numpy 배열)를 BGR numpy 배열로 변환
- OpenCV imshow로 프리뷰 출력, 'q' 키 입력 시 재생 취소
- 오디오/자막 프레임은 종류별로 카운트만 수행
- 소비한 모든 프레임 release

사용 예시:
    >>> preview = PreviewRenderer(config.renderer, frame_queue)
    >>> stats = await preview.run(cancel_token)
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import cv2
import numpy as np

from avplay.config.schema import RendererConfig
from avplay.engine import Frame, MediaKind
from avplay.render import RenderStats
from avplay.render.queue_renderer import FrameQueueRenderer
from avplay.runtime.cancellation import CancelToken

logger = logging.getLogger(__name__)


class PreviewRenderer:
    """
    렌더러 큐를 소비하여 비디오를 화면에 표시하는 클래스입니다.

    display=False이면 창을 열지 않고 종류별 카운트만 수행합니다.
    """

    def __init__(
        self,
        config: RendererConfig,
        frame_queue: FrameQueueRenderer,
        display: Optional[bool] = None,
    ) -> None:
        """
        파라미터:
            config: renderer 설정 섹션
            frame_queue: 소비할 렌더러 큐
            display: 화면 표시 여부 (None이면 config.display 사용)
        """
        self._config = config
        self._queue = frame_queue
        self._display = config.display if display is None else display
        self._window_name = config.window_name
        self._window_opened: bool = False
        self._stats = RenderStats()

        logger.info(f"PreviewRenderer 초기화: display={self._display}, window='{self._window_name}'")

    @property
    def stats(self) -> RenderStats:
        return self._stats

    async def run(self, cancel_token: CancelToken) -> RenderStats:
        """
        큐가 닫히고 비거나 취소될 때까지 프레임을 소비합니다.

        반환값:
            RenderStats: 소비 통계
        """
        logger.info("렌더러 소비 시작")
        try:
            async for frame in self._queue.frames(cancel_token):
                try:
                    self._consume(frame, cancel_token)
                finally:
                    frame.release()
        finally:
            self.close()

        logger.info(
            f"렌더러 소비 종료: frames={dict(self._stats.frames_by_kind)}, "
            f"displayed={self._stats.displayed}, user_quit={self._stats.user_quit}"
        )
        return self._stats

    def show(self, image: np.ndarray) -> bool:
        """
        BGR 배열을 OpenCV 미리보기 창으로 출력합니다.

        반환값:
            bool: 계속 재생하면 True, 'q' 키 입력 또는 출력 실패면 False
        """
        try:
            cv2.imshow(self._window_name, image)
            self._window_opened = True
            key = cv2.waitKey(1) & 0xFF
            return key != ord("q")
        except cv2.error as exc:
            logger.error(f"OpenCV 화면 출력 실패: {exc}")
            return False

    def close(self) -> None:
        """OpenCV 창을 닫습니다."""
        if not self._window_opened:
            return
        try:
            cv2.destroyAllWindows()
        except cv2.error as exc:
            logger.warning(f"OpenCV 창 닫기 실패: {exc}")
        self._window_opened = False

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _consume(self, frame: Frame, cancel_token: CancelToken) -> None:
        kind_name = frame.kind.value
        self._stats.frames_by_kind[kind_name] = self._stats.frames_by_kind.get(kind_name, 0) + 1

        if frame.kind != MediaKind.VIDEO or not self._display:
            return

        image = _frame_to_bgr(frame.payload)
        if image is None:
            self._stats.conversion_errors += 1
            return

        if self.show(image):
            self._stats.displayed += 1
            return

        self._stats.user_quit = True
        logger.info("사용자가 프리뷰 창에서 종료를 요청했습니다")
        cancel_token.cancel("사용자 종료 (q)")


def _frame_to_bgr(payload: Any) -> Optional[np.ndarray]:
    """
    비디오 payload를 OpenCV BGR numpy 배열로 변환합니다.

    지원 payload:
    - numpy (H, W, 3): BGR로 간주하여 그대로 사용
    - numpy (H, W, 4): BGRA → BGR
    - numpy (H, W): 그레이스케일 → BGR
    - to_ndarray()를 가진 객체 (av.VideoFrame): bgr24로 변환

    반환값:
        Optional[np.ndarray]: BGR 배열, 변환할 수 없으면 None
    """
    try:
        if isinstance(payload, np.ndarray):
            if payload.ndim == 3 and payload.shape[2] == 3:
                return payload
            if payload.ndim == 3 and payload.shape[2] == 4:
                return cv2.cvtColor(payload, cv2.COLOR_BGRA2BGR)
            if payload.ndim == 2:
                return cv2.cvtColor(payload, cv2.COLOR_GRAY2BGR)
            logger.warning(f"지원하지 않는 배열 형태: {payload.shape}")
            return None

        if hasattr(payload, "to_ndarray"):
            return payload.to_ndarray(format="bgr24")

    except (cv2.error, ValueError) as exc:
        logger.error(f"프레임 변환 실패: {exc}")
        return None

    logger.warning(f"지원하지 않는 비디오 payload: {type(payload).__name__}")
    return None
