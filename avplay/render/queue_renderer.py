"""
렌더러 입력 큐 모듈입니다.

역할:
- Scheduler → 렌더러 소비자 사이의 bounded asyncio.Queue
- enqueue(): 블로킹 없이 OK | QUEUE_FULL | STOPPED 반환
- close_input(): 생산 종료 신호 (소비자는 남은 프레임을 모두 소비한 뒤 종료)
- stop(): 즉시 중단, 큐에 남은 프레임 release
- frames(): 취소 신호를 확인하며 프레임을 하나씩 내보내는 비동기 이터레이터

사용 예시:
    >>> renderer = FrameQueueRenderer(maxsize=32)
    >>> renderer.enqueue(frame)
    <EnqueueResult.OK: 'ok'>
    >>> renderer.close_input()
    >>> async for frame in renderer.frames(cancel_token):
    ...     frame.release()
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from avplay.engine import Frame
from avplay.render import EnqueueResult
from avplay.runtime.cancellation import CancelToken

logger = logging.getLogger(__name__)


class FrameQueueRenderer:
    """
    Renderer 인터페이스를 구현하는 bounded 프레임 큐입니다.

    단일 이벤트 루프 안에서 Scheduler(생산자)와 렌더러 소비자가 공유합니다.
    """

    def __init__(self, maxsize: int = 32, poll_interval_sec: float = 0.05) -> None:
        """
        파라미터:
            maxsize: 큐 최대 프레임 수
            poll_interval_sec: 소비자가 취소/종료 여부를 확인하는 주기 (초)
        """
        if maxsize <= 0:
            raise ValueError(f"maxsize는 양수여야 합니다: {maxsize}")
        self._queue: asyncio.Queue[Frame] = asyncio.Queue(maxsize=maxsize)
        self._maxsize = maxsize
        self._poll_interval_sec = poll_interval_sec
        self._input_closed: bool = False
        self._stopped: bool = False
        self._done: bool = False
        self._enqueued: int = 0
        self._released_on_stop: int = 0

        logger.info(f"FrameQueueRenderer 초기화: maxsize={maxsize}")

    # =========================================================================
    # 생산자 측 (Scheduler)
    # =========================================================================

    def enqueue(self, frame: Frame) -> EnqueueResult:
        """
        프레임을 큐에 넣습니다. 블로킹하지 않습니다.

        반환값:
            OK: 성공 (소유권 이동)
            QUEUE_FULL: 큐가 가득 참 (소유권 유지, 재시도 가능)
            STOPPED: 렌더러 중단 또는 입력 종료됨 (소유권 유지)
        """
        if self._stopped or self._input_closed:
            return EnqueueResult.STOPPED
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            return EnqueueResult.QUEUE_FULL
        self._enqueued += 1
        return EnqueueResult.OK

    def close_input(self) -> None:
        """생산 종료를 알립니다. 여러 번 호출해도 안전합니다."""
        if self._input_closed:
            return
        self._input_closed = True
        logger.info(
            f"렌더러 입력 종료: enqueued={self._enqueued}, 남은 프레임={self._queue.qsize()}"
        )

    def stop(self) -> int:
        """
        렌더러를 즉시 중단하고 큐에 남은 프레임을 release합니다.

        반환값:
            int: release된 프레임 수
        """
        self._stopped = True
        released = 0
        while True:
            try:
                frame = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            frame.release()
            released += 1
        self._released_on_stop += released
        if released:
            logger.info(f"렌더러 중단: 큐에 남은 {released}개 프레임 release")
        return released

    # =========================================================================
    # 소비자 측
    # =========================================================================

    async def frames(self, cancel_token: Optional[CancelToken] = None) -> AsyncIterator[Frame]:
        """
        큐의 프레임을 하나씩 내보냅니다.

        입력이 닫히고 큐가 비었을 때, stop() 또는 취소 신호가 발생했을 때 종료합니다.
        반환된 프레임은 소비자가 release해야 합니다.
        """
        try:
            while not self._stopped:
                if cancel_token is not None and cancel_token.is_cancelled:
                    return
                if self._input_closed and self._queue.empty():
                    return
                try:
                    frame = await asyncio.wait_for(
                        self._queue.get(), timeout=self._poll_interval_sec
                    )
                except asyncio.TimeoutError:
                    continue
                yield frame
        finally:
            self._done = True

    # =========================================================================
    # 상태 조회
    # =========================================================================

    @property
    def done(self) -> bool:
        """소비자 이터레이션이 끝났는지 여부입니다."""
        return self._done

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def input_closed(self) -> bool:
        return self._input_closed

    @property
    def enqueued(self) -> int:
        return self._enqueued

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def maxsize(self) -> int:
        return self._maxsize
