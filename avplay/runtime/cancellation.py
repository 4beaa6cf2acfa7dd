"""
공유 취소 신호 모듈입니다.

역할:
- Demux Loop(워커 스레드), Scheduler/렌더러(asyncio 태스크)가 함께 관찰하는 단일 취소 신호
- 모든 대기 지점(BufferFull 재시도, 페이싱 sleep, 빈 버퍼 폴링)에서 즉시 깨어나도록 지원
- 최초 취소 사유만 보존 (이후 cancel() 호출은 무시)

사용 예시:
    >>> token = CancelToken()
    >>> token.cancel("SIGINT")
    >>> token.is_cancelled
    True
    >>> token.reason
    'SIGINT'
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time

logger = logging.getLogger(__name__)


class CancelToken:
    """
    스레드와 이벤트 루프 양쪽에서 사용할 수 있는 취소 신호입니다.

    threading.Event를 기반으로 하므로 워커 스레드에서는 wait()로 블로킹 대기하고,
    asyncio 태스크에서는 sleep()으로 짧은 tick 단위 폴링 대기합니다.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str = ""

    @property
    def is_cancelled(self) -> bool:
        """취소 요청 여부를 반환합니다."""
        return self._event.is_set()

    @property
    def reason(self) -> str:
        """최초 취소 사유를 반환합니다. 취소되지 않았으면 빈 문자열입니다."""
        with self._lock:
            return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        취소를 요청합니다.

        파라미터:
            reason: 취소 사유 (로그 및 결과 보고용)

        반환값:
            bool: 이번 호출로 처음 취소되었으면 True, 이미 취소된 상태였으면 False
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()

        logger.info(f"취소 신호 발생: reason={reason}")
        return True

    def wait(self, timeout: float) -> bool:
        """
        최대 timeout 초 동안 블로킹 대기합니다 (워커 스레드 전용).

        반환값:
            bool: 대기 중 취소되었으면 True
        """
        return self._event.wait(timeout)

    async def sleep(self, delay: float, tick: float = 0.05) -> bool:
        """
        최대 delay 초 동안 비동기 대기하며 tick마다 취소 여부를 확인합니다.

        파라미터:
            delay: 대기 시간 (초)
            tick: 취소 확인 주기 (초)

        반환값:
            bool: 대기 중 취소되었으면 True
        """
        if self._event.is_set():
            return True

        deadline = time.monotonic() + max(0.0, delay)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._event.is_set()
            await asyncio.sleep(min(tick, remaining))
            if self._event.is_set():
                return True
