"""
렌더러 모듈 패키지

공통 데이터 타입 정의:
- EnqueueResult: 렌더러 큐 전달 결과 (OK | QUEUE_FULL | STOPPED)
- Renderer: Scheduler가 사용하는 렌더러 인터페이스
- RenderStats: 렌더러 소비 통계
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from avplay.engine import Frame


class EnqueueResult(str, Enum):
    """Renderer.enqueue() 결과입니다."""
    OK = "ok"
    QUEUE_FULL = "queue_full"
    STOPPED = "stopped"


class Renderer(Protocol):
    """
    Scheduler가 프레임을 넘기는 외부 렌더러 인터페이스입니다.

    enqueue()가 OK를 반환하면 프레임 소유권은 렌더러로 이동합니다.
    """

    def enqueue(self, frame: Frame) -> EnqueueResult: ...

    def close_input(self) -> None: ...


@dataclass
class RenderStats:
    """
    렌더러 소비 통계입니다.

    필드:
        frames_by_kind: 미디어 종류 이름 → 소비한 프레임 수
        displayed: 화면에 표시한 비디오 프레임 수
        conversion_errors: BGR 변환 실패 수
        user_quit: 사용자가 'q'로 종료했는지 여부
    """
    frames_by_kind: dict[str, int] = field(default_factory=dict)
    displayed: int = 0
    conversion_errors: int = 0
    user_quit: bool = False

    @property
    def total(self) -> int:
        return sum(self.frames_by_kind.values())
