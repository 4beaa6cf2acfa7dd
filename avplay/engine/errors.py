"""
재생 코어 에러 정의 모듈입니다.

에러 분류:
- BadParameterError: 잘못된 인자 (치명적)
- StreamNotFoundError: 요청한 종류의 스트림 없음
- SourceIOError: 소스 읽기/demux 실패 (Demux Loop 종료)
- PlaybackCancelled: 운영자 종료 요청
- StreamDecodeError: 스트림 단위 디코드 실패 (파이프라인은 계속)
- AggregateDecodeError: 스트림별 디코드 실패 묶음

BufferFull / WouldBlock / EndOfStream은 예외가 아니라 결과 값
(PushResult, DecodeStatus)으로 표현합니다.
"""

from __future__ import annotations


class PlaybackError(Exception):
    """재생 코어 에러의 기본 클래스입니다."""
    pass


class BadParameterError(PlaybackError):
    """잘못된 파라미터(범위를 벗어난 스트림 인덱스 등)로 호출했을 때 발생합니다."""
    pass


class StreamNotFoundError(PlaybackError):
    """선택할 수 있는 스트림이 없을 때 발생합니다."""
    pass


class SourceIOError(PlaybackError):
    """소스 열기 또는 패킷 읽기 중 EOF가 아닌 오류가 발생했을 때 사용합니다."""
    pass


class PlaybackCancelled(PlaybackError):
    """취소 신호로 작업이 중단되었을 때 발생합니다."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or "cancelled")
        self.reason = reason


class StreamDecodeError(PlaybackError):
    """
    단일 스트림의 디코드 실패입니다.

    해당 스트림의 DecodeContext만 닫히고 다른 스트림과 Demux Loop는 계속 진행합니다.
    """

    def __init__(self, stream_index: int, message: str) -> None:
        super().__init__(f"stream {stream_index}: {message}")
        self.stream_index = stream_index
        self.message = message


class AggregateDecodeError(PlaybackError):
    """실행 중 수집된 스트림별 디코드 실패 목록입니다."""

    def __init__(self, errors: list[StreamDecodeError]) -> None:
        summary = "; ".join(str(error) for error in errors)
        super().__init__(f"{len(errors)}개 스트림 디코드 실패: {summary}")
        self.errors = list(errors)
