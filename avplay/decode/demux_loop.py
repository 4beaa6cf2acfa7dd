"""
Demux Loop 상태 머신 모듈입니다.

역할:
- Source에서 패킷을 읽어 해당 스트림의 DecodeContext로 라우팅
- 선택되지 않았거나 닫힌 스트림의 패킷은 폐기
- EOF: 모든 컨텍스트에 flush 마커를 보내 남은 프레임을 배출한 뒤 정상 종료
- IOError: 루프 종료 후 호출자에게 보고 (이미 버퍼된 프레임은 유효)
- Cancelled: 매 읽기 전에 확인, flush 없이 모든 컨텍스트를 닫고 사유 보고

상태 전이:
    READING → ROUTING → READING ...
    READING → EOF | IO_ERROR | CANCELLED

동시성:
    run()은 동기 함수이며 asyncio.to_thread로 워커 스레드에서 실행됩니다.
    블로킹 지점은 Source.read_packet()과 DecodeContext의 BufferFull 재시도뿐입니다.

사용 예시:
    >>> loop = DemuxLoop(source, contexts, cancel_token)
    >>> result = await asyncio.to_thread(loop.run)
    >>> result.raise_for_errors()
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from avplay.decode.decode_context import DecodeContext
from avplay.engine import Packet, Source
from avplay.engine.errors import (
    AggregateDecodeError,
    PlaybackCancelled,
    SourceIOError,
    StreamDecodeError,
)
from avplay.metrics.metrics_store import PlaybackMetrics
from avplay.runtime.cancellation import CancelToken

logger = logging.getLogger(__name__)


class DemuxState(str, Enum):
    """Demux Loop 내부 상태입니다."""
    READING = "reading"
    ROUTING = "routing"
    EOF = "eof"
    IO_ERROR = "io_error"
    CANCELLED = "cancelled"


class DemuxOutcome(str, Enum):
    """Demux Loop 종료 결과입니다."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    IO_ERROR = "io_error"


@dataclass
class DemuxResult:
    """
    Demux Loop 실행 결과입니다.

    필드:
        outcome: 종료 결과
        packets_read: 읽은 패킷 수
        packets_routed: 컨텍스트로 전달된 패킷 수
        packets_discarded: 폐기된 패킷 수 (미선택/닫힌 스트림)
        decode_errors: 스트림별 디코드 실패 목록
        io_error: IO_ERROR 종료 시 원인
        cancel_reason: CANCELLED 종료 시 사유
        elapsed_sec: 실행 시간 (초)
    """
    outcome: DemuxOutcome
    packets_read: int = 0
    packets_routed: int = 0
    packets_discarded: int = 0
    decode_errors: list[StreamDecodeError] = field(default_factory=list)
    io_error: Optional[SourceIOError] = None
    cancel_reason: str = ""
    elapsed_sec: float = 0.0

    def raise_for_errors(self) -> None:
        """
        실패 결과를 예외로 변환합니다.

        에러:
            SourceIOError: I/O 에러로 종료된 경우
            PlaybackCancelled: 취소된 경우
            AggregateDecodeError: 하나 이상의 스트림 디코드가 실패한 경우
        """
        if self.outcome == DemuxOutcome.IO_ERROR and self.io_error is not None:
            raise self.io_error
        if self.outcome == DemuxOutcome.CANCELLED:
            raise PlaybackCancelled(self.cancel_reason)
        if self.decode_errors:
            raise AggregateDecodeError(self.decode_errors)


class DemuxLoop:
    """
    패킷 읽기/라우팅 상태 머신입니다.

    DecodeContext들의 유일한 소유자이며, 종료 시 모든 컨텍스트가 닫혀 있음을 보장합니다.
    """

    def __init__(
        self,
        source: Source,
        contexts: dict[int, DecodeContext],
        cancel_token: CancelToken,
        metrics: Optional[PlaybackMetrics] = None,
    ) -> None:
        self._source = source
        self._contexts = dict(contexts)
        self._cancel_token = cancel_token
        self._metrics = metrics
        self._state = DemuxState.READING

    @property
    def state(self) -> DemuxState:
        return self._state

    def run(self) -> DemuxResult:
        """
        EOF, I/O 에러 또는 취소까지 루프를 실행합니다.

        반환값:
            DemuxResult: 종료 결과 (예외 대신 결과 값으로 보고)
        """
        started = time.monotonic()
        result = DemuxResult(outcome=DemuxOutcome.COMPLETED)
        logger.info(f"Demux Loop 시작: streams={sorted(self._contexts)}")

        try:
            self._loop(result)
        except PlaybackCancelled as cancelled:
            # DecodeContext의 BufferFull 재시도 중 취소
            self._finish_cancelled(result, cancelled.reason)
        finally:
            # 어떤 경로로 끝나든 모든 컨텍스트를 닫음 (flush 없이)
            self._close_all()
            result.decode_errors = [
                context.error for context in self._contexts.values() if context.error is not None
            ]
            result.elapsed_sec = time.monotonic() - started

        logger.info(
            f"Demux Loop 종료: outcome={result.outcome.value}, "
            f"read={result.packets_read}, routed={result.packets_routed}, "
            f"discarded={result.packets_discarded}, "
            f"decode_errors={len(result.decode_errors)}, "
            f"elapsed={result.elapsed_sec:.2f}s"
        )
        return result

    # =========================================================================
    # 상태 처리
    # =========================================================================

    def _loop(self, result: DemuxResult) -> None:
        while True:
            self._state = DemuxState.READING
            if self._cancel_token.is_cancelled:
                self._finish_cancelled(result, self._cancel_token.reason)
                return

            try:
                packet = self._read_packet()
            except SourceIOError as io_error:
                self._state = DemuxState.IO_ERROR
                result.outcome = DemuxOutcome.IO_ERROR
                result.io_error = io_error
                logger.error(f"Demux I/O 에러로 종료: {io_error}")
                return

            if packet is None:
                self._state = DemuxState.EOF
                self._flush_all()
                result.outcome = DemuxOutcome.COMPLETED
                return

            result.packets_read += 1
            self._state = DemuxState.ROUTING
            context = self._contexts.get(packet.stream_index)
            if context is None or context.closed:
                result.packets_discarded += 1
                continue

            context.send(packet)
            result.packets_routed += 1

            if result.packets_read % 1000 == 0:
                logger.debug(f"Demux 진행: {result.packets_read}개 패킷 읽음")

    def _read_packet(self) -> Optional[Packet]:
        try:
            return self._source.read_packet()
        except SourceIOError:
            raise
        except Exception as exc:
            # Source 구현이 던진 기타 예외도 I/O 에러로 보고
            raise SourceIOError(f"패킷 읽기 실패: {exc!r}") from exc

    def _flush_all(self) -> None:
        logger.info("EOF 도달: 모든 디코드 컨텍스트 flush")
        for index in sorted(self._contexts):
            context = self._contexts[index]
            if not context.closed:
                context.send(None)

    def _finish_cancelled(self, result: DemuxResult, reason: str) -> None:
        self._state = DemuxState.CANCELLED
        result.outcome = DemuxOutcome.CANCELLED
        result.cancel_reason = reason
        logger.info(f"Demux Loop 취소: reason={reason}")

    def _close_all(self) -> None:
        for context in self._contexts.values():
            context.close()
