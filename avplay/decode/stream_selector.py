"""
스트림 선택 모듈입니다.

역할:
- 열린 Source에서 디코드할 스트림을 고름
- 종류 필터: 종류별 best 스트림 1개 (소스 선호 순위, 동률이면 낮은 인덱스)
- 명시적 인덱스: 존재 여부 및 디코드 가능 종류 검증
- 선택된 스트림마다 DecodeContext를 생성하여 stream_index → SelectedStream 매핑 반환

에러:
- 요청한 종류가 없으면 경고 로그 후 생략 (비치명적)
- 범위를 벗어난 인덱스 / 디코드 불가 종류는 BadParameterError (치명적)
- 최종 선택 결과가 비면 StreamNotFoundError

사용 예시:
    >>> selector = StreamSelector(source)
    >>> chosen = selector.choose(kinds=[MediaKind.AUDIO, MediaKind.VIDEO])
    >>> selected = selector.bind(chosen, lambda descriptor: make_context(descriptor))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from avplay.decode.decode_context import DecodeContext
from avplay.engine import DECODABLE_KINDS, MediaKind, Source, StreamDescriptor
from avplay.engine.errors import BadParameterError, StreamNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class SelectedStream:
    """선택된 스트림의 descriptor와 그 스트림 전용 DecodeContext 쌍입니다."""
    descriptor: StreamDescriptor
    context: DecodeContext


class StreamSelector:
    """
    Source가 보고한 스트림 목록에서 디코드 대상을 고르는 클래스입니다.
    """

    def __init__(self, source: Source) -> None:
        self._source = source
        self._streams = {descriptor.index: descriptor for descriptor in source.streams()}

    def choose(
        self,
        kinds: Optional[Iterable[MediaKind]] = None,
        indices: Optional[Iterable[int]] = None,
    ) -> list[StreamDescriptor]:
        """
        디코드할 스트림 descriptor 목록을 반환합니다 (인덱스 오름차순).

        indices가 주어지면 kinds보다 우선합니다. 둘 다 없으면 오디오+비디오를 선택합니다.

        파라미터:
            kinds: 미디어 종류 필터
            indices: 명시적 스트림 인덱스 목록

        반환값:
            list[StreamDescriptor]: 선택된 스트림

        에러:
            BadParameterError: 존재하지 않는 인덱스, 디코드 불가 종류, 중복 인덱스
            StreamNotFoundError: 선택 결과가 비었을 때
        """
        if indices is not None and list(indices):
            chosen = self._choose_by_indices(list(indices))
        else:
            requested = list(kinds) if kinds is not None else [MediaKind.AUDIO, MediaKind.VIDEO]
            chosen = self._choose_by_kinds(requested)

        if not chosen:
            error_message = "디코드할 스트림이 없습니다"
            logger.error(error_message)
            raise StreamNotFoundError(error_message)

        chosen.sort(key=lambda descriptor: descriptor.index)
        logger.info(
            f"스트림 선택 완료: "
            f"{[f'{d.index}:{d.kind.value}:{d.codec_name}' for d in chosen]}"
        )
        return chosen

    def bind(
        self,
        chosen: list[StreamDescriptor],
        context_factory: Callable[[StreamDescriptor], DecodeContext],
    ) -> dict[int, SelectedStream]:
        """
        선택된 스트림마다 DecodeContext를 생성합니다.

        생성 도중 실패하면 이미 만든 컨텍스트를 닫고 예외를 전파합니다.

        파라미터:
            chosen: choose()가 반환한 descriptor 목록
            context_factory: descriptor → DecodeContext 생성 함수

        반환값:
            dict[int, SelectedStream]: stream_index → (descriptor, context)
        """
        selected: dict[int, SelectedStream] = {}
        try:
            for descriptor in chosen:
                selected[descriptor.index] = SelectedStream(
                    descriptor=descriptor,
                    context=context_factory(descriptor),
                )
        except Exception:
            for entry in selected.values():
                entry.context.close()
            raise
        return selected

    def select(
        self,
        context_factory: Callable[[StreamDescriptor], DecodeContext],
        kinds: Optional[Iterable[MediaKind]] = None,
        indices: Optional[Iterable[int]] = None,
    ) -> dict[int, SelectedStream]:
        """choose()와 bind()를 한 번에 수행합니다."""
        return self.bind(self.choose(kinds=kinds, indices=indices), context_factory)

    # =========================================================================
    # 내부 헬퍼
    # =========================================================================

    def _choose_by_kinds(self, kinds: list[MediaKind]) -> list[StreamDescriptor]:
        chosen: list[StreamDescriptor] = []
        for kind in dict.fromkeys(MediaKind(kind) for kind in kinds):
            if kind not in DECODABLE_KINDS:
                raise BadParameterError(f"디코드할 수 없는 미디어 종류: {kind.value}")

            candidates = [d for d in self._streams.values() if d.kind == kind]
            if not candidates:
                # NotFound는 비치명적: 해당 종류만 생략
                logger.warning(f"{kind.value} 스트림이 없어 생략합니다")
                continue

            best = min(candidates, key=lambda descriptor: (descriptor.rank, descriptor.index))
            chosen.append(best)
        return chosen

    def _choose_by_indices(self, indices: list[int]) -> list[StreamDescriptor]:
        if len(set(indices)) != len(indices):
            raise BadParameterError(f"중복된 스트림 인덱스: {indices}")

        chosen: list[StreamDescriptor] = []
        for index in indices:
            descriptor = self._streams.get(index)
            if descriptor is None:
                raise BadParameterError(
                    f"스트림 인덱스 범위 초과: {index} (사용 가능: {sorted(self._streams)})"
                )
            if descriptor.kind not in DECODABLE_KINDS:
                raise BadParameterError(
                    f"디코드할 수 없는 스트림: {index}:{descriptor.kind.value}"
                )
            chosen.append(descriptor)
        return chosen
