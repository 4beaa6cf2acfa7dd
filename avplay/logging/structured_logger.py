"""
구조화 로깅 모듈입니다.

역할:
- python-json-logger 기반 JSON 포맷 / 사람이 읽는 text 포맷 중 설정으로 선택
- RotatingFileHandler로 log_dir/app.log 순환 기록 (10MB, 5개 보존)
- 모든 레코드에 session_id, module, level 공통 필드 추가
- 스트림 단위 컴포넌트(DecodeContext, Scheduler)는 StreamLoggerAdapter로
  stream_index / kind 필드를 바인딩하여 스트림별 로그를 필터링할 수 있게 함

출력 예시:
    json: {"asctime": "...", "message": "BufferFull 재시도 누적: total=50",
           "session_id": "...", "module": "avplay.decode.decode_context",
           "level": "INFO", "stream_index": 1, "kind": "video"}
    text: 2024-01-01 12:00:00 [3f2a9c1e] INFO     avplay.decode.decode_context [1:video]: BufferFull ...

사용 예시:
    >>> setup_logging(config)
    >>> log = get_stream_logger("avplay.decode.decode_context", 1, MediaKind.VIDEO)
    >>> log.info("디코드 시작")
"""

from __future__ import annotations

import logging
import logging.handlers
import uuid
from pathlib import Path
from typing import Any, MutableMapping, Optional

from pythonjsonlogger import jsonlogger

from avplay.config.schema import AppConfig
from avplay.engine import MediaKind

_SESSION_ID: str = ""

# 로그 파일 순환 정책
_MAX_LOG_BYTES = 10 * 1024 * 1024  # 10MB
_BACKUP_COUNT = 5

# 스트림 로거가 바인딩하는 필드
_STREAM_FIELDS = ("stream_index", "kind")


def setup_logging(config: AppConfig, session_id: Optional[str] = None) -> str:
    """
    root 로거에 콘솔/파일 핸들러를 구성합니다.

    재호출 시 기존 root 핸들러를 닫고 다시 구성하므로 핸들러가 중복되지 않습니다.
    로그 디렉토리를 만들 수 없으면 경고 후 콘솔 핸들러만 사용합니다.

    파라미터:
        config: AppConfig 인스턴스 (system.log_level / log_format / log_dir / session_id)
        session_id: 세션 식별자. None이면 config.system.session_id 또는 UUID 사용

    반환값:
        str: 적용된 세션 ID
    """
    global _SESSION_ID

    _SESSION_ID = session_id or config.system.session_id or str(uuid.uuid4())

    log_level = getattr(logging, config.system.log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_handler = _make_file_handler(Path(config.system.log_dir))
    if file_handler is not None:
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(_make_formatter(config.system.log_format, _SESSION_ID))
        root_logger.addHandler(handler)

    logging.getLogger(__name__).info(
        f"로깅 초기화: level={config.system.log_level}, "
        f"format={config.system.log_format}, session={_SESSION_ID}, "
        f"file={'on' if file_handler is not None else 'off'}"
    )
    return _SESSION_ID


def get_stream_logger(name: str, stream_index: int, kind: MediaKind) -> StreamLoggerAdapter:
    """
    stream_index / kind가 바인딩된 로거를 반환합니다.

    파라미터:
        name: 로거 이름 (일반적으로 __name__)
        stream_index: 스트림 인덱스
        kind: 스트림 미디어 종류

    반환값:
        StreamLoggerAdapter: 표준 Logger API를 그대로 쓰는 어댑터
    """
    return StreamLoggerAdapter(logging.getLogger(name), stream_index, MediaKind(kind).value)


class StreamLoggerAdapter(logging.LoggerAdapter):
    """
    모든 레코드에 stream_index / kind extra 필드를 붙이는 LoggerAdapter입니다.

    호출 시 넘긴 extra는 바인딩된 필드와 병합되며, 같은 키는 호출 쪽 값이 우선합니다.
    """

    def __init__(self, logger: logging.Logger, stream_index: int, kind: str) -> None:
        super().__init__(logger, {"stream_index": stream_index, "kind": kind})

    @property
    def stream_index(self) -> int:
        return self.extra["stream_index"]

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


# =============================================================================
# 내부 헬퍼
# =============================================================================

def _make_file_handler(log_dir: Path) -> Optional[logging.Handler]:
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            filename=log_dir / "app.log",
            maxBytes=_MAX_LOG_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as exc:
        logging.getLogger(__name__).warning(f"로그 파일 핸들러 생성 실패: {exc}")
        return None


def _make_formatter(log_format: str, session_id: str) -> logging.Formatter:
    if log_format == "json":
        return _JsonFormatter(session_id=session_id)
    return _TextFormatter(session_id=session_id)


class _JsonFormatter(jsonlogger.JsonFormatter):
    """session_id, module, level과 스트림 필드를 기록하는 JSON 포맷터입니다."""

    def __init__(self, session_id: str = "") -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        self._session_id = session_id

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["session_id"] = self._session_id
        log_record["module"] = record.name
        log_record["level"] = record.levelname
        # 스트림 로거가 아니면 필드를 생략
        for field in _STREAM_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value


class _TextFormatter(logging.Formatter):
    """session_id 앞 8자리와 [stream_index:kind] 태그를 붙이는 텍스트 포맷터입니다."""

    def __init__(self, session_id: str = "") -> None:
        super().__init__(
            fmt=f"%(asctime)s [{session_id[:8] if session_id else 'no-sid'}] "
                f"%(levelname)-8s %(name)s%(stream_tag)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        stream_index = getattr(record, "stream_index", None)
        if stream_index is None:
            record.stream_tag = ""
        else:
            record.stream_tag = f" [{stream_index}:{getattr(record, 'kind', '?')}]"
        return super().format(record)
