"""
구조화 로깅 패키지

setup_logging, get_stream_logger를 외부에서 임포트하기 위한 패키지 초기화입니다.
"""

from avplay.logging.structured_logger import StreamLoggerAdapter, get_stream_logger, setup_logging

__all__ = ["StreamLoggerAdapter", "get_stream_logger", "setup_logging"]
