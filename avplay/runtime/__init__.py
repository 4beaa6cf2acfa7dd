"""
런타임 공용 모듈 패키지

CancelToken을 외부에서 임포트하기 위한 패키지 초기화입니다.
"""

from avplay.runtime.cancellation import CancelToken

__all__ = ["CancelToken"]
