"""
avplay: 미디어 디코드 및 A/V 동기 재생 파이프라인
"""

__version__ = "0.1.0"
