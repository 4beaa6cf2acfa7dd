"""
설정 패키지

YAML 설정 로드/검증(ConfigManager)과 pydantic 스키마(AppConfig)를 제공합니다.
"""

from avplay.config.config_manager import ConfigManager
from avplay.config.schema import AppConfig

__all__ = ["AppConfig", "ConfigManager"]
