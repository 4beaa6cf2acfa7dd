"""
ConfigManager 단위 테스트

검증 항목:
- YAML 로드 및 섹션 기본값 보충
- AVP_ 환경변수 오버라이드 (int / bool / list 변환)
- 스키마 검증 실패, 파일 없음, 잘못된 YAML
- low_watermark ≤ max_frames 교차 검증
- dot-notation get()
- reload(): 성공 시 구독자 통보, 실패 시 이전 설정 유지
- load_defaults(), watch() 경로 없음
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from avplay.config.config_manager import (
    ENV_PREFIX,
    ConfigFileNotFoundError,
    ConfigLoadError,
    ConfigManager,
    ConfigValidationError,
)
from avplay.config.schema import AppConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """실행 환경의 AVP_ 환경변수가 테스트에 섞이지 않도록 제거합니다."""
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)


def _write_config(tmp_path: Path, text: str) -> Path:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(text, encoding="utf-8")
    return config_path


_BASE_YAML = """
system:
  mode: synthetic
  log_level: DEBUG
buffer:
  max_frames: 20
scheduler:
  low_watermark: 4
  late_drop_ms: 80
"""


# =============================================================================
# load()
# =============================================================================

def test_load_yaml_and_fill_defaults(tmp_path):
    manager = ConfigManager()
    config = manager.load(_write_config(tmp_path, _BASE_YAML))

    assert config.system.mode == "synthetic"
    assert config.system.log_level == "DEBUG"
    assert config.buffer.max_frames == 20
    assert config.scheduler.late_drop_ms == 80
    # 누락된 섹션은 기본값
    assert config.renderer.queue_size == 32
    assert config.source.kinds == ["audio", "video"]
    assert manager.config is config


def test_empty_file_uses_defaults(tmp_path):
    config = ConfigManager().load(_write_config(tmp_path, ""))
    assert config == AppConfig()


def test_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("AVP_SCHEDULER_LATE_DROP_MS", "150")
    monkeypatch.setenv("AVP_SCHEDULER_PREFER_AUDIO", "false")
    monkeypatch.setenv("AVP_SOURCE_KINDS", "video,audio")

    config = ConfigManager().load(_write_config(tmp_path, _BASE_YAML))

    assert config.scheduler.late_drop_ms == 150
    assert config.scheduler.prefer_audio is False
    assert config.source.kinds == ["video", "audio"]
    # 같은 섹션의 파일 값은 유지
    assert config.scheduler.low_watermark == 4


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigFileNotFoundError):
        ConfigManager().load(tmp_path / "missing.yaml")


def test_invalid_yaml_raises(tmp_path):
    with pytest.raises(ConfigLoadError):
        ConfigManager().load(_write_config(tmp_path, "system: [unclosed"))


def test_non_mapping_root_raises(tmp_path):
    with pytest.raises(ConfigLoadError):
        ConfigManager().load(_write_config(tmp_path, "- a\n- b\n"))


@pytest.mark.parametrize("yaml_text", [
    "system:\n  mode: live\n",
    "system:\n  log_level: VERBOSE\n",
    "source:\n  kinds: [data]\n",
    "buffer:\n  max_frames: 0\n  max_duration_ms: 0\n",
    "scheduler:\n  late_drop_ms: -1\n",
])
def test_schema_violation_raises(tmp_path, yaml_text):
    with pytest.raises(ConfigValidationError):
        ConfigManager().load(_write_config(tmp_path, yaml_text))


def test_watermark_above_max_frames_rejected(tmp_path):
    yaml_text = "buffer:\n  max_frames: 4\nscheduler:\n  low_watermark: 5\n"
    with pytest.raises(ConfigValidationError):
        ConfigManager().load(_write_config(tmp_path, yaml_text))


def test_watermark_unchecked_when_frames_unbounded(tmp_path):
    yaml_text = "buffer:\n  max_frames: 0\n  max_duration_ms: 2000\nscheduler:\n  low_watermark: 500\n"
    config = ConfigManager().load(_write_config(tmp_path, yaml_text))
    assert config.scheduler.low_watermark == 500


# =============================================================================
# get() / load_defaults()
# =============================================================================

def test_get_dot_notation(tmp_path):
    manager = ConfigManager()
    manager.load(_write_config(tmp_path, _BASE_YAML))

    assert manager.get("scheduler.late_drop_ms") == 80
    assert manager.get("buffer.max_frames") == 20
    assert manager.get("scheduler.unknown", default="fallback") == "fallback"
    assert manager.get("nothing.here") is None


def test_get_before_load_raises():
    with pytest.raises(RuntimeError):
        ConfigManager().get("system.mode")


def test_load_defaults_applies_env(monkeypatch):
    monkeypatch.setenv("AVP_SYSTEM_MODE", "synthetic")
    manager = ConfigManager()
    config = manager.load_defaults()

    assert config.system.mode == "synthetic"
    assert config.buffer.max_frames == 120
    # 파일이 없으므로 감시도 시작하지 않음
    assert manager.watch() is False
    assert manager.reload() is False


# =============================================================================
# reload()
# =============================================================================

def test_reload_notifies_subscribers(tmp_path):
    config_path = _write_config(tmp_path, _BASE_YAML)
    manager = ConfigManager()
    manager.load(config_path)

    changes = []
    manager.subscribe(lambda old, new: changes.append((old.scheduler.late_drop_ms, new.scheduler.late_drop_ms)))

    config_path.write_text(_BASE_YAML.replace("late_drop_ms: 80", "late_drop_ms: 120"), encoding="utf-8")
    assert manager.reload() is True

    assert changes == [(80, 120)]
    assert manager.get("scheduler.late_drop_ms") == 120


def test_reload_failure_keeps_previous_config(tmp_path):
    config_path = _write_config(tmp_path, _BASE_YAML)
    manager = ConfigManager()
    original = manager.load(config_path)

    changes = []
    manager.subscribe(lambda old, new: changes.append(new))

    config_path.write_text("scheduler:\n  late_drop_ms: -5\n", encoding="utf-8")
    assert manager.reload() is False

    assert manager.config is original
    assert changes == []


def test_failing_subscriber_does_not_block_others(tmp_path):
    config_path = _write_config(tmp_path, _BASE_YAML)
    manager = ConfigManager()
    manager.load(config_path)

    def broken(old, new):
        raise RuntimeError("subscriber failure")

    received = []
    manager.subscribe(broken)
    manager.subscribe(lambda old, new: received.append(new))

    assert manager.reload() is True
    assert len(received) == 1

    manager.unsubscribe(broken)
    manager.unsubscribe(broken)  # 없는 구독자 제거는 경고만
