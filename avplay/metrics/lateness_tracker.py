"""
프레임 전달 지연(lateness) 추적 모듈입니다.

역할:
- Scheduler가 프레임을 전달/드롭할 때 (목표 시각 대비 실제 시각) 차이를 ms 단위로 기록
- 미디어 종류별 슬라이딩 윈도우 기반 평균/최소/최대/P95/P99 통계 계산
- CSV 파일 내보내기

사용 예시:
    >>> tracker = LatenessTracker(window_sec=60)
    >>> tracker.record("video", lateness_ms=12.5)
    >>> stats = tracker.compute_stats()
"""

from __future__ import annotations

import csv
import logging
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Optional

import numpy as np

from avplay.metrics import LatenessStats

logger = logging.getLogger(__name__)


class LatenessTracker:
    """
    미디어 종류별 lateness 측정값을 보관하고 통계를 계산하는 클래스입니다.

    측정값은 (기록 시각 ns, lateness ms) 쌍으로 저장되며,
    윈도우의 2배보다 오래된 값은 기록 시 정리됩니다.
    """

    def __init__(self, window_sec: int = 60) -> None:
        self._window_sec = window_sec
        self._lock = threading.RLock()
        # kind → [(timestamp_ns, lateness_ms), ...]
        self._measurements: dict[str, list[tuple[int, float]]] = defaultdict(list)

        logger.info(f"LatenessTracker 초기화: window={self._window_sec}초")

    def record(self, kind: str, lateness_ms: float, timestamp_ns: Optional[int] = None) -> None:
        """
        lateness 측정값 하나를 기록합니다.

        파라미터:
            kind: 미디어 종류 이름
            lateness_ms: 목표 시각 대비 지연 (ms, 음수면 일찍 전달)
            timestamp_ns: 기록 시각 (None이면 현재 시각)
        """
        now_ns = timestamp_ns if timestamp_ns is not None else time.time_ns()
        with self._lock:
            self._measurements[kind].append((now_ns, float(lateness_ms)))

            cutoff_ns = time.time_ns() - int(self._window_sec * 2 * 1_000_000_000)
            if self._measurements[kind][0][0] < cutoff_ns:
                self._measurements[kind] = [
                    (ts, ms) for ts, ms in self._measurements[kind] if ts >= cutoff_ns
                ]

    def compute_stats(self, window_sec: Optional[int] = None) -> dict[str, LatenessStats]:
        """
        슬라이딩 윈도우 내 lateness 통계를 계산합니다.

        파라미터:
            window_sec: 윈도우 크기 (초). None이면 생성 시 값 사용

        반환값:
            dict[str, LatenessStats]: 미디어 종류별 통계
        """
        window = window_sec or self._window_sec
        cutoff_ns = time.time_ns() - int(window * 1_000_000_000)

        stats = {}
        with self._lock:
            for kind, measurements in self._measurements.items():
                recent = [ms for ts, ms in measurements if ts >= cutoff_ns]
                if not recent:
                    continue

                arr = np.array(recent, dtype=np.float64)
                stats[kind] = LatenessStats(
                    kind=kind,
                    count=len(arr),
                    mean_ms=float(np.mean(arr)),
                    min_ms=float(np.min(arr)),
                    max_ms=float(np.max(arr)),
                    p95_ms=float(np.percentile(arr, 95)),
                    p99_ms=float(np.percentile(arr, 99)),
                )

        if stats:
            logger.info(
                f"lateness 통계 ({window}초 윈도우): "
                + ", ".join(
                    f"{k}=avg{v.mean_ms:.1f}ms/P95={v.p95_ms:.1f}ms"
                    for k, v in stats.items()
                )
            )

        return stats

    def export_csv(self, filepath: str | Path) -> None:
        """
        전체 측정값을 CSV 파일로 저장합니다.

        CSV 컬럼: kind, timestamp_ns, lateness_ms
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            rows = [
                (kind, ts, ms)
                for kind, measurements in self._measurements.items()
                for ts, ms in measurements
            ]

        try:
            with open(filepath, "w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                writer.writerow(["kind", "timestamp_ns", "lateness_ms"])
                for kind, ts, ms in rows:
                    writer.writerow([kind, ts, f"{ms:.3f}"])
            logger.info(f"lateness CSV 저장 완료: {filepath} ({len(rows)}개 레코드)")
        except OSError as exc:
            logger.error(f"lateness CSV 저장 실패: {exc}")
            raise
