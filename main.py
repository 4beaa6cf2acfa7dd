"""
avplay 재생 파이프라인 진입점

역할:
- 설정 로드 (config.yaml 또는 기본값 + 환경변수 오버라이드) 후 커맨드라인 인자로 덮어쓰기
- 구조화 로깅 초기화
- PlaybackPipeline 실행, SIGINT/SIGTERM 시 graceful shutdown
- 설정 파일 핫스왑 감시 (scheduler 임계값 즉시 반영)

실행 예시:
    파일 재생:
        python main.py --input sample.mp4

    오디오만 재생 (창 없이):
        python main.py --input sample.mp4 --kinds audio --no-display

    합성 소스 재생 (미디어 파일 없이 동작 확인):
        python main.py --mode synthetic --duration 5

종료 코드:
    0: 정상 완료, 1: 실패, 130: 취소 (SIGINT/SIGTERM, 'q' 키, --duration 만료)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from avplay.config.config_manager import ConfigLoadError, ConfigManager
from avplay.config.schema import AppConfig
from avplay.logging.structured_logger import setup_logging
from avplay.pipeline import PipelineOutcome
from avplay.pipeline.playback_pipeline import PlaybackPipeline

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


# =============================================================================
# 진입점
# =============================================================================

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """커맨드라인 인자를 파싱합니다."""
    parser = argparse.ArgumentParser(
        description="avplay: 미디어 디코드 및 A/V 동기 재생 파이프라인"
    )
    parser.add_argument(
        "--config", default="config.yaml",
        help="설정 파일 경로 (기본: config.yaml, 없으면 기본값 사용)",
    )
    parser.add_argument(
        "--mode", choices=["file", "synthetic"], help="실행 모드 (config.yaml 오버라이드)"
    )
    parser.add_argument(
        "--input", help="재생할 미디어 파일 또는 URL (file 모드 전용)"
    )
    parser.add_argument(
        "--kinds", help="재생할 미디어 종류, 쉼표 구분 (예: audio,video)"
    )
    parser.add_argument(
        "--streams", help="재생할 스트림 인덱스, 쉼표 구분 (지정 시 --kinds보다 우선)"
    )
    parser.add_argument(
        "--no-display", action="store_true", help="OpenCV 화면 출력 비활성화"
    )
    parser.add_argument(
        "--duration", type=int, default=0,
        help="실행 시간 제한 (초, 0=무제한)",
    )
    parser.add_argument(
        "--lateness-csv", help="종료 시 프레임 lateness 측정값을 저장할 CSV 경로"
    )
    return parser.parse_args(argv)


def _apply_cli_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """
    커맨드라인 인자를 설정에 반영한 새 AppConfig를 반환합니다.

    에러:
        pydantic.ValidationError: 오버라이드 값이 스키마를 위반할 때
        ValueError: --streams 값이 정수가 아닐 때
    """
    config_dict = config.model_dump()
    if args.mode:
        config_dict["system"]["mode"] = args.mode
    if args.input:
        config_dict["source"]["locator"] = args.input
    if args.kinds:
        config_dict["source"]["kinds"] = [kind.strip() for kind in args.kinds.split(",") if kind.strip()]
    if args.streams:
        config_dict["source"]["stream_indices"] = [
            int(index) for index in args.streams.split(",") if index.strip()
        ]
    if args.no_display:
        config_dict["renderer"]["display"] = False
    return AppConfig(**config_dict)


async def _run_with_timeout(pipeline: PlaybackPipeline, duration_sec: int) -> None:
    """파이프라인을 duration_sec 초 후에 자동 종료합니다."""
    if duration_sec > 0:
        if not await pipeline.cancel_token.sleep(duration_sec, tick=0.2):
            logger.info(f"{duration_sec}초 경과, 파이프라인 자동 종료")
            pipeline.request_shutdown(f"duration {duration_sec}s elapsed")


async def _main(argv: list[str] | None = None) -> int:
    """비동기 메인 함수입니다. 프로세스 종료 코드를 반환합니다."""
    args = _parse_args(argv)

    # 설정 로드
    manager = ConfigManager()
    try:
        if Path(args.config).exists():
            config = manager.load(args.config)
        else:
            config = manager.load_defaults()
        config = _apply_cli_overrides(config, args)
    except (ConfigLoadError, ValueError) as exc:
        print(f"설정 오류: {exc}", file=sys.stderr)
        return EXIT_FAILED

    # 로깅 설정
    session_id = setup_logging(config)
    logger.info(
        f"avplay 시작: "
        f"session_id={session_id}, "
        f"mode={config.system.mode}, "
        f"input={config.source.locator or '-'}"
    )

    pipeline = PlaybackPipeline(config)

    # 핫스왑 설정 감시 등록
    manager.subscribe(pipeline.apply_config)
    manager.watch()

    # SIGINT/SIGTERM 핸들러 등록 (asyncio-safe 방식)
    loop = asyncio.get_running_loop()

    def _signal_handler(signame: str) -> None:
        logger.info(f"종료 시그널 수신: {signame}")
        pipeline.request_shutdown(signame)

    loop.add_signal_handler(signal.SIGINT, _signal_handler, "SIGINT")
    loop.add_signal_handler(signal.SIGTERM, _signal_handler, "SIGTERM")

    try:
        timer = asyncio.create_task(_run_with_timeout(pipeline, args.duration))
        try:
            result = await pipeline.run()
        finally:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
    finally:
        manager.stop_watch()
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)

    pipeline.metrics.log_summary()
    pipeline.lateness.compute_stats()
    if args.lateness_csv:
        try:
            pipeline.lateness.export_csv(args.lateness_csv)
        except OSError as exc:
            logger.warning(f"lateness CSV 저장을 건너뜁니다: {exc}")

    if result.outcome == PipelineOutcome.COMPLETED:
        logger.info("avplay 재생 완료")
        return EXIT_OK
    if result.outcome == PipelineOutcome.CANCELLED:
        logger.info(f"avplay 재생 취소: {result.cancel_reason}")
        return EXIT_CANCELLED

    for error in result.decode_errors:
        logger.error(f"디코드 실패: {error}")
    if result.error is not None:
        logger.error(f"avplay 실패: {result.error}")
    return EXIT_FAILED


def cli() -> None:
    """콘솔 스크립트 진입점입니다."""
    sys.exit(asyncio.run(_main()))


if __name__ == "__main__":
    cli()
