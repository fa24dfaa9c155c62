"""
SQL Monitor AI - Entry Point

Runs detection cycles on the configured interval until interrupted.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    from sqlmonitor import __app_name__, __version__

    parser = argparse.ArgumentParser(
        prog="sqlmonitor",
        description=f"{__app_name__} - slow query and index fragmentation monitor",
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="Path to settings.json (default: app data directory)")
    parser.add_argument("--once", action="store_true",
                        help="Run a single detection cycle and exit")
    parser.add_argument("--check-ai", action="store_true",
                        help="Verify the AI provider connection and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def _install_signal_handlers(scheduler) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead
            pass


async def run(args: argparse.Namespace) -> int:
    from sqlmonitor.ai.analysis_service import AIQueryAnalysisService
    from sqlmonitor.core.config import Settings
    from sqlmonitor.core.logger import setup_logging, get_logger
    from sqlmonitor.database.connection import SqlServerExecutor
    from sqlmonitor.services.history_store import create_history_store
    from sqlmonitor.services.monitor_service import MonitorOrchestrator
    from sqlmonitor.services.scheduler import IntervalTicker, ManualTicker, MonitorScheduler
    from sqlmonitor import __app_name__, __version__

    settings = Settings.load(args.config)

    setup_logging(
        level=settings.logging.level,
        log_dir=settings.logs_dir,
        file_enabled=settings.logging.file_enabled,
        retention_days=settings.logging.retention_days,
    )
    logger = get_logger('main')
    logger.info(f"Starting {__app_name__} v{__version__}")
    logger.info(f"Monitoring server: {settings.database.server}")

    ai_service = AIQueryAnalysisService.from_settings(settings.ai)

    if args.check_ai:
        try:
            ok = await ai_service.check_connection()
        finally:
            await ai_service.close()
        logger.info(f"AI provider connection: {'OK' if ok else 'FAILED'}")
        return 0 if ok else 1

    history_store = create_history_store(settings)
    orchestrator = MonitorOrchestrator(
        executor=SqlServerExecutor(settings.database),
        history_store=history_store,
        settings=settings.monitoring,
        ai_service=ai_service,
    )

    if args.once:
        ticker = ManualTicker(ticks=1)
    else:
        ticker = IntervalTicker(settings.monitoring.interval_minutes * 60)
        logger.info(f"Detection interval: {settings.monitoring.interval_minutes} minute(s)")

    scheduler = MonitorScheduler(orchestrator, ticker)
    _install_signal_handlers(scheduler)

    try:
        await scheduler.run()
    finally:
        await ai_service.close()
        await history_store.close()

    report = scheduler.last_report
    if report is not None and report.failed_databases:
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point"""
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
