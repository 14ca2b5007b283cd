"""
Main entrypoint: runs the auto-sync scheduler, or a single sync, in-process.

FastAPI runs separately under uvicorn.

Usage:
    python -m sourcesync                   # starts the auto-sync scheduler
    python -m sourcesync sync <target_id>  # one sync run for one target
    python -m sourcesync autosync          # one auto-sync pass over due targets
    uvicorn sourcesync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

from sourcesync.config import get_settings

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    # Suppress noisy third-party loggers
    for name in ("httpx", "httpcore", "apscheduler.executors.default"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def _run_one(target_id: int) -> int:
    from sourcesync.db.engine import get_engine
    from sourcesync.errors import RunAlreadyActiveError, TargetNotFoundError
    from sourcesync.sync.runtime import open_controller

    async with open_controller(get_engine()) as controller:
        try:
            report = await controller.start_sync(target_id)
        except (TargetNotFoundError, RunAlreadyActiveError) as exc:
            logger.error("%s", exc)
            return 1

    logger.info(
        "Run %s %s: %d processed, %d updated, %d errors",
        report.run_id, report.status, report.items_processed,
        report.items_updated, report.error_count,
    )
    for error in report.errors:
        logger.warning("  [%s] %s: %s", error.scope, error.label, error.message)
    if not report.succeeded:
        logger.error("Sync failed: %s", report.error_message)
        return 1
    return 0


async def _run_auto_once() -> int:
    from sourcesync.db.engine import get_engine
    from sourcesync.sync.runtime import auto_sync

    summary = await auto_sync(get_engine())
    for result in summary.results:
        status = result.report.status if result.report else "not_run"
        logger.info("%s: %s %s", result.target_name, status, result.error or "")
    return 1 if summary.failed else 0


async def _run_scheduler() -> None:
    from sourcesync.db.engine import get_engine
    from sourcesync.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (auto-sync every %d min, threshold %d min)",
        settings.auto_sync_interval_minutes,
        settings.auto_sync_threshold_minutes,
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()


def main() -> None:
    _configure_logging()
    args = sys.argv[1:]
    # Dispatch on first argument
    if args and args[0] == "sync":
        if len(args) != 2 or not args[1].isdigit():
            print("Usage: python -m sourcesync sync <target_id>")
            sys.exit(2)
        sys.exit(asyncio.run(_run_one(int(args[1]))))
    elif args and args[0] == "autosync":
        sys.exit(asyncio.run(_run_auto_once()))
    elif args:
        print(__doc__)
        sys.exit(2)
    else:
        try:
            asyncio.run(_run_scheduler())
        except KeyboardInterrupt:
            pass


if __name__ == "__main__":
    main()
