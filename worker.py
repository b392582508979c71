"""
After-sales worker.

Runs the timeout sweep on a schedule and purges expired audit entries.

Usage:
    python worker.py                  # run forever
    python worker.py --once           # single sweep, for cron
    python worker.py --once --dry-run # list expired cases without touching them
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from aftersales_core import AftersalesService, Database, EventDispatcher, load_config
from aftersales_core.events import WebhookEventSink
from aftersales_core.logger import setup_logger
from aftersales_core.timeouts import TimeoutScheduler, TimeoutSweeper

# Load environment variables from .env file
load_dotenv()

logger = setup_logger(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    log_file=os.getenv("AFTERSALES_LOG_FILE") or None,
    audit_log_file=os.getenv("AFTERSALES_AUDIT_LOG_FILE") or None,
)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the after-sales timeout sweep")
    parser.add_argument(
        "--config",
        default=os.getenv("AFTERSALES_CONFIG", "config.json"),
        help="Path to config.json (default: $AFTERSALES_CONFIG or config.json)",
    )
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    parser.add_argument("--dry-run", action="store_true", help="Only report expired cases (implies --once)")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    db_path = os.getenv("AFTERSALES_DB_PATH", config.database_path)
    db = Database(db_path)
    await db.connect()
    logger.info(f"Connected to database at {db_path}")

    dispatcher = EventDispatcher()
    webhook = WebhookEventSink.from_settings(config.notifications)
    if webhook is not None:
        dispatcher.add_sink(webhook)
        logger.info(f"Publishing case events to {webhook.url}")

    service = AftersalesService(db, config, dispatcher=dispatcher)
    sweeper = TimeoutSweeper(db, service, config.sweep)
    scheduler = TimeoutScheduler(sweeper, db, config.sweep, config.audit_retention)

    try:
        if args.dry_run:
            result = await sweeper.run_once(dry_run=True)
            for reference in result.candidates:
                logger.info(f"Expired: {reference}")
        else:
            await scheduler.run_forever(once=args.once)
    finally:
        scheduler.stop()
        await db.close()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
