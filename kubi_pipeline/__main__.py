"""Entry point for the donation pipeline processes"""
import argparse
import asyncio
import json
import logging
import signal
import sys
import threading
import traceback
from typing import Optional

import uvicorn
from pydantic import ValidationError

from kubi_pipeline.config import Settings, get_settings
from kubi_pipeline.db import db
from kubi_pipeline.db_config import DatabaseManager
from kubi_pipeline.errors import ConfigurationError
from kubi_pipeline.fanout import PushFanout
from kubi_pipeline.handler import EventHandler
from kubi_pipeline.queue_worker import NotificationQueueWorker, redrive
from kubi_pipeline.rebase import RebaseScheduler
from kubi_pipeline.server import create_app
from kubi_pipeline.services.ledger import LedgerService
from kubi_pipeline.services.yield_token import YieldTokenClient
from kubi_pipeline.watcher import ChainWatcher

logger = logging.getLogger(__name__)


def init_database(settings: Settings, create_tables: bool = False) -> None:
    try:
        url = DatabaseManager.initialize_from_settings(settings)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    db.init(url, create_tables=create_tables)


def ledger_latest_block(chain_id: int) -> Optional[int]:
    with db.session() as session:
        return LedgerService(session).latest_block(chain_id)


async def watch(settings: Settings) -> None:
    """Run one watcher per configured network until SIGINT/SIGTERM"""
    handler = EventHandler(db)
    watchers = [
        ChainWatcher(network, handler.handle, settings, ledger_cursor=ledger_latest_block)
        for network in settings.NETWORKS
    ]
    if not watchers:
        raise ConfigurationError("NETWORKS is empty, nothing to watch")

    loop = asyncio.get_running_loop()

    def shutdown():
        logger.info("Shutting down watchers...")
        for watcher in watchers:
            loop.create_task(watcher.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown)

    await asyncio.gather(*(watcher.run() for watcher in watchers))


def serve_overlay(settings: Settings) -> None:
    fanout = PushFanout()
    worker = NotificationQueueWorker(
        db,
        fanout,
        batch_size=settings.QUEUE_BATCH_SIZE,
        poll_interval=settings.QUEUE_POLL_INTERVAL,
        alert_sound_url=settings.OVERLAY_ALERT_SOUND_URL,
    )
    app = create_app(fanout, worker)
    uvicorn.run(app, host=settings.OVERLAY_HOST, port=settings.OVERLAY_PORT, log_config=None)


def run_rebase(settings: Settings, once: bool) -> None:
    settings.require_rebase()
    client = YieldTokenClient.from_settings(settings)
    logger.info(f"Using owner address: {client.owner}")
    scheduler = RebaseScheduler(db, client, settings.CHAIN_ID, settings.rebases_per_day)

    if once:
        scheduler.run_once()
        return

    stop_event = threading.Event()

    def shutdown(signum, frame):
        logger.info("Shutting down rebase scheduler...")
        stop_event.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)
    scheduler.run_forever(stop_event, settings.REBASE_INTERVAL_MINUTES)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kubi_pipeline", description="Kubi donation pipeline")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("init-db", help="Create ledger tables")
    commands.add_parser("watch", help="Index donation events from every configured network")
    commands.add_parser("overlay", help="Serve overlay websockets and drain the notification queue")
    rebase = commands.add_parser("rebase", help="Grow yield token scaling factors on schedule")
    rebase.add_argument("--once", action="store_true", help="Run a single rebase job and exit")
    commands.add_parser("redrive", help="Return failed notifications to PENDING")
    return parser


def run(argv=None) -> None:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    try:
        # Log config (excluding sensitive data)
        logger.info("Using configuration:")
        logger.info(json.dumps(settings.safe_dump(), indent=2))

        init_database(settings, create_tables=args.command == "init-db")

        if args.command == "init-db":
            logger.info("Ledger tables created")
        elif args.command == "watch":
            asyncio.run(watch(settings))
        elif args.command == "overlay":
            serve_overlay(settings)
        elif args.command == "rebase":
            run_rebase(settings, once=args.once)
        elif args.command == "redrive":
            redrive(db)

    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error in {args.command}: {e}")
        traceback.print_exc()
        sys.exit(1)
    finally:
        db.dispose()


if __name__ == "__main__":
    run()
