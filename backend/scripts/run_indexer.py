import argparse
import asyncio
import json
import signal
import sys

from loguru import logger

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.db import SessionLocal, init_db, session_scope
from app.domain import IndexerError
from app.services.status_service import StatusService
from ingestion.service import IndexerService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Index prediction market contract events")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Backfill from the checkpoint, then follow new blocks")

    backfill = subparsers.add_parser("backfill", help="Run the historical sync once and exit")
    backfill.add_argument("--from-block", type=int, default=None, help="Replay from this block (at most checkpoint + 1)")
    backfill.add_argument("--to-block", type=int, default=None, help="Stop at this block (capped at head)")

    subparsers.add_parser("status", help="Print checkpoints and watched market count as JSON")
    return parser.parse_args()


def _install_signal_handlers(service: IndexerService) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.request_stop)
        except NotImplementedError:
            signal.signal(sig, lambda *_: service.request_stop())


async def _run(args: argparse.Namespace) -> None:
    service = IndexerService(get_settings())
    _install_signal_handlers(service)
    try:
        if args.command == "run":
            await service.run(follow=True)
        else:
            report = await service.backfill(from_block=args.from_block, to_block=args.to_block)
            logger.info(
                "Backfilled blocks {}-{}: {} batches, {} events applied",
                report.from_block,
                report.to_block,
                report.batches,
                report.applied,
            )
    finally:
        await service.aclose()


def _print_status() -> None:
    with session_scope(SessionLocal) as session:
        status = StatusService(session).sync_status()
    print(json.dumps(status.model_dump(mode="json"), indent=2))


def main() -> None:
    args = parse_args()
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_dir)
    init_db()

    if args.command == "status":
        _print_status()
        return

    try:
        asyncio.run(_run(args))
    except IndexerError as exc:
        logger.error("Indexer stopped: {}", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
