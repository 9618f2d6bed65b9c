"""Command-line entrypoint.

Commands:
    run                 Start the tier scheduler and block until interrupted.
    ingest --tier T     Execute a single ingestion run for one tier.
    reap                Time out stale queue entries and drop expired leases.
    chart TOKEN         Print a bounded price series as JSON.
    backfill TOKEN      Detect and fill swap gaps for one token.
    skip-block BLOCK    Exclude a block from ingestion.
    record-rate RATE    Record a display-currency rate observation.
    track-rate          Fetch the current display rate from the provider and record it.
    interpolate         Fill long gaps in the snapshot history.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Sequence
from dataclasses import asdict
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from launchpad_indexer import __version__
from launchpad_indexer.chart import ChartQueryError
from launchpad_indexer.config import Settings, get_settings
from launchpad_indexer.coordinator import LockBusyError
from launchpad_indexer.indexer.backfill import TokenNotIndexedError
from launchpad_indexer.indexer.rates import RateFetchError
from launchpad_indexer.indexer.reorg import ReorgDepthExceededError
from launchpad_indexer.indexer.runner import RunRequest, RunStatus
from launchpad_indexer.indexer.scheduler import default_request
from launchpad_indexer.indexer.tiers import ActivityTier
from launchpad_indexer.ledger.client import LedgerClientError
from launchpad_indexer.service import IndexerService
from launchpad_indexer.storage.database import session_scope
from launchpad_indexer.storage.repos import DisplayRateRepository, SkipBlockRepository

logger = logging.getLogger("launchpad_indexer")

STREAMS = ("launch", "swap", "lock", "burn", "all")


def _json_default(x: object) -> str:
    if isinstance(x, datetime):
        return x.isoformat()
    if isinstance(x, Decimal):
        return str(x)
    raise TypeError(f"Object of type {type(x).__name__} is not JSON serializable")


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"not a decimal: {value}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="launchpad-indexer", description=__doc__.splitlines()[0])
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="start the tier scheduler")

    ingest = sub.add_parser("ingest", help="run one ingestion pass")
    ingest.add_argument("--tier", choices=[t.value for t in ActivityTier], default=ActivityTier.HOT.value)
    ingest.add_argument("--no-launches", action="store_true", help="skip the launch stream")
    ingest.add_argument("--locks", action="store_true", help="index lock/unlock events")
    ingest.add_argument("--burns", action="store_true", help="index burns")

    sub.add_parser("reap", help="reap the coordination queue")

    chart = sub.add_parser("chart", help="print a price series")
    chart.add_argument("token")
    chart.add_argument("--hours", type=float, default=24.0)
    chart.add_argument("--max-points", type=int, default=None)

    backfill = sub.add_parser("backfill", help="fill swap gaps for a token")
    backfill.add_argument("token")
    backfill.add_argument("--from-block", type=int, default=None)
    backfill.add_argument("--to-block", type=int, default=None)

    skip = sub.add_parser("skip-block", help="exclude a block from ingestion")
    skip.add_argument("block", type=int)
    skip.add_argument("--stream", choices=STREAMS, default="all")
    skip.add_argument("--reason", default="manual")

    rate = sub.add_parser("record-rate", help="record a display-currency rate")
    rate.add_argument("rate", type=_decimal)
    rate.add_argument("--at", type=datetime.fromisoformat, default=None, help="ISO timestamp (default now)")
    rate.add_argument("--source", default="manual")

    sub.add_parser("track-rate", help="fetch and record the current display rate")

    interpolate = sub.add_parser("interpolate", help="fill gaps in the snapshot history")
    interpolate.add_argument("--token", default=None, help="limit to one token (default: all)")
    return parser


async def _run_scheduler(service: IndexerService) -> int:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    scheduler = service.scheduler
    await scheduler.start()
    waiter = asyncio.create_task(scheduler.wait())
    stopper = asyncio.create_task(stop.wait())
    done, _ = await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
    stopper.cancel()
    await scheduler.stop()
    if waiter in done:
        waiter.result()
    else:
        waiter.cancel()
    return 0


async def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    service = IndexerService(settings)
    await service.start()
    try:
        if args.command == "run":
            return await _run_scheduler(service)

        if args.command == "ingest":
            tier = ActivityTier(args.tier)
            base = default_request(tier)
            request = RunRequest(
                tier=tier,
                index_launches=not args.no_launches,
                index_swaps=True,
                index_locks=args.locks or base.index_locks,
                index_burns=args.burns or base.index_burns,
                snapshot_reserves=base.snapshot_reserves,
            )
            result = await service.runner.run_ingestion(request)
            print(json.dumps(asdict(result), default=_json_default, indent=2))
            return 0 if result.status in (RunStatus.COMPLETED, RunStatus.TIMED_OUT, RunStatus.BUSY) else 1

        if args.command == "reap":
            stats = await service.coordinator.reap()
            print(json.dumps(asdict(stats)))
            return 0

        if args.command == "chart":
            async with session_scope(service.db.session_factory) as session:
                series = await service.chart.sample(
                    session, args.token, hours_back=args.hours, max_points=args.max_points
                )
            payload = {
                "token_address": series.token_address,
                "raw_count": series.raw_count,
                "stride": series.stride,
                "baseline": asdict(series.baseline) if series.baseline else None,
                "change_percent": series.change_percent,
                "points": [asdict(p) for p in series.points],
            }
            print(json.dumps(payload, default=_json_default, indent=2))
            return 0

        if args.command == "backfill":
            backfill = await service.backfill.run(args.token, from_block=args.from_block, to_block=args.to_block)
            print(json.dumps(asdict(backfill), default=_json_default, indent=2))
            return 0

        if args.command == "skip-block":
            async with session_scope(service.db.session_factory) as session:
                added = await SkipBlockRepository(session).add(
                    args.block, stream=args.stream, reason=args.reason, created_by="cli"
                )
            logger.info("Block %d %s for %s", args.block, "skipped" if added else "already skipped", args.stream)
            return 0

        if args.command == "record-rate":
            observed_at = args.at or datetime.now(UTC)
            if observed_at.tzinfo is None:
                observed_at = observed_at.replace(tzinfo=UTC)
            async with session_scope(service.db.session_factory) as session:
                await DisplayRateRepository(session).record(args.rate, observed_at=observed_at, source=args.source)
            logger.info("Recorded display rate %s at %s", args.rate, observed_at.isoformat())
            return 0

        if args.command == "track-rate":
            rate = await service.rate_tracker.track()
            print(json.dumps({"rate": rate}, default=_json_default))
            return 0

        if args.command == "interpolate":
            filled = await service.interpolator.run(token_address=args.token)
            print(json.dumps(asdict(filled), default=_json_default, indent=2))
            return 0
    finally:
        await service.stop()
    raise AssertionError(f"unhandled command {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command in ("run", "ingest", "backfill"):
        try:
            settings.validate_requirements(command=args.command)
        except ValueError as e:
            logger.error("%s", e)
            return 2
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        return asyncio.run(_dispatch(args, settings))
    except LockBusyError as e:
        logger.warning("%s", e)
        return 3
    except ReorgDepthExceededError as e:
        logger.critical("Reorg beyond rollback window, manual intervention required: %s", e)
        return 4
    except (ChartQueryError, TokenNotIndexedError, RateFetchError, LedgerClientError) as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
