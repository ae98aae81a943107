"""Command-line entrypoint for the Fleetguard worker."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal

from app.config import get_settings
from app.services import build_services
from app.worker import OpsWorker

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetguard-worker",
        description="Drain the remediation queue and sweep incident escalations.",
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--limit", type=int, default=None, help="Runs to drain per cycle")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between cycles after work"
    )
    parser.add_argument(
        "--no-sweep", action="store_true", help="Skip the incident escalation sweep"
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    services = build_services(settings)
    worker = OpsWorker.from_settings(services)
    if args.limit is not None:
        worker.limit = args.limit
    if args.interval is not None:
        worker.interval = args.interval
    if args.no_sweep:
        worker.sweep_enabled = False

    if args.once:
        cycle = await worker.run_once()
        summary = {"drain": cycle.drain.model_dump(mode="json")}
        if cycle.sweep is not None:
            summary["sweep"] = cycle.sweep.model_dump(mode="json")
        print(json.dumps(summary, indent=2))
        return 0 if cycle.drain.ok else 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable on this platform")
    logger.info(
        "Worker started limit=%d interval=%.1fs idle=%.1fs sweep=%s",
        worker.limit,
        worker.interval,
        worker.idle_interval,
        worker.sweep_enabled,
    )
    await worker.run_forever(stop)
    logger.info("Worker stopped")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = create_parser().parse_args(argv)
    level = args.log_level or get_settings().log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
