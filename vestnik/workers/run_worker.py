from __future__ import annotations

import argparse
import asyncio
import logging

from arq.worker import run_worker

from vestnik.core.logging import configure_logging
from vestnik.workers.arq_worker import WorkerSettings

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Media maintenance worker (link purge, pending remote deletes).")
    parser.add_argument("--burst", action="store_true", help="drain queued jobs, then exit")
    args = parser.parse_args(argv)

    configure_logging()
    # Python 3.14 no longer auto-creates an event loop for the main thread.
    # ARQ still expects one via asyncio.get_event_loop() during worker init.
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    logger.info("Starting media worker (burst=%s)", args.burst)
    run_worker(WorkerSettings, burst=args.burst)


if __name__ == "__main__":
    main()
