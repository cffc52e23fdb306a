#!/usr/bin/env python3
"""Start the outbox worker, or drain the outbox once without Redis.

USAGE:
    python -m careassist.workers.start_arq_worker
    python -m careassist.workers.start_arq_worker --drain-once

    Or directly:
    arq careassist.workers.arq_worker.WorkerSettings

--drain-once runs every due outbox job in this process and exits. Useful
after a Redis outage or from a one-off cron where no worker is deployed.
"""

import argparse
import logging
import sys

from arq import run_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def drain_once() -> dict:
    from careassist.database import get_sync_session
    from careassist.deps import get_settings
    from careassist.services.outbox import drain_outbox

    with get_sync_session() as db:
        stats = drain_outbox(db, limit=get_settings().OUTBOX_BATCH_SIZE)
    logger.info("[ARQ] Drained outbox once: %s", stats)
    return stats


def main(argv=None):
    parser = argparse.ArgumentParser(description="CareAssist outbox worker")
    parser.add_argument(
        "--drain-once",
        action="store_true",
        help="Run all due outbox jobs in-process and exit",
    )
    args = parser.parse_args(argv)

    if args.drain_once:
        drain_once()
        return

    from careassist.workers.arq_worker import WorkerSettings

    logger.info("[ARQ] Starting outbox worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
