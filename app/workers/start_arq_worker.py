#!/usr/bin/env python3
"""Start the ARQ worker for scheduled conversion, reminder and Google Ads jobs.

USAGE:
    python -m app.workers.start_arq_worker

    Or directly:
    arq app.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

from app.utils.env import load_env_file

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Load .env, then start the ARQ worker."""
    load_env_file()

    from app.workers.arq_worker import WorkerSettings

    logger.info("[ARQ] Starting worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
