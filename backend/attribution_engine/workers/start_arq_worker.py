#!/usr/bin/env python3
"""Start the ARQ worker for scheduled backfills.

USAGE:
    python -m attribution_engine.workers.start_arq_worker

    Or directly:
    arq attribution_engine.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

from attribution_engine.utils.env import load_env_file, require_env

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    load_env_file()
    try:
        require_env("DATABASE_URL")
        require_env("TOKEN_ENCRYPTION_KEY")
    except RuntimeError as e:
        logger.error("%s", e)
        sys.exit(1)

    from attribution_engine.telemetry import init_observability
    from attribution_engine.workers.arq_worker import WorkerSettings

    logger.info("Observability: %s", init_observability())
    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
