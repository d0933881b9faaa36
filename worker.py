#!/usr/bin/env python3
"""
Coregre Background Job Worker

A dedicated worker process that claims and executes queued background jobs.
Run it next to the API (with JOBS_RUN_IN_PROCESS=false) when jobs should not
share the web process.

Usage:
    python worker.py [--concurrency=N] [--poll-interval=S] [--worker-id=ID]

Features:
- Claims jobs from the shared queue, one item per worker at a time
- Retries failed attempts with exponential backoff
- Graceful shutdown on signals: in-flight jobs finish before exit
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("coregre.worker")

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from app.config import get_settings
from app.jobs.engine import build_engine


async def run_worker(concurrency: int, poll_interval: float, worker_id: str = None):
    """Start the pool and block until a shutdown signal arrives."""
    settings = replace(
        get_settings(),
        worker_concurrency=concurrency,
        worker_poll_interval=poll_interval,
    )
    if settings.queue_backend == "memory":
        logger.warning("JOBS_QUEUE_BACKEND=memory: this worker only sees jobs enqueued in its own process")

    engine = build_engine(settings, worker_id=worker_id)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    # Queue transport errors propagate and end the process
    await engine.pool.start()
    logger.info(f"Worker {engine.pool.worker_id} running (concurrency={settings.worker_concurrency})")

    try:
        await shutdown.wait()
        logger.info(f"Worker {engine.pool.worker_id} received shutdown signal")
    finally:
        await engine.pool.stop()
        await engine.queue.close()


def main():
    """Main entry point for the worker."""
    parser = argparse.ArgumentParser(description="Coregre Background Job Worker")
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=int(os.environ.get("WORKER_CONCURRENCY", "3")),
        help="Number of jobs to process concurrently (default: 3)"
    )
    parser.add_argument(
        "--poll-interval", "-p",
        type=float,
        default=float(os.environ.get("WORKER_POLL_INTERVAL", "1.0")),
        help="Seconds to wait for a queue item before polling again (default: 1.0)"
    )
    parser.add_argument(
        "--worker-id",
        type=str,
        default=os.environ.get("WORKER_ID"),
        help="Unique worker identifier (default: auto-generated)"
    )

    args = parser.parse_args()
    if args.concurrency < 1:
        logger.error("Concurrency must be at least 1")
        sys.exit(1)

    try:
        asyncio.run(run_worker(args.concurrency, args.poll_interval, args.worker_id))
    except KeyboardInterrupt:
        logger.info("Worker interrupted")

    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
