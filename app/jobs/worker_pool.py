"""
Worker Pool

A fixed number of asyncio workers pulling from one shared reliable queue.
Each worker runs one job to completion before claiming the next; the queue
guarantees that no two workers receive the same item.

While a job runs its worker heartbeats the queue lease. A recovery loop fails
the records of items whose worker went away with no attempts left.
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import List, Optional

from app.jobs.job_types import JobStatus
from app.jobs.queue import QueueItem, ReliableQueue, RetryPolicy
from app.jobs.runner import JobOutcome, JobRunner

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Claims queue items, executes them through the JobRunner and settles the
    queue item afterwards: ack on success, delayed redelivery while attempts
    remain, retention once they are exhausted.
    """

    def __init__(
        self,
        queue: ReliableQueue,
        runner: JobRunner,
        concurrency: int = 3,
        poll_interval: float = 1.0,
        retry_policy: Optional[RetryPolicy] = None,
        worker_id: Optional[str] = None,
        heartbeat_interval: Optional[float] = None,
        recovery_interval: float = 60.0
    ):
        self.queue = queue
        self.runner = runner
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy or RetryPolicy()
        self.worker_id = worker_id or f"worker-{os.getpid()}-{datetime.utcnow().strftime('%H%M%S')}"
        # Three heartbeats per lease
        self.heartbeat_interval = heartbeat_interval or queue.lease_seconds / 3
        self.recovery_interval = recovery_interval

        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Connect to the queue and start the workers. Transport errors propagate."""
        if self._running:
            return
        await self.queue.connect()
        self._running = True
        self._shutdown_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"{self.worker_id}-{i + 1}"))
            for i in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._stuck_job_recovery_loop()))
        logger.info(f"Worker pool {self.worker_id} started with concurrency={self.concurrency}")

    async def stop(self):
        """Stop claiming new items and wait for in-flight jobs to finish."""
        if not self._running:
            return
        logger.info(f"Worker pool {self.worker_id} stopping...")
        self._running = False
        self._shutdown_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Worker pool {self.worker_id} stopped")

    async def _worker_loop(self, worker_id: str):
        logger.info(f"{worker_id} polling queue '{self.queue.name}'")
        while self._running:
            try:
                item = await self.queue.claim(worker_id, timeout=self.poll_interval)
                if item is None:
                    continue
                logger.info(f"{worker_id} claimed job {item.job_id} ({item.type})")
                await self.process(item)
            except Exception as e:
                logger.error(f"Error in {worker_id} loop: {e}")
                await asyncio.sleep(self.poll_interval)

    async def _heartbeat_loop(self, item: QueueItem):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.queue.heartbeat(item)
            except Exception as e:
                logger.warning(f"Heartbeat error for job {item.job_id}: {e}")

    async def process(self, item: QueueItem) -> JobOutcome:
        """Execute one claimed item and settle it in the queue."""
        heartbeat = asyncio.create_task(self._heartbeat_loop(item))
        try:
            outcome = await self.runner.execute(item)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
        await self._settle(item, outcome)
        return outcome

    async def _settle(self, item: QueueItem, outcome: JobOutcome):
        if outcome.success:
            await self.queue.ack(item)
            return

        error = outcome.error or "Job failed"
        if outcome.retryable and self.retry_policy.should_retry(item):
            delay = self.retry_policy.delay_for(item.attempts)
            await self.queue.retry(item, delay, error)
            logger.warning(
                f"Job {item.job_id} failed (attempt {item.attempts}/{item.max_attempts}); "
                f"retrying in {delay:.1f}s"
            )
            return

        await self.queue.bury(item, error)
        if outcome.retryable:
            logger.error(f"Job {item.job_id} failed after {item.attempts} attempts; item {item.id} retained")
        else:
            logger.error(f"Job {item.job_id} failed permanently; item {item.id} retained")

    async def recover_stuck_jobs(self) -> int:
        """Fail the records of items whose lease expired with no attempts left."""
        items = await self.queue.reap_expired()
        for item in items:
            self.runner.manager.mark_failed(
                item.job_id, item.last_error or "Job failed", exclude_status=JobStatus.DONE
            )
            logger.warning(f"Job {item.job_id} lost its worker after {item.attempts} attempts; item {item.id} retained")
        return len(items)

    async def _stuck_job_recovery_loop(self):
        """Periodically check for and recover stuck jobs."""
        while self._running:
            try:
                stuck_count = await self.recover_stuck_jobs()
                if stuck_count > 0:
                    logger.warning(f"Recovered {stuck_count} stuck job(s)")
            except Exception as e:
                logger.error(f"Error in stuck job recovery: {e}")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.recovery_interval)
            except asyncio.TimeoutError:
                pass
