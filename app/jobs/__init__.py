"""
Coregre Background Jobs Engine

This package runs long-running exports (PDF and Excel reports) outside the
request cycle and keeps their outputs in object storage.

Key components:
- job_types: Job status, records and API schemas
- job_manager: Job records and status transitions
- queue: Reliable queue with retries and retention of failed items
- runner: Executes one claimed job through its handler
- worker_pool: Concurrent workers pulling from the queue
- materializer: Moves handler output into object storage
- operations: Client-facing download, delete, merge, zip and print
- handlers: Task-specific job handlers
"""

from app.jobs.job_types import (
    Job,
    JobOutput,
    JobStatus,
    Principal,
    StoredOutput,
)

from app.jobs.job_manager import JobManager

from app.jobs.queue import (
    InMemoryQueue,
    QueueItem,
    ReliableQueue,
    RetryPolicy,
)

from app.jobs.runner import (
    HandlerSpec,
    JobContext,
    JobRunner,
)

from app.jobs.worker_pool import WorkerPool

__all__ = [
    # Types
    "Job",
    "JobOutput",
    "JobStatus",
    "Principal",
    "StoredOutput",
    # Manager
    "JobManager",
    # Queue
    "InMemoryQueue",
    "QueueItem",
    "ReliableQueue",
    "RetryPolicy",
    # Runner
    "HandlerSpec",
    "JobContext",
    "JobRunner",
    "WorkerPool",
]
