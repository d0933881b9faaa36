"""
Job Engine Assembly

Builds the store, queue, runner, worker pool and client operations from the
settings, and keeps one process-wide instance.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from app.config import JobsSettings, get_settings
from app.jobs.handlers import JOB_HANDLERS
from app.jobs.ipp import IppPrintClient
from app.jobs.job_manager import JobManager
from app.jobs.materializer import OutputMaterializer
from app.jobs.operations import JobOperations
from app.jobs.queue import ReliableQueue, RetryPolicy, create_queue
from app.jobs.runner import HandlerSpec, JobRunner
from app.jobs.worker_pool import WorkerPool
from app.storage_service import ObjectStore, create_object_store
from app.supabase_client import get_supabase

logger = logging.getLogger(__name__)


@dataclass
class JobEngine:
    settings: JobsSettings
    manager: JobManager
    queue: ReliableQueue
    storage: ObjectStore
    runner: JobRunner
    pool: WorkerPool
    operations: JobOperations


def build_engine(
    settings: JobsSettings,
    supabase: Any = None,
    storage: Optional[ObjectStore] = None,
    queue: Optional[ReliableQueue] = None,
    handlers: Optional[Mapping[str, HandlerSpec]] = None,
    services: Optional[Mapping[str, Any]] = None,
    print_client: Optional[IppPrintClient] = None,
    worker_id: Optional[str] = None
) -> JobEngine:
    """Wire the engine components. Any collaborator can be passed in."""
    supabase = supabase if supabase is not None else get_supabase()
    storage = storage or create_object_store(settings, supabase)
    queue = queue or create_queue(settings, supabase)
    manager = JobManager(supabase)

    materializer = OutputMaterializer(storage, settings.scratch_dir)
    runner = JobRunner(
        manager,
        storage,
        materializer,
        handlers if handlers is not None else JOB_HANDLERS,
        services=services,
        db=supabase,
    )
    pool = WorkerPool(
        queue,
        runner,
        concurrency=settings.worker_concurrency,
        poll_interval=settings.worker_poll_interval,
        retry_policy=RetryPolicy(base_delay=settings.backoff_seconds),
        worker_id=worker_id,
        recovery_interval=settings.recovery_interval,
    )
    operations = JobOperations(
        manager,
        queue,
        storage,
        print_client=print_client or IppPrintClient(settings.print_server_url, settings.print_timeout_seconds),
        max_attempts=settings.max_attempts,
        default_print_destination=settings.print_default_destination,
    )
    return JobEngine(settings, manager, queue, storage, runner, pool, operations)


_engine: Optional[JobEngine] = None


def get_engine() -> JobEngine:
    """Get the global job engine instance."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings)
        logger.info(
            f"Job engine ready: queue={settings.queue_backend}, storage={settings.storage_backend}, "
            f"handlers={len(_engine.runner.handlers)}"
        )
    return _engine
