"""
Job Runner

Executes one claimed queue item with proper lifecycle management:
- Handler resolution from the registry
- running / done / failed transitions on the job record
- Output materialization
- Error capture at the worker boundary
"""

import asyncio
import functools
import logging
import os
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from app.jobs.errors import MaterializationError, UnknownJobTypeError
from app.jobs.job_manager import JobManager
from app.jobs.job_types import DEFAULT_MIME, JobOutput
from app.jobs.materializer import OutputMaterializer
from app.jobs.queue import QueueItem
from app.jobs.utils import format_duration, format_file_size, sanitize_filename
from app.storage_service import ObjectStore

logger = logging.getLogger(__name__)

HandlerResult = Optional[JobOutput]
Handler = Callable[[Dict[str, Any], "JobContext"], Union[HandlerResult, Awaitable[HandlerResult]]]


@dataclass(frozen=True)
class HandlerSpec:
    """
    A registered handler. `retryable=False` handlers run once: use it for
    handlers whose side effects must not be repeated.
    """
    func: Handler
    retryable: bool = True


@dataclass
class JobContext:
    """
    Context object passed to job handlers next to the payload.
    Bundles the shared collaborators and the scratch-file helpers.
    """
    job_id: str
    owner_id: str
    job_type: str
    attempt: int
    db: Any
    storage: ObjectStore
    services: Mapping[str, Any]
    scratch_dir: Path

    _manager: JobManager = field(repr=False)

    def service(self, name: str) -> Any:
        """Get a named domain collaborator."""
        try:
            return self.services[name]
        except KeyError:
            raise RuntimeError(f"Service '{name}' is not available to job handlers")

    def require_db(self) -> Any:
        if self.db is None:
            raise RuntimeError("No database handle configured for job handlers")
        return self.db

    def ensure_output_path(self, file_name: str) -> str:
        """Allocate a path for an output file in this job's scratch directory."""
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        return str(self.scratch_dir / sanitize_filename(file_name))

    def finish_output(self, path: str, name: Optional[str] = None, mime: str = DEFAULT_MIME) -> JobOutput:
        """
        Signal that the artifact at `path` is completely written and return
        the handler result describing it.
        """
        if not os.path.isfile(path):
            raise RuntimeError(f"Output file was not written: {os.path.basename(path)}")
        size = os.path.getsize(path)
        self.log(f"Output ready: {os.path.basename(path)} ({format_file_size(size)})")
        return JobOutput(local_path=path, name=name or os.path.basename(path), mime=mime)

    def update_progress(self, percent: float):
        """Advisory progress for clients polling the job."""
        self._manager.update_progress(self.job_id, percent)

    def log(self, message: str):
        logger.info(f"[Job {self.job_id}] {message}")


@dataclass
class JobOutcome:
    """Result of one execution attempt, consumed by the worker pool."""
    success: bool
    retryable: bool = False
    error: Optional[str] = None
    skipped: bool = False


class JobRunner:
    """
    Executes job handlers with proper lifecycle management.
    Never raises: every failure ends up on the job record.
    """

    def __init__(
        self,
        manager: JobManager,
        storage: ObjectStore,
        materializer: OutputMaterializer,
        handlers: Mapping[str, HandlerSpec],
        services: Optional[Mapping[str, Any]] = None,
        db: Any = None
    ):
        self.manager = manager
        self.storage = storage
        self.materializer = materializer
        self.handlers = handlers
        self.services = dict(services or {})
        self.db = db

    def get_handler(self, job_type: str) -> Optional[HandlerSpec]:
        return self.handlers.get(job_type)

    async def _run_handler(self, spec: HandlerSpec, payload: Dict[str, Any], ctx: JobContext) -> HandlerResult:
        if asyncio.iscoroutinefunction(spec.func):
            return await spec.func(payload, ctx)
        # Run sync handler in executor
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(spec.func, payload, ctx))

    async def execute(self, item: QueueItem) -> JobOutcome:
        """Execute one attempt of a queue item."""
        job_id = item.job_id
        spec = self.get_handler(item.type)

        if spec is None:
            error = UnknownJobTypeError(item.type)
            logger.error(f"No handler registered for job type {item.type} (job {job_id})")
            self.manager.mark_failed(job_id, str(error))
            return JobOutcome(success=False, retryable=False, error=str(error))

        if not self.manager.mark_running(job_id):
            logger.warning(f"Job {job_id} is gone or already done; skipping queue item {item.id}")
            return JobOutcome(success=True, skipped=True)

        scratch_dir = self.materializer.scratch_dir(item.owner_id, job_id)
        # Leftovers from an earlier attempt must not leak into this one.
        self.materializer.cleanup_scratch(item.owner_id, job_id)

        ctx = JobContext(
            job_id=job_id,
            owner_id=item.owner_id,
            job_type=item.type,
            attempt=item.attempts,
            db=self.db,
            storage=self.storage,
            services=self.services,
            scratch_dir=scratch_dir,
            _manager=self.manager,
        )

        logger.info(f"Starting job {job_id} of type {item.type} (attempt {item.attempts}/{item.max_attempts})")
        started = time.monotonic()
        stored_key = None

        try:
            output = await self._run_handler(spec, dict(item.payload), ctx)

            loop = asyncio.get_running_loop()
            stored = await loop.run_in_executor(
                None, self.materializer.materialize, item.owner_id, job_id, output
            )
            stored_key = stored.output_path

            if not self.manager.mark_done(job_id, stored):
                raise MaterializationError("Could not record job output")

            logger.info(f"Job {job_id} completed in {format_duration(time.monotonic() - started)}")
            return JobOutcome(success=True)

        except Exception as e:
            error_trace = traceback.format_exc()
            message = str(e) or type(e).__name__

            if stored_key:
                try:
                    self.materializer.discard(stored_key)
                except Exception as discard_error:
                    logger.warning(f"Could not discard output {stored_key} of failed job {job_id}: {discard_error}")
            try:
                self.materializer.cleanup_scratch(item.owner_id, job_id)
            except Exception as cleanup_error:
                logger.warning(f"Scratch cleanup after failed job {job_id} did not complete: {cleanup_error}")
            self.manager.mark_failed(job_id, message)

            logger.error(f"Job {job_id} failed: {message}\n{error_trace}")
            return JobOutcome(success=False, retryable=spec.retryable, error=message)
