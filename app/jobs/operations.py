"""
Client-Facing Job Operations

Enqueue, list, detail, download, delete, merge, zip and print. Every
operation on a single job starts with `authorize`, which returns one
authorization decision consumed the same way by all of them. Aggregate
operations (merge, zip) only ever see the caller's own jobs.
"""

import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Any, Dict, Iterator, List, Optional

from PyPDF2 import PdfReader, PdfWriter
from PyPDF2.errors import PdfReadError

from app.jobs.errors import (
    ArtifactUnavailableError, JobForbiddenError, JobNotFoundError,
    JobNotReadyError, JobValidationError, QueueError, StorageUnavailableError
)
from app.jobs.ipp import IppPrintClient, PrintResult, sanitize_destination
from app.jobs.job_manager import JobManager
from app.jobs.job_types import DEFAULT_MIME, Job, JobStatus, Principal
from app.jobs.queue import QueueItem, ReliableQueue
from app.jobs.utils import unique_archive_name
from app.storage_service import ArtifactNotFoundError, ObjectStore, StorageError

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024


@dataclass
class AuthorizationDecision:
    job_id: str
    allowed: bool
    job: Optional[Job] = None
    reason: Optional[str] = None  # "not_found" or "forbidden"

    def require(self) -> Job:
        """Return the job, or raise the matching access error."""
        if self.allowed and self.job is not None:
            return self.job
        if self.reason == "forbidden":
            raise JobForbiddenError(self.job_id)
        raise JobNotFoundError(self.job_id)


def decide(caller: Principal, job_id: str, job: Optional[Job], admin: bool = False) -> AuthorizationDecision:
    """Authorization rule shared by every operation."""
    if job is None:
        return AuthorizationDecision(job_id, False, reason="not_found")
    if job.owner_id == caller.user_id or (admin and caller.is_admin):
        return AuthorizationDecision(job_id, True, job=job)
    return AuthorizationDecision(job_id, False, reason="forbidden")


@dataclass
class Download:
    name: str
    mime: str
    stream: Iterator[bytes]


class _ChunkSink:
    """Write-only file object collecting bytes until drained."""

    def __init__(self):
        self._chunks: List[bytes] = []

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def flush(self):
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


def _iter_buffer(buffer: BytesIO) -> Iterator[bytes]:
    buffer.seek(0)
    while True:
        chunk = buffer.read(STREAM_CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


class JobOperations:
    def __init__(
        self,
        manager: JobManager,
        queue: ReliableQueue,
        storage: ObjectStore,
        print_client: Optional[IppPrintClient] = None,
        max_attempts: int = 2,
        default_print_destination: Optional[str] = None
    ):
        self.manager = manager
        self.queue = queue
        self.storage = storage
        self.print_client = print_client
        self.max_attempts = max_attempts
        self.default_print_destination = default_print_destination

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, caller: Principal, job_id: str, admin: bool = False) -> AuthorizationDecision:
        decision = decide(caller, job_id, self.manager.find_job(job_id), admin=admin)
        if decision.reason == "forbidden":
            logger.warning(f"User {caller.user_id} denied access to job {job_id}")
        return decision

    def _owned_jobs(self, caller: Principal, job_ids: List[str]) -> List[Job]:
        """Caller's jobs among `job_ids`, in the given order, without duplicates."""
        if not job_ids:
            raise JobValidationError("No jobs selected")

        ordered_ids = list(dict.fromkeys(job_ids))
        by_id = {job.id: job for job in self.manager.find_by_ids_for_owner(ordered_ids, caller.user_id)}
        jobs = []
        for job_id in ordered_ids:
            decision = decide(caller, job_id, by_id.get(job_id))
            if decision.allowed:
                jobs.append(decision.job)
        if not jobs:
            raise JobValidationError("No valid jobs found")
        return jobs

    # ------------------------------------------------------------------
    # Enqueue and reads
    # ------------------------------------------------------------------

    async def enqueue(self, caller: Principal, job_type: str, payload: Optional[Dict[str, Any]] = None) -> Job:
        """
        Create the job record and stage it in the queue. The type is only
        resolved when a worker runs the job.
        """
        job = self.manager.create_job(caller.user_id, job_type, payload or {})
        try:
            await self.queue.push(QueueItem.for_job(job, self.max_attempts))
        except Exception as e:
            logger.error(f"Could not stage job {job.id}: {e}")
            self.manager.mark_failed(job.id, "Could not stage job")
            if isinstance(e, QueueError):
                raise
            raise QueueError(f"Could not stage job: {e}") from e
        return job

    def list_jobs(self, caller: Principal, status: Optional[JobStatus] = None) -> List[Job]:
        return self.manager.list_jobs(caller.user_id, status)

    def detail(self, caller: Principal, job_id: str) -> Job:
        return self.authorize(caller, job_id).require()

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def _artifact_bytes(self, job: Job) -> bytes:
        try:
            return self.storage.get_bytes(job.output_path)
        except ArtifactNotFoundError as e:
            raise ArtifactUnavailableError(job.id, job.output_path) from e
        except StorageError as e:
            logger.error(f"Could not read artifact {job.output_path} of job {job.id}: {e}")
            raise StorageUnavailableError(job.id, job.output_path) from e

    def download(self, caller: Principal, job_id: str) -> Download:
        job = self.authorize(caller, job_id).require()
        if not job.has_artifact:
            raise JobNotReadyError(job_id)
        try:
            stream = self.storage.get_stream(job.output_path, STREAM_CHUNK_SIZE)
        except ArtifactNotFoundError as e:
            logger.warning(f"Artifact {job.output_path} of job {job_id} is missing from storage")
            raise ArtifactUnavailableError(job_id, job.output_path) from e
        except StorageError as e:
            logger.error(f"Could not open artifact {job.output_path} of job {job_id}: {e}")
            raise StorageUnavailableError(job_id, job.output_path) from e
        return Download(name=job.output_name or "output", mime=job.output_mime or DEFAULT_MIME, stream=stream)

    def _remove_artifact(self, job: Job):
        """Best-effort removal of a job's artifact."""
        if not job.output_path:
            return
        try:
            self.storage.delete(job.output_path)
        except ArtifactNotFoundError:
            pass
        except Exception as e:
            logger.warning(f"Could not delete artifact {job.output_path} of job {job.id}: {e}")

    def delete(self, caller: Principal, job_id: str):
        job = self.authorize(caller, job_id).require()
        self._remove_artifact(job)
        self.manager.delete_job(job_id, caller.user_id)

    def merge_pdf(self, caller: Principal, job_ids: List[str]) -> Iterator[bytes]:
        """Concatenate the pages of the caller's PDF outputs, in the given order."""
        pdf_jobs = [job for job in self._owned_jobs(caller, job_ids) if job.is_pdf]
        if not pdf_jobs:
            raise JobValidationError("Invalid selection for PDF merge")

        writer = PdfWriter()
        for job in pdf_jobs:
            try:
                reader = PdfReader(BytesIO(self._artifact_bytes(job)))
                pages = list(reader.pages)
            except PdfReadError as e:
                logger.warning(f"Output of job {job.id} is not a readable PDF: {e}")
                raise JobValidationError(f"Output of job {job.id} is not a readable PDF") from e
            for page in pages:
                writer.add_page(page)

        buffer = BytesIO()
        writer.write(buffer)
        logger.info(f"Merged {len(pdf_jobs)} PDFs for user {caller.user_id}")
        return _iter_buffer(buffer)

    def zip_outputs(self, caller: Principal, job_ids: List[str]) -> Iterator[bytes]:
        """Stream a zip archive of the caller's job outputs."""
        jobs = [job for job in self._owned_jobs(caller, job_ids) if job.has_artifact]
        if not jobs:
            raise JobValidationError("Selected jobs have no files")
        return self._iter_zip(jobs)

    def _iter_zip(self, jobs: List[Job]) -> Iterator[bytes]:
        sink = _ChunkSink()
        used_names = set()

        with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            for job in jobs:
                try:
                    stream = self.storage.get_stream(job.output_path, STREAM_CHUNK_SIZE)
                except ArtifactNotFoundError:
                    logger.warning(f"Skipping job {job.id} in zip: artifact no longer available")
                    continue
                except StorageError as e:
                    logger.error(f"Skipping job {job.id} in zip: {e}")
                    continue

                name = unique_archive_name(job.output_name or job.id, used_names)
                stamp = job.finished_at or datetime.utcnow()
                info = zipfile.ZipInfo(name, date_time=stamp.timetuple()[:6])
                info.compress_type = zipfile.ZIP_DEFLATED

                with archive.open(info, mode="w") as entry:
                    for chunk in stream:
                        entry.write(chunk)
                        data = sink.drain()
                        if data:
                            yield data

                data = sink.drain()
                if data:
                    yield data

        data = sink.drain()
        if data:
            yield data

    def print_job(self, caller: Principal, job_id: str, destination: Optional[str] = None) -> PrintResult:
        """Submit a PDF job's artifact to a printer. Transport errors are not retried."""
        job = self.authorize(caller, job_id).require()
        if not job.has_artifact:
            raise JobNotReadyError(job_id)
        if not job.is_pdf:
            raise JobValidationError("Only PDF files can be printed")

        target = destination or self.default_print_destination
        if not target:
            raise JobValidationError("No print destination given and no default configured")
        if self.print_client is None:
            raise JobValidationError("Printing is not configured")
        try:
            target = sanitize_destination(target)
        except ValueError as e:
            raise JobValidationError(str(e)) from e

        document = self._artifact_bytes(job)
        return self.print_client.submit(
            target,
            document,
            job_name=job.output_name or job.id,
            user_name=caller.user_id,
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def list_all(self, status: Optional[JobStatus] = None) -> List[Job]:
        return self.manager.list_all_jobs(status)

    def admin_delete(self, caller: Principal, job_id: str):
        job = self.authorize(caller, job_id, admin=True).require()
        self._remove_artifact(job)
        self.manager.delete_job_admin(job_id)

    async def list_failed_queue_items(self, limit: int = 100) -> List[QueueItem]:
        return await self.queue.list_failed(limit)

    async def requeue_failed(self, item_id: str) -> QueueItem:
        item = await self.queue.requeue_failed(item_id)
        logger.info(f"Queue item {item_id} for job {item.job_id} re-staged by operator")
        return item
