"""
Output Materializer

Moves a handler's local output into the durable object store and produces the
output fields for the job record. Local scratch directories are removed once
the upload succeeded, so records never reference local paths.
"""

import logging
import shutil
from pathlib import Path
from typing import Optional

from app.jobs.errors import MaterializationError
from app.jobs.job_types import DEFAULT_MIME, JobOutput, StoredOutput
from app.jobs.utils import format_file_size, sanitize_filename
from app.storage_service import ArtifactNotFoundError, ObjectStore, StorageError, job_object_name

logger = logging.getLogger(__name__)


class OutputMaterializer:
    def __init__(self, storage: ObjectStore, scratch_root: str):
        self.storage = storage
        self.scratch_root = Path(scratch_root).resolve()

    def scratch_dir(self, owner_id: str, job_id: str) -> Path:
        """Local working directory of one job."""
        return self.scratch_root / sanitize_filename(str(owner_id)) / sanitize_filename(job_id)

    def cleanup_scratch(self, owner_id: str, job_id: str) -> None:
        """Remove the job's whole scratch tree. Best-effort."""
        job_dir = self.scratch_dir(owner_id, job_id)
        if not job_dir.exists():
            return
        try:
            shutil.rmtree(job_dir)
            logger.info(f"Temp directory cleaned: {job_dir}")
        except OSError as e:
            logger.warning(f"Failed to delete temp directory {job_dir}: {e}")

    def discard(self, key: str) -> None:
        """Delete an uploaded object that must not be referenced. Best-effort."""
        try:
            self.storage.delete(key)
        except ArtifactNotFoundError:
            pass
        except StorageError as e:
            logger.warning(f"Could not discard object {key}: {e}")

    def materialize(self, owner_id: str, job_id: str, output: Optional[JobOutput]) -> StoredOutput:
        """
        Upload `output` and return the durable output fields. A handler that
        produced no artifact yields empty fields. Raises MaterializationError
        if the file is missing or the upload fails.
        """
        if output is None:
            self.cleanup_scratch(owner_id, job_id)
            return StoredOutput()

        local_path = Path(output.local_path)
        if not local_path.is_file():
            raise MaterializationError(f"Output file not found: {local_path.name}")

        name = sanitize_filename(output.name or local_path.name)
        mime = output.mime or DEFAULT_MIME
        key = job_object_name(owner_id, job_id, name)
        size = local_path.stat().st_size

        try:
            self.storage.put_file(
                key,
                str(local_path),
                content_type=mime,
                metadata={"owner-id": str(owner_id), "job-id": job_id},
            )
        except Exception as e:
            self.discard(key)
            raise MaterializationError(f"Upload of {name} failed: {e}") from e

        logger.info(f"Materialized job {job_id} output {name} ({format_file_size(size)}) as {key}")
        self.cleanup_scratch(owner_id, job_id)
        return StoredOutput(output_path=key, output_name=name, output_mime=mime)
