"""
Job Manager

The job record store: creation, owner-scoped reads, lifecycle updates and
deletion of rows in the `jobs` table. Administrative variants skip the
ownership check.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from app.jobs.errors import JobForbiddenError, JobNotFoundError
from app.jobs.job_types import Job, JobStatus, StoredOutput
from app.jobs.utils import safe_json_value
from app.supabase_client import get_supabase

logger = logging.getLogger(__name__)

JOBS_TABLE = "jobs"


class JobManager:
    """
    Manages job records. Reads raise JobNotFoundError / JobForbiddenError;
    lifecycle writes are single-row updates that return True on success.
    """

    def __init__(self, supabase=None):
        self.supabase = supabase or get_supabase()

    def _table(self):
        return self.supabase.table(JOBS_TABLE)

    def _fetch(self, job_id: str) -> Optional[Dict[str, Any]]:
        result = self._table()\
            .select("*")\
            .eq("id", job_id)\
            .limit(1)\
            .execute()
        return result.data[0] if result.data else None

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_job(self, owner_id: str, job_type: str, payload: Optional[Dict[str, Any]] = None) -> Job:
        """Create a new job record in `queued` state."""
        job_record = {
            "id": str(uuid4()),
            "owner_id": owner_id,
            "type": job_type,
            "payload": safe_json_value(payload or {}),
            "status": JobStatus.QUEUED.value,
            "progress": 0,
            "created_at": datetime.utcnow().isoformat(),
        }

        result = self._table().insert(job_record).execute()
        created = result.data[0] if result.data else job_record

        logger.info(f"Created job {job_record['id']} of type {job_type} for owner {owner_id}")
        return Job(**created)

    def get_job(self, job_id: str, owner_id: str) -> Job:
        """Get a job owned by `owner_id`."""
        row = self._fetch(job_id)
        if not row:
            raise JobNotFoundError(job_id)
        if row.get("owner_id") != owner_id:
            logger.warning(f"Owner {owner_id} denied access to job {job_id}")
            raise JobForbiddenError(job_id)
        return Job(**row)

    def get_job_admin(self, job_id: str) -> Job:
        """Get any job, regardless of owner."""
        row = self._fetch(job_id)
        if not row:
            raise JobNotFoundError(job_id)
        return Job(**row)

    def find_job(self, job_id: str) -> Optional[Job]:
        """Get a job by id without ownership checks, or None. Used by workers."""
        row = self._fetch(job_id)
        return Job(**row) if row else None

    def list_jobs(
        self,
        owner_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 100
    ) -> List[Job]:
        """List an owner's jobs, newest first."""
        query = self._table()\
            .select("*")\
            .eq("owner_id", owner_id)

        if status:
            query = query.eq("status", JobStatus(status).value)

        result = query\
            .order("created_at", desc=True)\
            .limit(limit)\
            .execute()
        return [Job(**row) for row in result.data or []]

    def list_all_jobs(self, status: Optional[JobStatus] = None, limit: int = 500) -> List[Job]:
        """List jobs of every owner, newest first."""
        query = self._table().select("*")
        if status:
            query = query.eq("status", JobStatus(status).value)

        result = query\
            .order("created_at", desc=True)\
            .limit(limit)\
            .execute()
        return [Job(**row) for row in result.data or []]

    def find_by_ids_for_owner(self, job_ids: List[str], owner_id: str) -> List[Job]:
        """
        Jobs among `job_ids` that belong to `owner_id`. Unknown and foreign
        ids are dropped silently.
        """
        if not job_ids:
            return []

        result = self._table()\
            .select("*")\
            .in_("id", list(job_ids))\
            .eq("owner_id", owner_id)\
            .execute()
        return [Job(**row) for row in result.data or []]

    # ------------------------------------------------------------------
    # Lifecycle updates (worker side)
    # ------------------------------------------------------------------

    def _update(self, job_id: str, update_data: Dict[str, Any], exclude_status: Optional[JobStatus] = None) -> bool:
        try:
            query = self._table().update(update_data).eq("id", job_id)
            if exclude_status:
                query = query.neq("status", exclude_status.value)
            result = query.execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Error updating job {job_id}: {e}")
            return False

    def mark_running(self, job_id: str) -> bool:
        """
        Move a job to `running` for a new attempt. A job that is already
        `done` is left alone; returns False in that case or if the job is gone.
        """
        return self._update(job_id, {
            "status": JobStatus.RUNNING.value,
            "progress": 0,
            "started_at": datetime.utcnow().isoformat(),
            "finished_at": None,
            "error_message": None,
        }, exclude_status=JobStatus.DONE)

    def update_progress(self, job_id: str, percent: float) -> bool:
        """Advisory progress update, clamped to 0-100."""
        return self._update(job_id, {"progress": int(min(100, max(0, percent)))})

    def mark_done(self, job_id: str, output: Optional[StoredOutput] = None) -> bool:
        output = output or StoredOutput()
        data = {
            "status": JobStatus.DONE.value,
            "progress": 100,
            "finished_at": datetime.utcnow().isoformat(),
            "error_message": None,
        }
        data.update(output.as_record())
        return self._update(job_id, data)

    def mark_failed(self, job_id: str, error_message: str, exclude_status: Optional[JobStatus] = None) -> bool:
        return self._update(job_id, {
            "status": JobStatus.FAILED.value,
            "progress": 0,
            "finished_at": datetime.utcnow().isoformat(),
            "error_message": error_message or "Job failed",
            "output_path": None,
            "output_name": None,
            "output_mime": None,
        }, exclude_status=exclude_status)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_job(self, job_id: str, owner_id: str) -> None:
        self.get_job(job_id, owner_id)
        self._table().delete().eq("id", job_id).execute()
        logger.info(f"Deleted job {job_id}")

    def delete_job_admin(self, job_id: str) -> None:
        self.get_job_admin(job_id)
        self._table().delete().eq("id", job_id).execute()
        logger.info(f"Deleted job {job_id} (admin)")

