"""
Job Types and Schemas

Defines enums, records and Pydantic models for the background job engine.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

PDF_MIME = "application/pdf"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
ZIP_MIME = "application/zip"
DEFAULT_MIME = "application/octet-stream"


class JobStatus(str, Enum):
    """Status of a background job."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class Job(BaseModel):
    """A job record as stored in the `jobs` table."""
    id: str
    owner_id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    output_path: Optional[str] = None
    output_name: Optional[str] = None
    output_mime: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def has_artifact(self) -> bool:
        return self.status == JobStatus.DONE and bool(self.output_path)

    @property
    def is_pdf(self) -> bool:
        return self.has_artifact and self.output_mime == PDF_MIME


@dataclass
class JobOutput:
    """What a handler hands back: a file in its scratch directory."""
    local_path: str
    name: str
    mime: str = DEFAULT_MIME


@dataclass
class StoredOutput:
    """Output fields of a materialized job, ready for the job record."""
    output_path: Optional[str] = None
    output_name: Optional[str] = None
    output_mime: Optional[str] = None

    def as_record(self) -> Dict[str, Optional[str]]:
        return {
            "output_path": self.output_path,
            "output_name": self.output_name,
            "output_mime": self.output_mime,
        }


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a client-facing operation."""
    user_id: str
    is_admin: bool = False


# ============================================================================
# API Request / Response Schemas
# ============================================================================

class EnqueueJobRequest(BaseModel):
    """Request to enqueue a new background job."""
    type: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class EnqueueJobResponse(BaseModel):
    job_id: str
    status: JobStatus


class JobIdsRequest(BaseModel):
    """Selection of jobs for merge and zip."""
    ids: List[str] = Field(default_factory=list)


class PrintJobRequest(BaseModel):
    destination: Optional[str] = None


class PrintJobResponse(BaseModel):
    submitted: bool
    destination: str
    request_id: int
    ipp_status: int
    print_job_id: Optional[int] = None


class DeleteJobResponse(BaseModel):
    deleted: bool


class QueueItemResponse(BaseModel):
    """A queue item as shown to operators."""
    id: str
    job_id: str
    owner_id: str
    type: str
    attempts: int
    max_attempts: int
    state: str
    last_error: Optional[str] = None
    available_at: Optional[datetime] = None
