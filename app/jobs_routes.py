"""
Background Jobs API Routes

Provides endpoints for:
- Enqueueing jobs and reading their status
- Downloading, deleting, merging, zipping and printing job outputs
- Administrative listing, deletion and queue inspection
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse

from app.jobs.engine import get_engine
from app.jobs.errors import (
    ArtifactUnavailableError, JobForbiddenError, JobNotFoundError, JobNotReadyError,
    JobsError, JobValidationError, PrintSubmissionError, QueueError, StorageUnavailableError
)
from app.jobs.job_types import (
    PDF_MIME, ZIP_MIME, DeleteJobResponse, EnqueueJobRequest, EnqueueJobResponse,
    Job, JobIdsRequest, JobStatus, PrintJobRequest, PrintJobResponse, Principal,
    QueueItemResponse
)
from app.jobs.operations import JobOperations
from app.jobs.utils import content_disposition
from app.supabase_client import get_user_profile, verify_supabase_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


# =============================================================================
# AUTH DEPENDENCIES
# =============================================================================

async def get_current_user(authorization: str = Header(None)) -> Dict:
    """Extract and verify user from Supabase JWT token."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    user_data = verify_supabase_token(parts[1])
    if not user_data:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return user_data


async def get_current_principal(user: Dict = Depends(get_current_user)) -> Principal:
    profile = get_user_profile(user["id"]) or {}
    return Principal(user_id=user["id"], is_admin=profile.get("role") == "admin")


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return principal


def get_operations() -> JobOperations:
    return get_engine().operations


# =============================================================================
# HELPERS
# =============================================================================

def _http_error(e: JobsError) -> HTTPException:
    """Map an engine error to an HTTP error with a readable message."""
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, JobForbiddenError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ArtifactUnavailableError):
        return HTTPException(status_code=410, detail=str(e))
    if isinstance(e, (JobNotReadyError, JobValidationError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, PrintSubmissionError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, (QueueError, StorageUnavailableError)):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _parse_status(status: Optional[str]) -> Optional[JobStatus]:
    if not status:
        return None
    try:
        return JobStatus(status)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid status value")


def _queue_item_response(item) -> QueueItemResponse:
    return QueueItemResponse(
        id=item.id,
        job_id=item.job_id,
        owner_id=item.owner_id,
        type=item.type,
        attempts=item.attempts,
        max_attempts=item.max_attempts,
        state=item.state,
        last_error=item.last_error,
        available_at=item.available_at,
    )


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

@router.get("/admin/all", response_model=List[Job])
async def admin_list_all(
    status: Optional[str] = None,
    admin: Principal = Depends(require_admin),
    ops: JobOperations = Depends(get_operations)
):
    """List the jobs of every user."""
    return ops.list_all(_parse_status(status))


@router.delete("/admin/{job_id}", response_model=DeleteJobResponse)
async def admin_delete(
    job_id: str,
    admin: Principal = Depends(require_admin),
    ops: JobOperations = Depends(get_operations)
):
    """Delete any job and its output."""
    try:
        ops.admin_delete(admin, job_id)
    except JobsError as e:
        raise _http_error(e)
    logger.info(f"Admin {admin.user_id} deleted job {job_id}")
    return DeleteJobResponse(deleted=True)


@router.get("/admin/queue/failed", response_model=List[QueueItemResponse])
async def admin_list_failed_queue_items(
    limit: int = Query(default=100, le=500),
    admin: Principal = Depends(require_admin),
    ops: JobOperations = Depends(get_operations)
):
    """Queue items retained after exhausting their attempts."""
    items = await ops.list_failed_queue_items(limit)
    return [_queue_item_response(item) for item in items]


@router.post("/admin/queue/{item_id}/requeue", response_model=QueueItemResponse)
async def admin_requeue(
    item_id: str,
    admin: Principal = Depends(require_admin),
    ops: JobOperations = Depends(get_operations)
):
    """Re-stage a retained queue item with a fresh attempt budget."""
    try:
        item = await ops.requeue_failed(item_id)
    except QueueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _queue_item_response(item)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=EnqueueJobResponse)
async def enqueue_job(
    request: EnqueueJobRequest,
    principal: Principal = Depends(get_current_principal),
    ops: JobOperations = Depends(get_operations)
):
    """
    Enqueue a new background job.

    Returns immediately with the job id. The job type is resolved when a
    worker picks the job up.
    """
    try:
        job = await ops.enqueue(principal, request.type, request.payload)
    except JobsError as e:
        raise _http_error(e)
    logger.info(f"Enqueued job {job.id} of type {request.type}")
    return EnqueueJobResponse(job_id=job.id, status=job.status)


@router.get("", response_model=List[Job])
async def list_jobs(
    status: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    ops: JobOperations = Depends(get_operations)
):
    """List the caller's jobs, newest first."""
    return ops.list_jobs(principal, _parse_status(status))


@router.post("/merge-pdf")
def merge_pdf(
    request: JobIdsRequest,
    principal: Principal = Depends(get_current_principal),
    ops: JobOperations = Depends(get_operations)
):
    """Merge the PDF outputs of the selected jobs into one document."""
    try:
        stream = ops.merge_pdf(principal, request.ids)
    except JobsError as e:
        raise _http_error(e)
    return StreamingResponse(
        stream,
        media_type=PDF_MIME,
        headers={"Content-Disposition": content_disposition("merge.pdf")}
    )


@router.post("/zip")
def zip_outputs(
    request: JobIdsRequest,
    principal: Principal = Depends(get_current_principal),
    ops: JobOperations = Depends(get_operations)
):
    """Stream a zip archive of the selected jobs' outputs."""
    try:
        stream = ops.zip_outputs(principal, request.ids)
    except JobsError as e:
        raise _http_error(e)
    return StreamingResponse(
        stream,
        media_type=ZIP_MIME,
        headers={"Content-Disposition": content_disposition("files.zip")}
    )


@router.get("/{job_id}", response_model=Job)
async def get_job(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    ops: JobOperations = Depends(get_operations)
):
    """Get one of the caller's jobs."""
    try:
        return ops.detail(principal, job_id)
    except JobsError as e:
        raise _http_error(e)


@router.get("/{job_id}/download")
def download_job_output(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    ops: JobOperations = Depends(get_operations)
):
    """Stream the job's output file."""
    try:
        download = ops.download(principal, job_id)
    except JobsError as e:
        raise _http_error(e)
    return StreamingResponse(
        download.stream,
        media_type=download.mime,
        headers={"Content-Disposition": content_disposition(download.name)}
    )


@router.delete("/{job_id}", response_model=DeleteJobResponse)
async def delete_job(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    ops: JobOperations = Depends(get_operations)
):
    """Delete a job and its output file."""
    try:
        ops.delete(principal, job_id)
    except JobsError as e:
        raise _http_error(e)
    return DeleteJobResponse(deleted=True)


@router.post("/{job_id}/print", response_model=PrintJobResponse)
def print_job(
    job_id: str,
    request: Optional[PrintJobRequest] = None,
    principal: Principal = Depends(get_current_principal),
    ops: JobOperations = Depends(get_operations)
):
    """Send a PDF output to a printer (explicit destination or the default)."""
    destination = request.destination if request else None
    try:
        result = ops.print_job(principal, job_id, destination)
    except JobsError as e:
        raise _http_error(e)
    return PrintJobResponse(
        submitted=True,
        destination=result.destination,
        request_id=result.request_id,
        ipp_status=result.status_code,
        print_job_id=result.print_job_id,
    )


# Export router
jobs_router = router
