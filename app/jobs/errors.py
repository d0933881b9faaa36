"""
Job Engine Errors

Exception taxonomy shared by the job store, the runner and the client-facing
operations. Routes translate these into HTTP responses.
"""

from typing import Optional


class JobsError(Exception):
    """Base class for job engine errors. The message is user readable."""


class JobAccessError(JobsError):
    """The caller may not see the job (unknown id or not the owner)."""

    def __init__(self, job_id: str, message: str):
        super().__init__(message)
        self.job_id = job_id


class JobNotFoundError(JobAccessError):
    def __init__(self, job_id: str):
        super().__init__(job_id, "Job not found")


class JobForbiddenError(JobAccessError):
    def __init__(self, job_id: str):
        super().__init__(job_id, "Access denied")


class JobNotReadyError(JobsError):
    """The job has no stored artifact (not finished, failed, or no output)."""

    def __init__(self, job_id: str):
        super().__init__("File not ready or not available")
        self.job_id = job_id


class ArtifactUnavailableError(JobsError):
    """The record references an artifact that is gone from durable storage."""

    def __init__(self, job_id: str, key: Optional[str] = None):
        super().__init__("File no longer available")
        self.job_id = job_id
        self.key = key


class JobValidationError(JobsError):
    """Invalid request to an operation, rejected before any I/O."""


class UnknownJobTypeError(JobsError):
    """No handler is registered for the job type. Never retried."""

    def __init__(self, job_type: str):
        super().__init__(f"Unhandled job type: {job_type}")
        self.job_type = job_type


class MaterializationError(JobsError):
    """A handler succeeded but its output could not be made durable."""


class PrintSubmissionError(JobsError):
    """The print transport rejected or failed the submission."""


class QueueError(JobsError):
    """The reliable queue could not stage or update an item."""


class StorageUnavailableError(JobsError):
    """The object store failed for a reason other than a missing object."""

    def __init__(self, job_id: str, key: Optional[str] = None):
        super().__init__("File storage is temporarily unavailable")
        self.job_id = job_id
        self.key = key
