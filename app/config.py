"""
Engine Configuration

Reads job engine settings from the environment (and a local .env file).
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class JobsSettings:
    """Settings for the job engine, the worker pool and the print transport."""
    storage_backend: str = "supabase"
    storage_bucket: str = "coregre-storage"
    local_storage_dir: str = "./storage/objects"
    scratch_dir: str = "./storage/jobs"

    queue_backend: str = "memory"
    queue_name: str = "coregre-jobs"
    max_attempts: int = 2
    backoff_seconds: float = 2.0

    worker_concurrency: int = 3
    worker_poll_interval: float = 1.0
    lease_seconds: float = 300.0
    recovery_interval: float = 60.0
    run_in_process: bool = True

    print_server_url: str = "http://localhost:631"
    print_default_destination: Optional[str] = None
    print_timeout_seconds: float = 30.0

    log_level: str = field(default="INFO")

    @classmethod
    def from_env(cls) -> "JobsSettings":
        return cls(
            storage_backend=os.environ.get("JOBS_STORAGE_BACKEND", "supabase").lower(),
            storage_bucket=os.environ.get("JOBS_STORAGE_BUCKET", "coregre-storage"),
            local_storage_dir=os.environ.get("JOBS_LOCAL_STORAGE_DIR", "./storage/objects"),
            scratch_dir=os.environ.get("JOBS_SCRATCH_DIR", "./storage/jobs"),
            queue_backend=os.environ.get("JOBS_QUEUE_BACKEND", "memory").lower(),
            queue_name=os.environ.get("JOBS_QUEUE_NAME", "coregre-jobs"),
            max_attempts=int(os.environ.get("JOBS_MAX_ATTEMPTS", "2")),
            backoff_seconds=float(os.environ.get("JOBS_BACKOFF_SECONDS", "2.0")),
            worker_concurrency=int(os.environ.get("WORKER_CONCURRENCY", "3")),
            worker_poll_interval=float(os.environ.get("WORKER_POLL_INTERVAL", "1.0")),
            lease_seconds=float(os.environ.get("JOBS_LEASE_SECONDS", "300")),
            recovery_interval=float(os.environ.get("JOBS_RECOVERY_INTERVAL", "60")),
            run_in_process=_env_bool("JOBS_RUN_IN_PROCESS", True),
            print_server_url=os.environ.get("PRINT_SERVER_URL", "http://localhost:631").rstrip("/"),
            print_default_destination=os.environ.get("PRINT_DEFAULT_DESTINATION") or None,
            print_timeout_seconds=float(os.environ.get("PRINT_TIMEOUT_SECONDS", "30")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


_settings: Optional[JobsSettings] = None


def get_settings() -> JobsSettings:
    """Get the process-wide settings, read once from the environment."""
    global _settings
    if _settings is None:
        _settings = JobsSettings.from_env()
    return _settings
