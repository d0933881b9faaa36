"""
Shared fixtures for the job engine tests.

FakeSupabase mimics the subset of the supabase-py query builder and storage
API the engine uses, backed by plain dicts.
"""

import copy
import os
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
from storage3.utils import StorageException

# Keep the module-level Supabase client disabled during tests
os.environ.pop("SUPABASE_URL", None)
os.environ["JOBS_RUN_IN_PROCESS"] = "false"
os.environ["JOBS_STORAGE_BACKEND"] = "local"

from app.jobs.job_manager import JobManager
from app.jobs.materializer import OutputMaterializer
from app.jobs.queue import InMemoryQueue, RetryPolicy
from app.jobs.runner import JobRunner
from app.jobs.worker_pool import WorkerPool
from app.jobs.operations import JobOperations
from app.jobs.job_types import Principal
from app.storage_service import LocalObjectStore


# =============================================================================
# FAKE SUPABASE
# =============================================================================

class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.action = "select"
        self.values: Any = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.order_by: List[tuple] = []
        self.limit_n: Optional[int] = None
        self.single_row = False

    # Actions
    def select(self, *columns):
        self.action = "select"
        return self

    def insert(self, values):
        self.action = "insert"
        self.values = values
        return self

    def update(self, values):
        self.action = "update"
        self.values = values
        return self

    def delete(self):
        self.action = "delete"
        return self

    # Filters
    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def lt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) < value)
        return self

    def order(self, column, desc=False):
        self.order_by.append((column, desc))
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def single(self):
        self.single_row = True
        return self

    def _matching(self) -> List[Dict[str, Any]]:
        rows = self.db.tables.setdefault(self.table_name, [])
        return [row for row in rows if all(f(row) for f in self.filters)]

    def execute(self):
        if self.table_name in self.db.failing_tables:
            raise RuntimeError(f"table {self.table_name} unavailable")

        rows = self.db.tables.setdefault(self.table_name, [])

        if self.action == "insert":
            new_rows = self.values if isinstance(self.values, list) else [self.values]
            inserted = [copy.deepcopy(r) for r in new_rows]
            rows.extend(inserted)
            return SimpleNamespace(data=copy.deepcopy(inserted), count=len(inserted))

        matched = self._matching()

        if self.action == "update":
            for row in matched:
                row.update(copy.deepcopy(self.values))
            return SimpleNamespace(data=copy.deepcopy(matched), count=len(matched))

        if self.action == "delete":
            ids = {id(r) for r in matched}
            self.db.tables[self.table_name] = [r for r in rows if id(r) not in ids]
            return SimpleNamespace(data=copy.deepcopy(matched), count=len(matched))

        for column, desc in reversed(self.order_by):
            matched.sort(key=lambda r: (r.get(column) is None, r.get(column) or ""), reverse=desc)
        if self.limit_n is not None:
            matched = matched[:self.limit_n]
        data = copy.deepcopy(matched)
        if self.single_row:
            data = data[0] if data else None
        return SimpleNamespace(data=data, count=len(matched))


class FakeBucket:
    def __init__(self, objects: Dict[str, Dict[str, Any]]):
        self.objects = objects

    def upload(self, path, data, file_options=None):
        options = file_options or {}
        self.objects[path] = {
            "data": bytes(data),
            "mimetype": options.get("content-type"),
            "metadata": options.get("metadata") or {},
        }
        return {"Key": path}

    def download(self, path):
        if path not in self.objects:
            raise StorageException({"statusCode": "404", "message": "Object not found"})
        return self.objects[path]["data"]

    def remove(self, paths):
        removed = []
        for path in paths:
            if self.objects.pop(path, None) is not None:
                removed.append({"name": path})
        return removed

    def list(self, folder="", options=None):
        options = options or {}
        prefix = f"{folder}/" if folder else ""
        files, folders = [], set()
        for key, obj in self.objects.items():
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            if "/" in rest:
                folders.add(rest.split("/", 1)[0])
            else:
                files.append({
                    "id": key,
                    "name": rest,
                    "metadata": {"size": len(obj["data"]), "mimetype": obj["mimetype"]},
                    "user_metadata": obj["metadata"],
                })
        entries = [{"id": None, "name": name} for name in sorted(folders)] + sorted(files, key=lambda e: e["name"])
        search = options.get("search")
        if search:
            entries = [e for e in entries if search in e["name"]]
        offset = options.get("offset", 0)
        limit = options.get("limit", 100)
        return entries[offset:offset + limit]

    def create_signed_url(self, path, expires_in):
        if path not in self.objects:
            raise StorageException({"statusCode": "404", "message": "Object not found"})
        return {"signedURL": f"https://storage.test/{path}?token=x"}


class FakeStorage:
    def __init__(self):
        self.buckets: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def from_(self, bucket):
        return FakeBucket(self.buckets.setdefault(bucket, {}))


class FakeRpc:
    def __init__(self, data):
        self.data = data

    def execute(self):
        return SimpleNamespace(data=self.data)


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.failing_tables = set()
        self.rpc_handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.storage = FakeStorage()

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params=None):
        handler = self.rpc_handlers.get(name)
        return FakeRpc(handler(params or {}) if handler else None)

    def rows(self, name) -> List[Dict[str, Any]]:
        return self.tables.setdefault(name, [])


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def manager(fake_db):
    return JobManager(fake_db)


@pytest.fixture
def store(tmp_path):
    return LocalObjectStore(str(tmp_path / "objects"))


@pytest.fixture
def materializer(store, tmp_path):
    return OutputMaterializer(store, str(tmp_path / "scratch"))


@pytest.fixture
def queue():
    return InMemoryQueue("test-jobs")


@pytest.fixture
def make_runner(manager, store, materializer, fake_db):
    """Build a JobRunner around a handler registry."""
    def _make(handlers, services=None):
        return JobRunner(manager, store, materializer, handlers, services=services, db=fake_db)
    return _make


@pytest.fixture
def make_pool(queue):
    """Build a WorkerPool with no backoff delay."""
    def _make(runner, concurrency=1, base_delay=0.0, recovery_interval=60.0):
        return WorkerPool(
            queue,
            runner,
            concurrency=concurrency,
            poll_interval=0.05,
            retry_policy=RetryPolicy(base_delay=base_delay),
            recovery_interval=recovery_interval,
            worker_id="test-worker",
        )
    return _make


@pytest.fixture
def operations(manager, queue, store):
    return JobOperations(manager, queue, store, print_client=None, max_attempts=2)


@pytest.fixture
def alice():
    return Principal(user_id="U1")


@pytest.fixture
def bob():
    return Principal(user_id="U2")


@pytest.fixture
def admin():
    return Principal(user_id="ADMIN", is_admin=True)


@pytest.fixture
def ipp_response():
    """Build an IPP response body with the given status and job id."""
    import struct

    def _attr(tag, name, value: bytes):
        name_bytes = name.encode()
        return struct.pack(">BH", tag, len(name_bytes)) + name_bytes + struct.pack(">H", len(value)) + value

    def _build(status_code=0x0000, request_id=1, job_id=None, message=None):
        body = struct.pack(">BBHI", 1, 1, status_code, request_id) + b"\x01"
        body += _attr(0x47, "attributes-charset", b"utf-8")
        body += _attr(0x48, "attributes-natural-language", b"en")
        if message:
            body += _attr(0x41, "status-message", message.encode())
        if job_id is not None:
            body += b"\x02" + _attr(0x21, "job-id", struct.pack(">i", job_id))
        return body + b"\x03"

    return _build
