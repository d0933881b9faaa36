"""
Durable Object Store

Blob storage for job artifacts, addressed by key. Two backends are provided:

- SupabaseObjectStore: a Supabase Storage bucket (production)
- LocalObjectStore: a directory tree on a shared volume (single-node / dev)

Both expose the same operations: put, get as stream, get as buffer, delete,
list by prefix and stat.
"""

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import httpx
from storage3.utils import StorageException

from app.config import JobsSettings
from app.supabase_client import get_supabase

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class StorageError(Exception):
    """Raised when the object store cannot complete an operation."""


class ArtifactNotFoundError(StorageError):
    """Raised when an object key does not exist in the store."""

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


@dataclass
class ObjectStat:
    key: str
    size: int
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


def job_object_name(owner_id: str, job_id: str, file_name: str) -> str:
    """Durable key for a job artifact."""
    return f"jobs/{owner_id}/{job_id}/{file_name}"


class ObjectStore:
    """Interface of the durable object store."""

    def put_file(
        self,
        key: str,
        local_path: str,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None
    ) -> None:
        raise NotImplementedError

    def put_bytes(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None
    ) -> None:
        raise NotImplementedError

    def get_stream(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """
        Open an object for streaming. Raises ArtifactNotFoundError before
        returning if the key does not exist.
        """
        raise NotImplementedError

    def get_bytes(self, key: str) -> bytes:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list_prefix(self, prefix: str) -> List[str]:
        raise NotImplementedError

    def stat(self, key: str) -> ObjectStat:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        try:
            self.stat(key)
            return True
        except ArtifactNotFoundError:
            return False

    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under a prefix. Returns the number removed."""
        keys = self.list_prefix(prefix)
        for key in keys:
            self.delete(key)
        if keys:
            logger.info(f"Deleted {len(keys)} objects with prefix: {prefix}")
        return len(keys)


# ============================================================================
# Supabase Storage backend
# ============================================================================

def _is_not_found(error: StorageException) -> bool:
    detail = error.args[0] if error.args else {}
    if isinstance(detail, dict):
        status = str(detail.get("statusCode") or detail.get("status") or "")
        message = str(detail.get("message") or detail.get("error") or "")
    else:
        status = ""
        message = str(detail)
    return status == "404" or "not found" in message.lower()


class SupabaseObjectStore(ObjectStore):
    """Object store backed by a Supabase Storage bucket."""

    def __init__(self, bucket: str, supabase=None, signed_url_ttl: int = 300):
        self.bucket_name = bucket
        self.supabase = supabase or get_supabase()
        self.signed_url_ttl = signed_url_ttl

    @property
    def bucket(self):
        return self.supabase.storage.from_(self.bucket_name)

    def put_file(self, key, local_path, content_type="application/octet-stream", metadata=None):
        with open(local_path, "rb") as fh:
            self.put_bytes(key, fh.read(), content_type, metadata)

    def put_bytes(self, key, data, content_type="application/octet-stream", metadata=None):
        file_options: Dict[str, Any] = {"content-type": content_type, "upsert": "true"}
        if metadata:
            file_options["metadata"] = metadata
        try:
            self.bucket.upload(key, data, file_options)
        except (StorageException, httpx.HTTPError) as e:
            logger.error(f"Failed to upload {key}: {e}")
            raise StorageError(f"Upload of {key} failed: {e}") from e
        logger.info(f"File uploaded: {key}")

    def _signed_url(self, key: str) -> str:
        try:
            result = self.bucket.create_signed_url(key, self.signed_url_ttl)
        except StorageException as e:
            if _is_not_found(e):
                raise ArtifactNotFoundError(key) from e
            raise StorageError(f"Could not sign {key}: {e}") from e
        except httpx.HTTPError as e:
            raise StorageError(f"Could not sign {key}: {e}") from e
        url = result.get("signedURL") or result.get("signedUrl")
        if not url:
            raise StorageError(f"Storage returned no signed URL for {key}")
        return url

    def get_stream(self, key, chunk_size=DEFAULT_CHUNK_SIZE):
        url = self._signed_url(key)
        return self._iter_url(key, url, chunk_size)

    @staticmethod
    def _iter_url(key: str, url: str, chunk_size: int) -> Iterator[bytes]:
        try:
            with httpx.stream("GET", url, timeout=60.0) as response:
                if response.status_code == 404:
                    raise ArtifactNotFoundError(key)
                response.raise_for_status()
                for chunk in response.iter_bytes(chunk_size):
                    yield chunk
        except httpx.HTTPError as e:
            raise StorageError(f"Download of {key} failed: {e}") from e

    def get_bytes(self, key):
        try:
            return self.bucket.download(key)
        except StorageException as e:
            if _is_not_found(e):
                raise ArtifactNotFoundError(key) from e
            raise StorageError(f"Download of {key} failed: {e}") from e
        except httpx.HTTPError as e:
            raise StorageError(f"Download of {key} failed: {e}") from e

    def delete(self, key):
        try:
            removed = self.bucket.remove([key])
        except StorageException as e:
            if _is_not_found(e):
                raise ArtifactNotFoundError(key) from e
            raise StorageError(f"Delete of {key} failed: {e}") from e
        except httpx.HTTPError as e:
            raise StorageError(f"Delete of {key} failed: {e}") from e
        if not removed:
            raise ArtifactNotFoundError(key)
        logger.info(f"File deleted: {key}")

    def _list_folder(self, folder: str) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        offset = 0
        page_size = 100
        while True:
            page = self.bucket.list(folder, {"limit": page_size, "offset": offset}) or []
            entries.extend(page)
            if len(page) < page_size:
                return entries
            offset += page_size

    def list_prefix(self, prefix):
        # Supabase lists one folder level at a time; folders have no id.
        keys: List[str] = []
        pending = [prefix.rstrip("/")]
        while pending:
            folder = pending.pop()
            for entry in self._list_folder(folder):
                path = f"{folder}/{entry['name']}" if folder else entry["name"]
                if entry.get("id") is None:
                    pending.append(path)
                else:
                    keys.append(path)
        return sorted(keys)

    def stat(self, key):
        folder, _, name = key.rpartition("/")
        for entry in self.bucket.list(folder, {"search": name}) or []:
            if entry.get("name") == name and entry.get("id") is not None:
                meta = entry.get("metadata") or {}
                return ObjectStat(
                    key=key,
                    size=int(meta.get("size") or 0),
                    content_type=meta.get("mimetype"),
                    metadata=entry.get("user_metadata") or {},
                )
        raise ArtifactNotFoundError(key)


# ============================================================================
# Local directory backend
# ============================================================================

class LocalObjectStore(ObjectStore):
    """
    Object store kept in a local (or shared-volume) directory.
    Object metadata lives in JSON sidecars under `.meta/`.
    """

    META_DIR = ".meta"

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents or self.META_DIR in path.relative_to(self.root).parts:
            raise StorageError(f"Invalid object key: {key}")
        return path

    def _meta_path(self, key: str) -> Path:
        return self.root / self.META_DIR / f"{key}.json"

    def _write_atomic(self, target: Path, write) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as fh:
                write(fh)
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _write_meta(self, key: str, content_type: str, metadata: Optional[Dict[str, str]]) -> None:
        meta_path = self._meta_path(key)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(
            json.dumps({"content_type": content_type, "metadata": metadata or {}}),
            encoding="utf-8",
        )

    def put_file(self, key, local_path, content_type="application/octet-stream", metadata=None):
        target = self._path(key)
        try:
            with open(local_path, "rb") as src:
                self._write_atomic(target, lambda dst: shutil.copyfileobj(src, dst))
            self._write_meta(key, content_type, metadata)
        except OSError as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e
        logger.info(f"File uploaded: {key}")

    def put_bytes(self, key, data, content_type="application/octet-stream", metadata=None):
        target = self._path(key)
        try:
            self._write_atomic(target, lambda dst: dst.write(data))
            self._write_meta(key, content_type, metadata)
        except OSError as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e
        logger.info(f"Buffer uploaded: {key}")

    def _open(self, key: str):
        try:
            return open(self._path(key), "rb")
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(key) from e

    def get_stream(self, key, chunk_size=DEFAULT_CHUNK_SIZE):
        fh = self._open(key)
        return self._iter_file(fh, chunk_size)

    @staticmethod
    def _iter_file(fh, chunk_size: int) -> Iterator[bytes]:
        with fh:
            while True:
                chunk = fh.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def get_bytes(self, key):
        with self._open(key) as fh:
            return fh.read()

    def delete(self, key):
        try:
            self._path(key).unlink()
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(key) from e
        self._meta_path(key).unlink(missing_ok=True)
        logger.info(f"File deleted: {key}")

    def list_prefix(self, prefix):
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file():
                continue
            rel = path.relative_to(self.root)
            if rel.parts[0] == self.META_DIR or rel.name.startswith(".upload-"):
                continue
            key = rel.as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def stat(self, key):
        path = self._path(key)
        if not path.is_file():
            raise ArtifactNotFoundError(key)
        content_type = None
        metadata: Dict[str, str] = {}
        meta_path = self._meta_path(key)
        if meta_path.exists():
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            content_type = meta.get("content_type")
            metadata = meta.get("metadata") or {}
        return ObjectStat(key=key, size=path.stat().st_size, content_type=content_type, metadata=metadata)


def create_object_store(settings: JobsSettings, supabase=None) -> ObjectStore:
    """Build the object store selected by the settings."""
    if settings.storage_backend == "local":
        return LocalObjectStore(settings.local_storage_dir)
    if settings.storage_backend == "supabase":
        return SupabaseObjectStore(settings.storage_bucket, supabase)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
