"""
Reliable Queue

Durable staging of work items between enqueue and execution. A queue
implementation must provide:

- durable push of {job_id, owner_id, type, payload}
- single-claim delivery (no two workers receive the same item)
- per-item attempt counting
- delayed redelivery for retries
- retention of items whose attempts are exhausted, for operator inspection
- a lease on claimed items: a worker that stops heartbeating loses its item,
  which is redelivered as a new attempt (or retained once attempts run out)

Two implementations are provided: InMemoryQueue for a single-node process and
SupabaseQueue backed by the `job_queue` table (see scripts/job_queue.sql).
"""

import asyncio
import heapq
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple
from uuid import uuid4

from app.jobs.errors import QueueError
from app.jobs.job_types import Job

logger = logging.getLogger(__name__)

QUEUE_TABLE = "job_queue"
DEFAULT_LEASE_SECONDS = 300.0
LEASE_EXPIRED_ERROR = "Worker stopped responding before the job finished"


class ItemState:
    WAITING = "waiting"
    ACTIVE = "active"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class QueueItem:
    """A unit of work staged in the queue."""
    job_id: str
    owner_id: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 2
    attempts: int = 0
    state: str = ItemState.WAITING
    last_error: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    available_at: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)
    locked_until: Optional[datetime] = None

    @classmethod
    def for_job(cls, job: Job, max_attempts: int) -> "QueueItem":
        return cls(
            job_id=job.id,
            owner_id=job.owner_id,
            type=job.type,
            payload=dict(job.payload),
            max_attempts=max_attempts,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueueItem":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            owner_id=row["owner_id"],
            type=row["type"],
            payload=row.get("payload") or {},
            max_attempts=int(row.get("max_attempts") or 1),
            attempts=int(row.get("attempts") or 0),
            state=row.get("state") or ItemState.WAITING,
            last_error=row.get("last_error"),
            available_at=_parse_datetime(row.get("available_at")) or _utcnow(),
            created_at=_parse_datetime(row.get("created_at")) or _utcnow(),
            locked_until=_parse_datetime(row.get("locked_until")),
        )


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: base_delay, 2*base_delay, 4*base_delay...
    The attempt budget itself travels with each queue item (`max_attempts`).
    """
    base_delay: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before redelivering an item that just failed `attempt`."""
        return self.base_delay * (2 ** max(0, attempt - 1))

    def should_retry(self, item: QueueItem) -> bool:
        return item.attempts < item.max_attempts


class ReliableQueue:
    """Interface of the reliable queue used by enqueue and the worker pool."""

    name: str = "jobs"
    lease_seconds: float = DEFAULT_LEASE_SECONDS

    async def connect(self) -> None:
        """Verify the queue transport is reachable. Errors propagate."""

    async def push(self, item: QueueItem) -> None:
        raise NotImplementedError

    async def claim(self, worker_id: str, timeout: float) -> Optional[QueueItem]:
        """
        Claim the next ready item, waiting up to `timeout` seconds.
        Increments the item's attempt counter and leases the item to the
        worker for `lease_seconds`. Active items whose lease has expired are
        claimable again while attempts remain.
        """
        raise NotImplementedError

    async def heartbeat(self, item: QueueItem) -> None:
        """Extend the lease on a claimed item."""
        raise NotImplementedError

    async def reap_expired(self) -> List[QueueItem]:
        """
        Retain active items whose lease expired with no attempts left.
        Returns the retained items so their job records can be failed.
        """
        raise NotImplementedError

    async def ack(self, item: QueueItem) -> None:
        """The item completed; remove it."""
        raise NotImplementedError

    async def retry(self, item: QueueItem, delay: float, error: str) -> None:
        """Re-stage a failed item for redelivery after `delay` seconds."""
        raise NotImplementedError

    async def bury(self, item: QueueItem, error: str) -> None:
        """Retain a terminally failed item for operator inspection."""
        raise NotImplementedError

    async def list_failed(self, limit: int = 100) -> List[QueueItem]:
        raise NotImplementedError

    async def requeue_failed(self, item_id: str) -> QueueItem:
        """Operator action: re-stage a retained item with a fresh attempt budget."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


# ============================================================================
# In-process queue
# ============================================================================

class InMemoryQueue(ReliableQueue):
    """
    asyncio queue for single-node deployments. FIFO among ready items;
    retried items wait in a delay heap until due.
    """

    def __init__(self, name: str = "jobs", lease_seconds: float = DEFAULT_LEASE_SECONDS):
        self.name = name
        self.lease_seconds = lease_seconds
        self._items: Dict[str, QueueItem] = {}
        self._ready: Deque[str] = deque()
        self._delayed: List[Tuple[float, int, str]] = []
        self._seq = 0
        self._wakeup = asyncio.Event()

    def _promote_due(self) -> None:
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, item_id = heapq.heappop(self._delayed)
            if item_id in self._items:
                self._ready.append(item_id)

    def _next_due_in(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - time.monotonic())

    def _expired(self, now: datetime, exhausted: bool) -> List[QueueItem]:
        return [
            i for i in self._items.values()
            if i.state == ItemState.ACTIVE
            and i.locked_until is not None
            and i.locked_until <= now
            and (i.attempts >= i.max_attempts) == exhausted
        ]

    def _next_lease_expiry_in(self) -> Optional[float]:
        leases = [
            i.locked_until for i in self._items.values()
            if i.state == ItemState.ACTIVE and i.locked_until is not None and i.attempts < i.max_attempts
        ]
        if not leases:
            return None
        return max(0.0, (min(leases) - _utcnow()).total_seconds())

    def _take_next(self) -> Optional[QueueItem]:
        while self._ready:
            item = self._items.get(self._ready.popleft())
            if item is not None and item.state == ItemState.WAITING:
                return item
        expired = self._expired(_utcnow(), exhausted=False)
        if expired:
            item = expired[0]
            logger.warning(f"Lease on queue item {item.id} expired; redelivering job {item.job_id}")
            return item
        return None

    async def push(self, item):
        item.state = ItemState.WAITING
        item.locked_until = None
        self._items[item.id] = item
        self._ready.append(item.id)
        self._wakeup.set()

    async def claim(self, worker_id, timeout):
        deadline = time.monotonic() + timeout
        while True:
            self._promote_due()
            item = self._take_next()
            if item is not None:
                item.state = ItemState.ACTIVE
                item.attempts += 1
                item.locked_until = _utcnow() + timedelta(seconds=self.lease_seconds)
                return replace(item)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            waits = [remaining] + [w for w in (self._next_due_in(), self._next_lease_expiry_in()) if w is not None]
            wait = min(waits)

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

    async def heartbeat(self, item):
        stored = self._items.get(item.id)
        if stored is not None and stored.state == ItemState.ACTIVE:
            stored.locked_until = _utcnow() + timedelta(seconds=self.lease_seconds)

    async def reap_expired(self):
        reaped = []
        for stored in self._expired(_utcnow(), exhausted=True):
            stored.state = ItemState.FAILED
            stored.last_error = LEASE_EXPIRED_ERROR
            stored.locked_until = None
            reaped.append(replace(stored))
        return reaped

    async def ack(self, item):
        self._items.pop(item.id, None)

    async def retry(self, item, delay, error):
        stored = self._items.get(item.id)
        if stored is None:
            raise QueueError(f"Queue item {item.id} not found")
        stored.state = ItemState.WAITING
        stored.last_error = error
        stored.locked_until = None
        stored.available_at = _utcnow() + timedelta(seconds=delay)
        self._seq += 1
        heapq.heappush(self._delayed, (time.monotonic() + delay, self._seq, item.id))
        self._wakeup.set()

    async def bury(self, item, error):
        stored = self._items.get(item.id)
        if stored is None:
            raise QueueError(f"Queue item {item.id} not found")
        stored.state = ItemState.FAILED
        stored.last_error = error
        stored.locked_until = None

    async def list_failed(self, limit=100):
        failed = [replace(i) for i in self._items.values() if i.state == ItemState.FAILED]
        return failed[:limit]

    async def requeue_failed(self, item_id):
        stored = self._items.get(item_id)
        if stored is None or stored.state != ItemState.FAILED:
            raise QueueError(f"No failed queue item {item_id}")
        stored.attempts = 0
        stored.last_error = None
        stored.available_at = _utcnow()
        await self.push(stored)
        return replace(stored)

    def pending_count(self) -> int:
        return sum(1 for i in self._items.values() if i.state != ItemState.FAILED)


# ============================================================================
# Supabase-backed queue
# ============================================================================

class SupabaseQueue(ReliableQueue):
    """
    Durable queue in the `job_queue` table. Claims go through the
    `claim_next_queue_item` database function, which locks with
    FOR UPDATE SKIP LOCKED so an item is handed to exactly one worker.
    The claim stamps `locked_until`; heartbeats push it forward.
    """

    def __init__(
        self,
        supabase,
        name: str = "jobs",
        poll_interval: float = 1.0,
        lease_seconds: float = DEFAULT_LEASE_SECONDS
    ):
        self.supabase = supabase
        self.name = name
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds

    def _table(self):
        return self.supabase.table(QUEUE_TABLE)

    async def connect(self):
        self._table().select("id").eq("queue_name", self.name).limit(1).execute()
        logger.info(f"Connected to queue '{self.name}'")

    async def push(self, item):
        row = {
            "id": item.id,
            "queue_name": self.name,
            "job_id": item.job_id,
            "owner_id": item.owner_id,
            "type": item.type,
            "payload": item.payload,
            "attempts": item.attempts,
            "max_attempts": item.max_attempts,
            "state": ItemState.WAITING,
            "available_at": item.available_at.isoformat(),
        }
        try:
            self._table().insert(row).execute()
        except Exception as e:
            raise QueueError(f"Could not stage job {item.job_id}: {e}") from e

    def _claim_once(self, worker_id: str) -> Optional[QueueItem]:
        try:
            result = self.supabase.rpc(
                "claim_next_queue_item",
                {"p_queue_name": self.name, "p_worker_id": worker_id, "p_lease_seconds": self.lease_seconds}
            ).execute()
        except Exception as e:
            logger.error(f"Error claiming queue item: {e}")
            return None

        data = result.data
        if isinstance(data, list):
            data = data[0] if data else None
        return QueueItem.from_row(data) if data else None

    async def claim(self, worker_id, timeout):
        deadline = time.monotonic() + timeout
        while True:
            item = self._claim_once(worker_id)
            if item:
                return item
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    def _update(self, item_id: str, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        data["updated_at"] = _utcnow().isoformat()
        try:
            result = self._table().update(data).eq("id", item_id).execute()
        except Exception as e:
            raise QueueError(f"Could not update queue item {item_id}: {e}") from e
        return result.data or []

    async def ack(self, item):
        try:
            self._table().delete().eq("id", item.id).execute()
        except Exception as e:
            raise QueueError(f"Could not remove queue item {item.id}: {e}") from e

    async def heartbeat(self, item):
        self._update(item.id, {
            "locked_until": (_utcnow() + timedelta(seconds=self.lease_seconds)).isoformat(),
        })

    async def reap_expired(self):
        try:
            result = self.supabase.rpc(
                "reap_expired_queue_items",
                {"p_queue_name": self.name, "p_error": LEASE_EXPIRED_ERROR}
            ).execute()
        except Exception as e:
            raise QueueError(f"Could not reap expired queue items: {e}") from e
        return [QueueItem.from_row(row) for row in result.data or []]

    async def retry(self, item, delay, error):
        self._update(item.id, {
            "state": ItemState.WAITING,
            "last_error": error,
            "locked_until": None,
            "available_at": (_utcnow() + timedelta(seconds=delay)).isoformat(),
        })

    async def bury(self, item, error):
        self._update(item.id, {"state": ItemState.FAILED, "last_error": error, "locked_until": None})

    async def list_failed(self, limit=100):
        result = self._table()\
            .select("*")\
            .eq("queue_name", self.name)\
            .eq("state", ItemState.FAILED)\
            .order("updated_at", desc=True)\
            .limit(limit)\
            .execute()
        return [QueueItem.from_row(row) for row in result.data or []]

    async def requeue_failed(self, item_id):
        rows = self._table()\
            .select("*")\
            .eq("id", item_id)\
            .eq("state", ItemState.FAILED)\
            .limit(1)\
            .execute().data
        if not rows:
            raise QueueError(f"No failed queue item {item_id}")
        updated = self._update(item_id, {
            "state": ItemState.WAITING,
            "attempts": 0,
            "locked_until": None,
            "last_error": None,
            "available_at": _utcnow().isoformat(),
        })
        return QueueItem.from_row(updated[0] if updated else rows[0])


def create_queue(settings, supabase=None) -> ReliableQueue:
    """Build the queue selected by the settings."""
    if settings.queue_backend == "memory":
        return InMemoryQueue(settings.queue_name, settings.lease_seconds)
    if settings.queue_backend == "supabase":
        return SupabaseQueue(supabase, settings.queue_name, settings.worker_poll_interval, settings.lease_seconds)
    raise ValueError(f"Unknown queue backend: {settings.queue_backend}")
