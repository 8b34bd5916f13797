"""
Job Queue - durable MongoDB-backed queue for background import jobs

This queue handles:
- Enqueueing validated job payloads (returns immediately with a handle)
- Handing out one job at a time per queue name (FIFO)
- Admission throttling: at most one job start per ADMISSION_INTERVAL_SECONDS
- Heartbeats and orphaned job recovery (redelivery after a worker died)
- Automatic retries with backoff, then a terminal "failed" state
- Lifecycle events: completed(job_id, result) and failed(job_id, error)

Architecture:
- Jobs live in the `import_jobs` collection
- Claiming uses atomic find_one_and_update to prevent two consumers taking a job
- Finished jobs carry `expires_at` and are removed by a TTL index
"""

import asyncio
import inspect
import logging
import os
import time
import uuid
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel
from pymongo import ReturnDocument

from config import (
    ADMISSION_INTERVAL_SECONDS,
    COMPLETED_JOB_TTL_SECONDS,
    FAILED_JOB_TTL_SECONDS,
    MAX_JOB_ATTEMPTS,
    ORPHAN_TIMEOUT_SECONDS,
)
from models.schemas import JobHandle, JobOutcome

logger = logging.getLogger('job_queue')

COLLECTION = "import_jobs"
WORKER_ID = f"worker_{os.getpid()}"

# Job statuses
STATUS_QUEUED = "queued"
STATUS_ACTIVE = "active"
STATUS_PENDING_RETRY = "pending_retry"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

# Retry backoff delays (in seconds), keyed by the attempt that just failed
RETRY_BACKOFF = {
    1: 60,      # 1st retry after 1 minute
    2: 300,     # 2nd retry after 5 minutes
}

EVENTS = ("completed", "failed")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AdmissionLimiter:
    """Caps job starts to one per `interval` seconds; does not limit in-flight work."""

    def __init__(
        self,
        interval: float = ADMISSION_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable = asyncio.sleep
    ):
        self.interval = interval
        self.clock = clock
        self.sleep = sleep
        self._last_start: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            if self._last_start is not None:
                wait = self._last_start + self.interval - self.clock()
                if wait > 0:
                    await self.sleep(wait)
            self._last_start = self.clock()


class JobQueue:
    def __init__(
        self,
        db,
        name: str,
        payload_model: Optional[Type[BaseModel]] = None,
        max_attempts: int = MAX_JOB_ATTEMPTS,
        limiter: Optional[AdmissionLimiter] = None,
        orphan_timeout: int = ORPHAN_TIMEOUT_SECONDS
    ):
        self.jobs = db[COLLECTION]
        self.name = name
        self.payload_model = payload_model
        self.max_attempts = max_attempts
        self.limiter = limiter or AdmissionLimiter()
        self.orphan_timeout = orphan_timeout
        self._listeners: Dict[str, List[Callable]] = {event: [] for event in EVENTS}

    @staticmethod
    async def ensure_indexes(db):
        jobs = db[COLLECTION]
        await jobs.create_index("job_id", unique=True)
        await jobs.create_index([("name", 1), ("status", 1), ("created_at", 1)])
        await jobs.create_index([("status", 1), ("heartbeat_at", 1)])
        await jobs.create_index("expires_at", expireAfterSeconds=0)

    # =========================================================================
    # EVENTS
    # =========================================================================

    def on(self, event: str, callback: Callable):
        if event not in self._listeners:
            raise ValueError(f"Unknown job event: {event}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, *args):
        for callback in self._listeners[event]:
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[{self.name}] '{event}' listener {callback!r} raised: {e}")

    # =========================================================================
    # PRODUCER SIDE
    # =========================================================================

    async def enqueue(self, payload: Dict[str, Any]) -> JobHandle:
        """
        Validate the payload and store a new queued job.

        Raises pydantic.ValidationError for a malformed payload, before any job exists.
        """
        if self.payload_model is not None:
            payload = self.payload_model.model_validate(payload).model_dump()

        job_id = str(uuid.uuid4())
        now = _now().isoformat()

        await self.jobs.insert_one({
            "job_id": job_id,
            "name": self.name,
            "payload": payload,
            "status": STATUS_QUEUED,
            "attempts": 0,
            "max_attempts": self.max_attempts,
            "created_at": now,
            "started_at": None,
            "finished_at": None,
            "heartbeat_at": None,
            "worker_id": None,
            "result": None,
            "error": None
        })

        logger.info(f"[{self.name}] Enqueued job {job_id}")
        return JobHandle(job_id=job_id, name=self.name)

    async def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self.jobs.find_one({"job_id": job_id}, {"_id": 0, "payload": 0})

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued or active job.

        An active job notices at its next cooperative yield point.
        Returns True if the job was cancellable.
        """
        result = await self.jobs.update_one(
            {
                "job_id": job_id,
                "status": {"$in": [STATUS_QUEUED, STATUS_PENDING_RETRY, STATUS_ACTIVE]}
            },
            {"$set": {"cancel_requested": True}}
        )
        if result.modified_count == 0:
            return False

        # Not started yet: cancel right away
        await self.jobs.update_one(
            {"job_id": job_id, "status": {"$in": [STATUS_QUEUED, STATUS_PENDING_RETRY]}},
            {"$set": {
                "status": STATUS_CANCELLED,
                "finished_at": _now().isoformat(),
                "expires_at": _now() + timedelta(seconds=FAILED_JOB_TTL_SECONDS)
            }}
        )
        logger.info(f"[{self.name}] Cancellation requested for job {job_id}")
        return True

    # =========================================================================
    # CONSUMER SIDE
    # =========================================================================

    async def claim_next(self) -> Optional[Dict[str, Any]]:
        """Atomically take the oldest runnable job, respecting retry backoff and admission"""
        await self.limiter.acquire()

        now_str = _now().isoformat()
        return await self.jobs.find_one_and_update(
            {
                "name": self.name,
                "$or": [
                    {"status": STATUS_QUEUED},
                    {
                        "status": STATUS_PENDING_RETRY,
                        "$or": [
                            {"retry_after": {"$lt": now_str}},
                            {"retry_after": {"$exists": False}}
                        ]
                    }
                ]
            },
            {
                "$set": {
                    "status": STATUS_ACTIVE,
                    "started_at": now_str,
                    "heartbeat_at": now_str,
                    "worker_id": WORKER_ID
                },
                "$inc": {"attempts": 1}
            },
            sort=[("created_at", 1)],  # FIFO
            return_document=ReturnDocument.AFTER
        )

    async def heartbeat(self, job_id: str, progress: Optional[Dict[str, Any]] = None):
        """Update job heartbeat and progress"""
        update = {"heartbeat_at": _now().isoformat(), "worker_id": WORKER_ID}
        if progress:
            update["progress"] = progress
        await self.jobs.update_one({"job_id": job_id}, {"$set": update})

    async def is_cancelled(self, job_id: str) -> bool:
        job = await self.jobs.find_one({"job_id": job_id}, {"cancel_requested": 1, "status": 1})
        if not job:
            return True
        return bool(job.get("cancel_requested")) or job.get("status") == STATUS_CANCELLED

    async def recover_orphaned(self) -> int:
        """Redeliver active jobs whose worker stopped sending heartbeats"""
        cutoff = (_now() - timedelta(seconds=self.orphan_timeout)).isoformat()

        orphaned = await self.jobs.find({
            "name": self.name,
            "status": STATUS_ACTIVE,
            "$or": [
                {"heartbeat_at": {"$lt": cutoff}},
                {"heartbeat_at": None}
            ]
        }).to_list(100)

        for job in orphaned:
            job_id = job["job_id"]
            logger.warning(f"[{self.name}] Job {job_id} lost its worker ({job.get('worker_id')})")
            await self.fail(job_id, f"Worker {job.get('worker_id')} died or timed out")

        return len(orphaned)

    # =========================================================================
    # TERMINAL TRANSITIONS
    # =========================================================================

    async def complete(self, job_id: str, result: Dict[str, Any]):
        now = _now()
        await self.jobs.update_one(
            {"job_id": job_id},
            {"$set": {
                "status": STATUS_COMPLETED,
                "result": result,
                "error": None,
                "finished_at": now.isoformat(),
                "expires_at": now + timedelta(seconds=COMPLETED_JOB_TTL_SECONDS)
            }}
        )
        logger.info(f"[{self.name}] Job {job_id} completed: {result}")
        await self._emit("completed", job_id, result)

    async def fail(self, job_id: str, error: str, retry: bool = True) -> str:
        """
        Record a failed attempt.

        Schedules a retry with backoff while attempts remain, otherwise the job
        becomes "failed" and the failed event fires. Returns the new status.
        """
        job = await self.jobs.find_one({"job_id": job_id}, {"attempts": 1, "cancel_requested": 1})
        attempts = (job or {}).get("attempts", 0)
        now = _now()

        if retry and attempts < self.max_attempts and not (job or {}).get("cancel_requested"):
            backoff_seconds = RETRY_BACKOFF.get(attempts, 300)
            retry_after = now + timedelta(seconds=backoff_seconds)
            await self.jobs.update_one(
                {"job_id": job_id},
                {
                    "$set": {
                        "status": STATUS_PENDING_RETRY,
                        "error": error[:500],
                        "retry_after": retry_after.isoformat(),
                        "worker_id": None
                    },
                    "$push": {"attempt_history": {
                        "attempt": attempts,
                        "failed_at": now.isoformat(),
                        "error": error[:500],
                        "worker_id": WORKER_ID
                    }}
                }
            )
            logger.info(f"[{self.name}] Job {job_id} set to retry after {backoff_seconds}s (attempt {attempts})")
            return STATUS_PENDING_RETRY

        await self.jobs.update_one(
            {"job_id": job_id},
            {
                "$set": {
                    "status": STATUS_FAILED,
                    "error": error[:500],
                    "finished_at": now.isoformat(),
                    "expires_at": now + timedelta(seconds=FAILED_JOB_TTL_SECONDS)
                },
                "$push": {"attempt_history": {
                    "attempt": attempts,
                    "failed_at": now.isoformat(),
                    "error": error[:500],
                    "worker_id": WORKER_ID
                }}
            }
        )
        logger.error(f"[{self.name}] Job {job_id} failed after {attempts} attempt(s): {error}")
        await self._emit("failed", job_id, error)
        return STATUS_FAILED

    async def mark_cancelled(self, job_id: str, reason: str = "cancelled"):
        now = _now()
        await self.jobs.update_one(
            {"job_id": job_id},
            {"$set": {
                "status": STATUS_CANCELLED,
                "error": reason,
                "finished_at": now.isoformat(),
                "expires_at": now + timedelta(seconds=FAILED_JOB_TTL_SECONDS)
            }}
        )
        logger.info(f"[{self.name}] Job {job_id} cancelled")

    async def settle(self, job_id: str, outcome: JobOutcome, retry: bool = True):
        """Move a job to the state its outcome calls for; every outcome is observable"""
        if outcome.ok:
            await self.complete(job_id, outcome.summary or {})
        elif outcome.cancelled:
            await self.mark_cancelled(job_id, outcome.error or "cancelled")
        else:
            await self.fail(job_id, outcome.error or "unknown error", retry=retry)
