"""
Background Worker - Consumes the import job queues
Uses APScheduler to poll each queue in the background

Each job type gets its own interval job with max_instances=1, so only one job
of a given type runs at a time in this process. Within a tick the queue is
drained one job after another; the queue's admission limiter spaces job starts.
"""
import logging
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

import lead_import_worker
from config import QUEUE_POLL_SECONDS
from models.schemas import ImportJobPayload, JobOutcome, TemplateSyncPayload
from services import template_sync_worker
from services.job_queue import JobQueue, STATUS_ACTIVE

logger = logging.getLogger("scheduler_worker")

JobHandler = Callable[..., Awaitable[JobOutcome]]


async def drain_queue(db, queue: JobQueue, handler: JobHandler, max_jobs: Optional[int] = None) -> int:
    """
    Recover orphaned jobs, then process queued jobs one at a time.

    Returns the number of jobs processed. Errors never escape a tick.
    """
    processed = 0
    try:
        recovered = await queue.recover_orphaned()
        if recovered:
            logger.info(f"{queue.name}: redelivering {recovered} orphaned job(s)")

        while max_jobs is None or processed < max_jobs:
            job = await queue.claim_next()
            if not job:
                break

            logger.info(f"{queue.name}: Processing job {job['job_id']}")
            try:
                await handler(db, queue, job)
            except Exception as e:
                logger.error(f"{queue.name}: job {job['job_id']} escaped its handler: {e}")
                current = await queue.get(job["job_id"])
                if current and current.get("status") == STATUS_ACTIVE:
                    await queue.fail(job["job_id"], f"{type(e).__name__}: {e}")
                else:
                    logger.info(f"{queue.name}: job {job['job_id']} already settled as {(current or {}).get('status')}")
            processed += 1

    except Exception as e:
        logger.error(f"{queue.name} worker error: {e}")
        import traceback
        logger.error(traceback.format_exc())

    return processed


class WorkerScheduler:
    """Owns the APScheduler instance and one JobQueue per job type."""

    def __init__(self, db, poll_seconds: int = QUEUE_POLL_SECONDS):
        self.db = db
        self.poll_seconds = poll_seconds
        self.scheduler = AsyncIOScheduler()
        self.queues: Dict[str, JobQueue] = {
            lead_import_worker.WORKER_NAME: JobQueue(
                db, lead_import_worker.WORKER_NAME, payload_model=ImportJobPayload
            ),
            template_sync_worker.QUEUE_NAME: JobQueue(
                db, template_sync_worker.QUEUE_NAME, payload_model=TemplateSyncPayload
            ),
        }
        self.handlers: Dict[str, JobHandler] = {
            lead_import_worker.WORKER_NAME: lead_import_worker.process_job,
            template_sync_worker.QUEUE_NAME: template_sync_worker.process_job,
        }

    def queue(self, name: str) -> JobQueue:
        return self.queues[name]

    async def process_lead_import_jobs(self) -> int:
        """Process lead import jobs - called every poll interval"""
        name = lead_import_worker.WORKER_NAME
        return await drain_queue(self.db, self.queues[name], self.handlers[name])

    async def process_template_sync_jobs(self) -> int:
        """Process WhatsApp template sync jobs - called every poll interval"""
        name = template_sync_worker.QUEUE_NAME
        return await drain_queue(self.db, self.queues[name], self.handlers[name])

    def start(self):
        """Start the background scheduler"""
        if self.scheduler.running:
            logger.info("Scheduler already running")
            return

        self.scheduler.add_job(
            self.process_lead_import_jobs,
            trigger=IntervalTrigger(seconds=self.poll_seconds),
            id="lead_import_worker",
            name="Lead Import Worker",
            replace_existing=True,
            max_instances=1  # Ensure only one instance runs at a time
        )

        self.scheduler.add_job(
            self.process_template_sync_jobs,
            trigger=IntervalTrigger(seconds=self.poll_seconds),
            id="template_sync_worker",
            name="WhatsApp Template Sync Worker",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        logger.info(f"Background scheduler started - polling every {self.poll_seconds}s")

    def stop(self):
        """Stop the background scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Background scheduler stopped")

    def info(self) -> dict:
        """Get info about the scheduler for debugging"""
        jobs = self.scheduler.get_jobs()
        return {
            "running": self.scheduler.running,
            "jobs": [
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": str(job.next_run_time) if job.next_run_time else None
                }
                for job in jobs
            ]
        }
