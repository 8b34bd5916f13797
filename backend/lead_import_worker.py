"""
Lead Import Worker - Checkpointed Background Processor

This worker is driven by the scheduler_worker.py harness.
It processes "import-leads" jobs with:
- Bounded batches of BATCH_SIZE records (unordered bulk insert)
- Record-by-record fallback so one bad lead never blocks its batch
- Durable checkpoints every CHECKPOINT_EVERY batches (resume after restart)
- Incremental segment membership via $addToSet
- A cooperative yield every YIELD_EVERY batches, where cancellation is checked

Architecture:
- Checkpoint key: "import-leads:checkpoint:<job_id>", 7 day TTL
- Insertion is at-least-once: records after the last checkpoint are inserted
  again when a job is redelivered. Segment membership is deduplicated.
"""

import asyncio
import logging
import traceback
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from config import (
    CHECKPOINT_EVERY_BATCHES,
    IMPORT_BATCH_SIZE,
    SEGMENT_FLUSH_THRESHOLD,
    YIELD_EVERY_BATCHES,
)
from models.schemas import ImportJobPayload, ImportSummary, JobOutcome
from services.checkpoint_store import CheckpointStore, CheckpointWriteError
from services.segment_accumulator import SegmentAccumulator
from utils.lead_helpers import lead_identity

# Configure logging
logger = logging.getLogger('lead_import_worker')

# Configuration
WORKER_NAME = "import-leads"
BATCH_SIZE = IMPORT_BATCH_SIZE
CHECKPOINT_EVERY = CHECKPOINT_EVERY_BATCHES
YIELD_EVERY = YIELD_EVERY_BATCHES


class JobCancelled(Exception):
    pass


def _already_inserted(error: DuplicateKeyError) -> bool:
    """A duplicate on _id means an earlier attempt already stored this exact document"""
    details = error.details or {}
    return "_id" in (details.get("keyPattern") or {})


class LeadImportWorker:
    def __init__(
        self,
        db,
        checkpoints: Optional[CheckpointStore] = None,
        batch_size: int = BATCH_SIZE,
        checkpoint_every: int = CHECKPOINT_EVERY,
        yield_every: int = YIELD_EVERY,
        segment_flush_threshold: int = SEGMENT_FLUSH_THRESHOLD
    ):
        self.db = db
        self.leads = db.leads
        self.checkpoints = checkpoints or CheckpointStore(db)
        self.batch_size = batch_size
        self.checkpoint_every = checkpoint_every
        self.yield_every = yield_every
        self.segment_flush_threshold = segment_flush_threshold

    # =========================================================================
    # INSERTION
    # =========================================================================

    async def insert_batch(self, batch: List[dict]) -> Tuple[List, int]:
        """
        Insert one batch. Returns (inserted_ids, failed_count).

        insert_many assigns `_id` to every document before sending, so after a
        BulkWriteError the ids of the records that did not fail are known.
        """
        try:
            result = await self.leads.insert_many(batch, ordered=False)
            return list(result.inserted_ids), 0
        except BulkWriteError as e:
            write_errors = (e.details or {}).get("writeErrors") or []
            failed_indexes = {err.get("index") for err in write_errors}

            if write_errors and None not in failed_indexes:
                for err in write_errors:
                    lead = batch[err["index"]]
                    logger.warning(f"Lead {lead_identity(lead)} not imported: {err.get('errmsg')}")
                inserted = [
                    doc["_id"] for index, doc in enumerate(batch)
                    if index not in failed_indexes and "_id" in doc
                ]
                return inserted, len(failed_indexes)

            logger.warning(f"Bulk insert reported no per-record errors ({e}), inserting one by one")
        except PyMongoError as e:
            logger.warning(f"Bulk insert of {len(batch)} leads failed ({e}), inserting one by one")

        return await self.insert_one_by_one(batch)

    async def insert_one_by_one(self, batch: List[dict]) -> Tuple[List, int]:
        inserted = []
        failed = 0
        for lead in batch:
            try:
                result = await self.leads.insert_one(lead)
                inserted.append(result.inserted_id)
            except DuplicateKeyError as e:
                if _already_inserted(e):
                    inserted.append(lead["_id"])
                    continue
                failed += 1
                logger.warning(f"Lead {lead_identity(lead)} not imported: {e}")
            except PyMongoError as e:
                failed += 1
                logger.warning(f"Lead {lead_identity(lead)} not imported: {e}")
        return inserted, failed

    # =========================================================================
    # JOB
    # =========================================================================

    async def cooperative_yield(self):
        """Hand control back to the event loop so other scheduled work can run"""
        await asyncio.sleep(0)

    async def report_progress(self, job_id: str, heartbeat, progress: Dict):
        """Progress reporting is best effort: a failed heartbeat never stops the import"""
        if not heartbeat:
            return
        try:
            await heartbeat(progress)
        except PyMongoError as e:
            logger.warning(f"Job {job_id}: heartbeat not recorded: {e}")

    async def cancel_requested(self, job_id: str, is_cancelled) -> bool:
        if not is_cancelled:
            return False
        try:
            return await is_cancelled()
        except PyMongoError as e:
            logger.warning(f"Job {job_id}: could not read cancellation flag, continuing: {e}")
            return False

    async def run(
        self,
        job_id: str,
        payload: ImportJobPayload,
        is_cancelled: Optional[Callable[[], Awaitable[bool]]] = None,
        heartbeat: Optional[Callable[[Dict], Awaitable[None]]] = None,
        clear_checkpoint: bool = True
    ) -> JobOutcome:
        """Drive one job to a terminal outcome. Never raises."""
        try:
            summary = await self.import_leads(job_id, payload, is_cancelled, heartbeat, clear_checkpoint)
        except JobCancelled as e:
            logger.info(f"Job {job_id} was cancelled: {e}")
            return JobOutcome.failure(str(e), cancelled=True)
        except CheckpointWriteError as e:
            logger.error(f"Job {job_id} aborted, progress not durable: {e}")
            return JobOutcome.failure(f"CheckpointWriteError: {e}")
        except Exception as e:
            error_msg = f"{type(e).__name__}: {str(e)}"
            logger.error(f"Job {job_id} failed: {error_msg}")
            logger.error(traceback.format_exc())
            return JobOutcome.failure(error_msg)

        return JobOutcome.success(summary)

    async def import_leads(
        self,
        job_id: str,
        payload: ImportJobPayload,
        is_cancelled: Optional[Callable[[], Awaitable[bool]]] = None,
        heartbeat: Optional[Callable[[Dict], Awaitable[None]]] = None,
        clear_checkpoint: bool = True
    ) -> ImportSummary:
        """
        Import the payload from its checkpoint on.

        With clear_checkpoint=False the final checkpoint (== total) is left in
        place for the caller to clear once completion has been recorded.
        """
        leads = payload.leads_to_insert
        total = len(leads)
        summary = ImportSummary(total_processed=total, segment_id=payload.segment_id)

        if total == 0:
            logger.info(f"Job {job_id}: nothing to import")
            await self.checkpoints.clear(WORKER_NAME, job_id)
            return summary

        start = await self.checkpoints.get(WORKER_NAME, job_id)
        if start >= total:
            logger.warning(f"Job {job_id}: checkpoint {start} is past the payload ({total} leads), restarting from 0")
            start = 0
        elif start > 0:
            logger.info(f"Job {job_id}: resuming from lead {start}/{total}")
        summary.resumed_from = start

        accumulator = None
        if payload.segment_id:
            accumulator = SegmentAccumulator(self.db, payload.segment_id, self.segment_flush_threshold)

        logger.info(f"Job {job_id}: {total - start} leads to import in batches of {self.batch_size}")

        batch_number = 0
        try:
            for i in range(start, total, self.batch_size):
                batch_number += 1
                end = min(i + self.batch_size, total)
                batch = [lead.to_document() for lead in leads[i:end]]

                inserted_ids, failed = await self.insert_batch(batch)
                summary.total_inserted += len(inserted_ids)
                summary.total_failed += failed

                if accumulator:
                    accumulator.extend(inserted_ids)
                    if accumulator.should_flush:
                        await accumulator.flush()

                is_last = end >= total
                progress = {
                    "processed": end,
                    "total": total,
                    "inserted": summary.total_inserted,
                    "failed": summary.total_failed,
                    "progress_percent": int(end / total * 100)
                }

                if batch_number % self.checkpoint_every == 0 or is_last:
                    await self.checkpoints.save(WORKER_NAME, job_id, end)
                    logger.info(f"Job {job_id}: {end}/{total} ({progress['progress_percent']}%)")
                    await self.report_progress(job_id, heartbeat, progress)

                if batch_number % self.yield_every == 0:
                    await self.cooperative_yield()
                    await self.report_progress(job_id, heartbeat, progress)
                    if not is_last and await self.cancel_requested(job_id, is_cancelled):
                        await self.checkpoints.save(WORKER_NAME, job_id, end)
                        raise JobCancelled(f"stopped after {end}/{total} leads")
        except Exception:
            # Whatever stopped the attempt, the leads stored so far keep their segment membership
            if accumulator:
                await accumulator.flush()
            raise

        if accumulator:
            await accumulator.flush()
            if accumulator.buffer:
                logger.error(
                    f"Job {job_id}: {len(accumulator.buffer)} leads could not be added "
                    f"to segment {payload.segment_id}"
                )
            summary.segment_name = await accumulator.resolve_segment_name()

        if clear_checkpoint:
            await self.checkpoints.clear(WORKER_NAME, job_id)

        logger.info(
            f"Job {job_id} completed: {summary.total_inserted}/{total} inserted, "
            f"{summary.total_failed} failed"
        )
        return summary


async def process_job(db, queue, job: dict) -> JobOutcome:
    """Run one claimed queue job and settle it on the queue."""
    job_id = job["job_id"]
    logger.info(f"Starting job {job_id} (attempt {job.get('attempts', 1)})")

    try:
        payload = ImportJobPayload.model_validate(job.get("payload") or {})
    except ValidationError as e:
        outcome = JobOutcome.failure(f"Invalid payload: {e}")
        await queue.settle(job_id, outcome, retry=False)
        return outcome

    checkpoints = CheckpointStore(db)
    total = len(payload.leads_to_insert)

    if total and await checkpoints.get(WORKER_NAME, job_id) >= total:
        # An earlier attempt stored every batch but its completion was never recorded
        logger.info(f"Job {job_id}: all {total} leads already imported, recording completion")
        outcome = JobOutcome.success(ImportSummary(
            total_processed=total,
            resumed_from=total,
            segment_id=payload.segment_id
        ))
    else:
        worker = LeadImportWorker(db, checkpoints)
        outcome = await worker.run(
            job_id,
            payload,
            is_cancelled=lambda: queue.is_cancelled(job_id),
            heartbeat=lambda progress: queue.heartbeat(job_id, progress),
            clear_checkpoint=False
        )

    await queue.settle(job_id, outcome)

    if outcome.ok:
        try:
            await checkpoints.clear(WORKER_NAME, job_id)
        except PyMongoError as e:
            logger.warning(f"Job {job_id}: checkpoint left for TTL expiry: {e}")
    return outcome
