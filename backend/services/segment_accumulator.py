"""
Segment Accumulator - batches "add lead to segment" into few $addToSet updates

$addToSet with $each is additive and idempotent: ids already in the segment's
`leads` array are no-ops, so repeated or concurrent flushes (two imports into
the same segment) are safe without locking.
"""
import logging
from typing import Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from config import SEGMENT_FLUSH_THRESHOLD

logger = logging.getLogger('segment_accumulator')


def segment_filter(segment_id: str) -> dict:
    """Segments are created by the app with ObjectId keys; fall back to the raw string"""
    try:
        return {"_id": ObjectId(segment_id)}
    except (InvalidId, TypeError):
        return {"_id": segment_id}


class SegmentAccumulator:
    def __init__(self, db, segment_id: str, threshold: int = SEGMENT_FLUSH_THRESHOLD):
        self.segments = db.segments
        self.segment_id = segment_id
        self.threshold = threshold
        self.buffer: List = []
        self.flushed = 0
        self.failed_flushes = 0
        # buffer size at which should_flush turns true; pushed out after a failed flush
        self.flush_at = threshold

    def accumulate(self, lead_id):
        self.buffer.append(lead_id)

    def extend(self, lead_ids: Iterable):
        self.buffer.extend(lead_ids)

    @property
    def should_flush(self) -> bool:
        return len(self.buffer) >= self.flush_at

    async def flush(self) -> bool:
        """
        Merge buffered ids into the segment in one update.

        A failure is logged and never raised: the leads are already persisted.
        The buffer is kept on failure and should_flush stays false until another
        `threshold` ids have been buffered; an explicit flush() always retries.
        """
        if not self.buffer:
            return True

        ids = list(self.buffer)
        try:
            await self.segments.update_one(
                segment_filter(self.segment_id),
                {"$addToSet": {"leads": {"$each": ids}}}
            )
        except PyMongoError as e:
            self.failed_flushes += 1
            self.flush_at = len(ids) + self.threshold
            logger.error(
                f"Segment {self.segment_id}: failed to add {len(ids)} leads, "
                f"retrying at {self.flush_at} buffered: {e}"
            )
            return False

        # ids accumulated while the update was in flight stay buffered
        del self.buffer[:len(ids)]
        self.flushed += len(ids)
        self.flush_at = self.threshold
        logger.info(f"Segment {self.segment_id}: added {len(ids)} leads ({self.flushed} total)")
        return True

    async def resolve_segment_name(self) -> Optional[str]:
        try:
            segment = await self.segments.find_one(
                segment_filter(self.segment_id), {"name": 1}
            )
        except PyMongoError as e:
            logger.warning(f"Could not read segment {self.segment_id}: {e}")
            return None
        return segment.get("name") if segment else None
