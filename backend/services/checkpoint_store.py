"""
Checkpoint Store - how far a job has progressed, with per-key expiry

Each checkpoint is one document in `job_checkpoints`:
    {"_id": "<worker_name>:checkpoint:<job_id>", "value": "1500", "expires_at": <datetime>}

MongoDB's TTL monitor removes documents once `expires_at` has passed, so abandoned
jobs do not leave checkpoints behind for longer than CHECKPOINT_TTL_SECONDS.
"""
import logging
from datetime import datetime, timezone, timedelta

from pymongo.errors import PyMongoError

from config import CHECKPOINT_TTL_SECONDS

logger = logging.getLogger('checkpoint_store')

COLLECTION = "job_checkpoints"


class CheckpointWriteError(Exception):
    """A checkpoint could not be durably written; the batch must not count as progressed."""


def checkpoint_key(worker_name: str, job_id: str) -> str:
    return f"{worker_name}:checkpoint:{job_id}"


class CheckpointStore:
    def __init__(self, db, ttl_seconds: int = CHECKPOINT_TTL_SECONDS):
        self.collection = db[COLLECTION]
        self.ttl_seconds = ttl_seconds

    async def ensure_indexes(self):
        # expireAfterSeconds=0: each document expires at its own expires_at
        await self.collection.create_index("expires_at", expireAfterSeconds=0)

    async def save(self, worker_name: str, job_id: str, index: int):
        """Overwrite the checkpoint and reset its TTL. Raises CheckpointWriteError."""
        key = checkpoint_key(worker_name, job_id)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.ttl_seconds)
        try:
            await self.collection.update_one(
                {"_id": key},
                {"$set": {"value": str(int(index)), "expires_at": expires_at}},
                upsert=True
            )
        except PyMongoError as e:
            raise CheckpointWriteError(f"Could not save checkpoint {key}={index}: {e}") from e
        logger.debug(f"Checkpoint {key} = {index}")

    async def get(self, worker_name: str, job_id: str) -> int:
        """Stored offset, or 0 when absent or malformed"""
        key = checkpoint_key(worker_name, job_id)
        doc = await self.collection.find_one({"_id": key})
        if not doc:
            return 0

        raw = doc.get("value")
        try:
            index = int(str(raw).strip())
        except (TypeError, ValueError):
            logger.warning(f"Malformed checkpoint {key}={raw!r}, starting from 0")
            return 0

        if index < 0:
            logger.warning(f"Negative checkpoint {key}={index}, starting from 0")
            return 0
        return index

    async def clear(self, worker_name: str, job_id: str):
        """Delete the checkpoint; deleting a missing key is a no-op"""
        await self.collection.delete_one({"_id": checkpoint_key(worker_name, job_id)})
