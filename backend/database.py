"""
Database module for the Lead Import Worker
Provides the MongoDB client with an explicit open/close lifecycle
"""
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from config import MONGO_URL, DB_NAME
import logging

logger = logging.getLogger(__name__)


class Database:
    """Owns one AsyncIOMotorClient. Workers receive `db` instead of importing a global."""

    def __init__(self, mongo_url: str = MONGO_URL, db_name: str = DB_NAME):
        self.mongo_url = mongo_url
        self.db_name = db_name
        self.client: Optional[AsyncIOMotorClient] = None

    def open(self) -> AsyncIOMotorDatabase:
        if self.client is None:
            self.client = AsyncIOMotorClient(self.mongo_url)
            logger.info(f"✅ Connected to database: {self.db_name}")
        return self.client[self.db_name]

    @property
    def db(self) -> AsyncIOMotorDatabase:
        if self.client is None:
            raise RuntimeError("Database is not open")
        return self.client[self.db_name]

    def close(self):
        """Close database connection"""
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info(f"Closed database connection: {self.db_name}")


async def ensure_indexes(db):
    """Create indexes for the collections the workers touch"""
    from services.checkpoint_store import CheckpointStore
    from services.job_queue import JobQueue

    try:
        await db.leads.create_index("clinicId")
        await db.leads.create_index("phone")
        await db.leads.create_index([("created_at", -1)])

        await db.templates.create_index(
            [("clinic_id", 1), ("unique_name", 1), ("language", 1)]
        )

        await CheckpointStore(db).ensure_indexes()
        await JobQueue.ensure_indexes(db)

        logger.info("✅ Database indexes created successfully")
    except Exception as e:
        logger.warning(f"⚠️ Error creating indexes (may already exist): {e}")
