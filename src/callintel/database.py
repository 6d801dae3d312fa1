"""MongoDB database connection and collection management."""

import logging

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from .config import get_settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Manages MongoDB connection and provides access to collections."""

    def __init__(self, uri: str | None = None, database_name: str | None = None):
        """Initialize database connection."""
        settings = get_settings()
        self._uri = uri or settings.mongodb_uri
        self._database_name = database_name or settings.mongodb_database
        self._client: MongoClient | None = None
        self._db: Database | None = None

    @property
    def client(self) -> MongoClient:
        """Get MongoDB client (lazy initialization)."""
        if self._client is None:
            self._client = MongoClient(self._uri, tz_aware=True)
        return self._client

    @property
    def db(self) -> Database:
        """Get the call intelligence database."""
        if self._db is None:
            self._db = self.client[self._database_name]
        return self._db

    @property
    def call_records(self) -> Collection:
        """Get the call_records collection (one document per provider call)."""
        return self.db["call_records"]

    @property
    def qa_pairs(self) -> Collection:
        """Get the qa_pairs collection."""
        return self.db["qa_pairs"]

    @property
    def knowledge_chunks(self) -> Collection:
        """Get the knowledge_chunks collection holding embedded content."""
        return self.db["knowledge_chunks"]

    @property
    def assistants(self) -> Collection:
        """Get the assistants collection (transfer numbers and ownership)."""
        return self.db["assistants"]

    def ensure_indexes(self) -> None:
        """Create the secondary indexes used by range and priority queries."""
        self.call_records.create_index(
            [("assistant_id", ASCENDING), ("created_at", DESCENDING)]
        )
        self.qa_pairs.create_index(
            [("assistant_id", ASCENDING), ("priority", ASCENDING)]
        )
        self.knowledge_chunks.create_index([("assistant_id", ASCENDING)])
        logger.info("MongoDB indexes ensured")

    def close(self) -> None:
        """Close the database connection."""
        if self._client is not None:
            self._client.close()
            self._client = None
            self._db = None


# Global database instance
_db_manager: DatabaseManager | None = None


def get_database() -> DatabaseManager:
    """Get the global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager
