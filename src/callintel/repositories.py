"""MongoDB repositories for call records, Q&A pairs, assistants and knowledge chunks."""

import logging
from datetime import datetime
from typing import Any

from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from .models import CallRecord, CallStatus, QAPair, utc_now

logger = logging.getLogger(__name__)


class CallRecordRepository:
    """Stores one CallRecord document per external call id.

    Writes are compare-and-set on the ``version`` field so that two writers
    racing on the same call never silently overwrite each other.
    """

    def __init__(self, collection: Collection) -> None:
        self._collection = collection

    def get(self, external_call_id: str) -> CallRecord | None:
        """Load a record by its provider call id."""
        doc = self._collection.find_one({"_id": external_call_id})
        if not doc:
            return None
        return CallRecord.from_dict(doc)

    def save(self, record: CallRecord, expected_version: int) -> bool:
        """Insert or update a record if nobody changed it in the meantime.

        Args:
            record: Record to persist
            expected_version: Version read before mutation (0 for a new record)

        Returns:
            True if the write was applied, False on a version conflict
        """
        new_version = expected_version + 1
        doc = record.to_dict()
        doc["version"] = new_version

        if expected_version == 0:
            try:
                self._collection.insert_one(doc)
            except DuplicateKeyError:
                logger.debug(f"Insert conflict for call {record.external_call_id}")
                return False
        else:
            result = self._collection.replace_one(
                {"_id": record.external_call_id, "version": expected_version},
                doc,
            )
            if result.matched_count == 0:
                logger.debug(f"Version conflict for call {record.external_call_id}")
                return False

        record.version = new_version
        return True

    def update_summary(self, external_call_id: str, summary: str) -> bool:
        """Set a call's summary outside the event flow.

        Bumps ``version`` so a concurrent compare-and-set writer retries
        against the new summary instead of overwriting it.

        Returns:
            True if the call exists
        """
        result = self._collection.update_one(
            {"_id": external_call_id},
            {"$set": {"summary": summary, "updated_at": utc_now()}, "$inc": {"version": 1}},
        )
        return result.matched_count > 0

    def find_in_range(
        self,
        assistant_ids: list[str],
        start: datetime,
        end: datetime,
    ) -> list[CallRecord]:
        """Get all records for the assistants created within [start, end]."""
        query = {
            "assistant_id": {"$in": assistant_ids},
            "created_at": {"$gte": start, "$lte": end},
        }
        cursor = self._collection.find(query).sort("created_at", ASCENDING)
        return [CallRecord.from_dict(doc) for doc in cursor]

    def list_calls(
        self,
        assistant_ids: list[str],
        status: CallStatus | None = None,
        lead_only: bool = False,
        since: datetime | None = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[CallRecord], int]:
        """Get a page of call records, newest first, with the total count."""
        query: dict[str, Any] = {"assistant_id": {"$in": assistant_ids}}
        if status is not None:
            query["status"] = status.value
        if lead_only:
            query["derived.lead_captured"] = True
        if since is not None:
            query["created_at"] = {"$gte": since}

        total = self._collection.count_documents(query)
        cursor = (
            self._collection.find(query)
            .sort("created_at", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        return [CallRecord.from_dict(doc) for doc in cursor], total


class QAPairRepository:
    """Read and create an assistant's Q&A overrides."""

    def __init__(self, collection: Collection) -> None:
        self._collection = collection

    def list_for_assistant(self, assistant_id: str) -> list[QAPair]:
        """Get the assistant's pairs, lowest priority value first."""
        cursor = self._collection.find({"assistant_id": assistant_id}).sort(
            [("priority", ASCENDING), ("_id", ASCENDING)]
        )
        return [QAPair.from_dict(doc) for doc in cursor]

    def add_many(self, pairs: list[QAPair]) -> int:
        """Insert pairs and return how many were stored."""
        if not pairs:
            return 0
        result = self._collection.insert_many([p.to_dict() for p in pairs])
        return len(result.inserted_ids)


class AssistantRepository:
    """Lookups against assistant configuration documents."""

    def __init__(self, collection: Collection) -> None:
        self._collection = collection

    def get_transfer_number(self, assistant_id: str) -> str | None:
        """Get the human transfer phone number configured for an assistant."""
        doc = self._collection.find_one(
            {"_id": assistant_id}, {"transfer_phone_number": 1}
        )
        if not doc:
            return None
        return doc.get("transfer_phone_number") or None


class KnowledgeChunkRepository:
    """Read access to an assistant's stored knowledge chunks."""

    def __init__(self, collection: Collection) -> None:
        self._collection = collection

    def combined_content(self, assistant_id: str) -> tuple[str, int]:
        """Get the assistant's knowledge base text and its chunk count.

        Chunks are joined in document order with blank lines, the same
        separator ingestion splits on.
        """
        cursor = self._collection.find(
            {"assistant_id": assistant_id}, {"content": 1, "chunk_index": 1}
        ).sort("chunk_index", ASCENDING)
        contents = [doc.get("content", "") for doc in cursor]
        return "\n\n".join(contents), len(contents)
