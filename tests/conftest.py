"""Shared fixtures and in-memory fakes for the test suite."""

import copy
from datetime import datetime, timezone

import pytest

from callintel.call_tracker import CallLifecycleTracker
from callintel.models import CallRecord, QAPair
from callintel.vector_search import SearchResult

# A Monday
FIXED_NOW = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


class InMemoryCallStore:
    """CallRecordStore keeping documents in a dict, with injectable conflicts."""

    def __init__(self):
        self.docs: dict[str, dict] = {}
        self.conflicts = 0
        self.saves = 0

    def get(self, external_call_id):
        doc = self.docs.get(external_call_id)
        if doc is None:
            return None
        return CallRecord.from_dict(copy.deepcopy(doc))

    def save(self, record, expected_version):
        if self.conflicts:
            self.conflicts -= 1
            return False
        current = self.docs.get(record.external_call_id)
        current_version = current["version"] if current else 0
        if current_version != expected_version:
            return False
        doc = record.to_dict()
        doc["version"] = expected_version + 1
        self.docs[record.external_call_id] = copy.deepcopy(doc)
        record.version = expected_version + 1
        self.saves += 1
        return True


class InMemoryQAPairs:
    """QAPairSource returning pairs in insertion order."""

    def __init__(self, pairs=None):
        self.pairs = list(pairs or [])

    def list_for_assistant(self, assistant_id):
        return [p for p in self.pairs if p.assistant_id == assistant_id]


class FakeSemanticSearch:
    """SemanticSearch returning canned results."""

    def __init__(self, results=None, embed_error=None):
        self.results = list(results or [])
        self.embed_error = embed_error
        self.queries = []
        self.search_args = []

    async def embed_text(self, text):
        self.queries.append(text)
        if self.embed_error:
            raise self.embed_error
        return [0.1, 0.2, 0.3]

    async def search_knowledge(self, assistant_id, query_vector, threshold, limit):
        self.search_args.append((assistant_id, threshold, limit))
        return list(self.results)


def make_pair(pair_id, question, answer, priority=1, assistant_id="asst-1"):
    return QAPair(
        id=pair_id,
        assistant_id=assistant_id,
        question=question,
        answer=answer,
        priority=priority,
    )


def make_result(content, score):
    return SearchResult(content=content, metadata={}, score=score)


@pytest.fixture
def call_store():
    return InMemoryCallStore()


@pytest.fixture
def tracker(call_store):
    return CallLifecycleTracker(call_store, clock=lambda: FIXED_NOW)
