"""Call Intelligence - call lifecycle tracking, knowledge resolution and analytics."""

__version__ = "0.1.0"

from .models import CallRecord, CallStatus, DerivedSignals, QAPair, Utterance, ValidationError
from .vector_search import SearchResult, VectorSearch
from .knowledge_ingestion import KnowledgeIngestion
from .knowledge_resolver import Answer, Escalate, KnowledgeResolver
from .call_tracker import (
    Ack,
    CallLifecycleTracker,
    ConcurrentUpdateError,
    MalformedEvent,
    UnsupportedEvent,
)
from .metrics import AnalyticsSnapshot, MetricsAggregator, TimeRange
from .webhook_handler import AuthError, WebhookHandler

__all__ = [
    "CallRecord",
    "CallStatus",
    "DerivedSignals",
    "QAPair",
    "Utterance",
    "ValidationError",
    "SearchResult",
    "VectorSearch",
    "KnowledgeIngestion",
    "Answer",
    "Escalate",
    "KnowledgeResolver",
    "Ack",
    "CallLifecycleTracker",
    "ConcurrentUpdateError",
    "MalformedEvent",
    "UnsupportedEvent",
    "AnalyticsSnapshot",
    "MetricsAggregator",
    "TimeRange",
    "AuthError",
    "WebhookHandler",
]
