"""FastAPI application for the call intelligence pipeline.

This module provides:
- Provider webhook endpoints for call lifecycle events and function calls
- Query resolution endpoint for assistant knowledge
- Analytics endpoint producing on-demand snapshots
- REST API for Q&A pairs, knowledge base content and call logs
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .call_tracker import CallLifecycleTracker, ConcurrentUpdateError
from .config import get_settings
from .database import DatabaseManager, get_database
from .knowledge_ingestion import KnowledgeIngestion
from .knowledge_resolver import Answer, KnowledgeResolver
from .metrics import PERIODS, MetricsAggregator, TimeRange
from .models import CallRecord, CallStatus, QAPair, ValidationError, as_utc, utc_now
from .repositories import (
    AssistantRepository,
    CallRecordRepository,
    KnowledgeChunkRepository,
    QAPairRepository,
)
from .vector_search import VectorSearch
from .webhook_handler import SIGNATURE_HEADER, AuthError, WebhookHandler

logging.basicConfig(level=get_settings().log_level.upper())
logger = logging.getLogger(__name__)


# Pydantic models for API requests/responses
class QAPairInput(BaseModel):
    """Input model for a single Q&A pair."""

    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)
    priority: int = 1


class BulkQAPairInput(BaseModel):
    """Input model for creating several Q&A pairs at once."""

    pairs: list[QAPairInput]


class QAPairResponse(BaseModel):
    """Response model for Q&A pair data."""

    id: str
    assistant_id: str
    question: str
    answer: str
    priority: int


class ResolveInput(BaseModel):
    """Input model for resolving a caller's query."""

    query: str


class ResolveResponse(BaseModel):
    """Response model for query resolution."""

    outcome: str  # answer or escalate
    text: str
    source: str | None = None
    match_rule: str | None = None
    reason: str | None = None


class KnowledgeBaseInput(BaseModel):
    """Input model for replacing an assistant's knowledge base."""

    content: str = Field(..., min_length=1)


class KnowledgeBaseResponse(BaseModel):
    """Response model for an assistant's stored knowledge base."""

    assistant_id: str
    content: str
    chunks: int


class CallRecordResponse(BaseModel):
    """Response model for call history."""

    external_call_id: str
    assistant_id: str
    caller_number: str
    status: str
    duration_seconds: int = 0
    transcript: list[dict[str, str]] = []
    derived: dict[str, Any] | None = None
    summary: str | None = None
    ended_reason: str | None = None
    time_of_day: int
    day_of_week: int
    created_at: datetime
    updated_at: datetime


class CallListResponse(BaseModel):
    """Paginated call history."""

    calls: list[CallRecordResponse]
    total_count: int
    page: int
    limit: int


# Global instances
db_manager: DatabaseManager | None = None
call_records: CallRecordRepository | None = None
qa_repository: QAPairRepository | None = None
vector_search: VectorSearch | None = None
knowledge_ingestion: KnowledgeIngestion | None = None
knowledge_chunks: KnowledgeChunkRepository | None = None
call_tracker: CallLifecycleTracker | None = None
knowledge_resolver: KnowledgeResolver | None = None
metrics_aggregator = MetricsAggregator()
webhook_handler: WebhookHandler | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global db_manager, call_records, qa_repository, vector_search
    global knowledge_ingestion, knowledge_chunks, call_tracker, knowledge_resolver
    global webhook_handler

    settings = get_settings()

    try:
        db_manager = get_database()
        db_manager.ensure_indexes()
        logger.info("Database connection initialized")
    except Exception as e:
        logger.warning(f"Database initialization failed: {e}")
        db_manager = None

    if db_manager:
        call_records = CallRecordRepository(db_manager.call_records)
        qa_repository = QAPairRepository(db_manager.qa_pairs)
        assistants = AssistantRepository(db_manager.assistants)
        knowledge_chunks = KnowledgeChunkRepository(db_manager.knowledge_chunks)

        try:
            vector_search = VectorSearch(
                voyage_api_key=settings.voyage_api_key,
                db_manager=db_manager,
            )
            knowledge_ingestion = KnowledgeIngestion(vector_search)
            logger.info("VectorSearch initialized")
        except Exception as e:
            logger.warning(f"VectorSearch initialization failed: {e}")
            vector_search = None

        call_tracker = CallLifecycleTracker(call_records)
        knowledge_resolver = KnowledgeResolver(
            qa_repository,
            semantic_search=vector_search,
            similarity_threshold=settings.similarity_threshold,
            top_k=settings.similarity_top_k,
            timeout_seconds=settings.external_timeout_seconds,
        )
        webhook_handler = WebhookHandler(
            call_tracker=call_tracker,
            webhook_secret=settings.vapi_webhook_secret,
            knowledge_resolver=knowledge_resolver,
            assistants=assistants,
            call_records=call_records,
        )

    if not settings.vapi_webhook_secret:
        logger.warning("VAPI_WEBHOOK_SECRET is not set; all webhooks will be rejected")

    logger.info("Call intelligence service started")
    yield

    if db_manager:
        db_manager.close()

    logger.info("Call intelligence service stopped")


app = FastAPI(
    title="Call Intelligence",
    description="Call lifecycle tracking, knowledge resolution and call analytics",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _call_response(record: CallRecord) -> CallRecordResponse:
    return CallRecordResponse(
        external_call_id=record.external_call_id,
        assistant_id=record.assistant_id,
        caller_number=record.caller_number,
        status=record.status.value,
        duration_seconds=record.duration_seconds,
        transcript=[u.to_dict() for u in record.transcript],
        derived=record.derived.to_dict() if record.derived else None,
        summary=record.summary,
        ended_reason=record.ended_reason,
        time_of_day=record.time_of_day,
        day_of_week=record.day_of_week,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


# =============================================================================
# Provider Webhook Endpoints
# =============================================================================

@app.post("/webhooks/vapi")
async def handle_call_event(request: Request):
    """Ingest a call lifecycle event from the voice provider."""
    if not webhook_handler:
        raise HTTPException(status_code=503, detail="Service not initialized")

    body = await request.body()
    try:
        return await webhook_handler.handle_event(body, request.headers.get(SIGNATURE_HEADER))
    except AuthError:
        raise HTTPException(status_code=401, detail="Invalid signature")
    except ConcurrentUpdateError as e:
        logger.error(str(e))
        raise HTTPException(status_code=503, detail="Call record busy, retry later")


@app.post("/vapi/functions")
async def handle_function_call(request: Request):
    """Answer a function call made by the assistant during a live call."""
    if not webhook_handler:
        raise HTTPException(status_code=503, detail="Service not initialized")

    body = await request.body()
    try:
        return await webhook_handler.handle_function_call(
            body, request.headers.get(SIGNATURE_HEADER)
        )
    except AuthError:
        raise HTTPException(status_code=401, detail="Invalid signature")


# =============================================================================
# Knowledge Resolution
# =============================================================================

@app.post("/assistants/{assistant_id}/resolve", response_model=ResolveResponse)
async def resolve_query(assistant_id: str, resolve_input: ResolveInput):
    """Resolve a caller's query to an answer or an escalation."""
    if not knowledge_resolver:
        raise HTTPException(status_code=503, detail="Resolver not available")

    outcome = await knowledge_resolver.resolve(assistant_id, resolve_input.query)
    if isinstance(outcome, Answer):
        return ResolveResponse(
            outcome="answer",
            text=outcome.text,
            source=outcome.source,
            match_rule=outcome.match_rule.value if outcome.match_rule else None,
        )
    return ResolveResponse(outcome="escalate", text=outcome.message, reason=outcome.reason)


@app.get("/assistants/{assistant_id}/qa-pairs", response_model=list[QAPairResponse])
def get_qa_pairs(assistant_id: str):
    """Get an assistant's Q&A pairs in the order they are checked."""
    if not qa_repository:
        raise HTTPException(status_code=503, detail="Database not available")

    return [
        QAPairResponse(
            id=p.id,
            assistant_id=p.assistant_id,
            question=p.question,
            answer=p.answer,
            priority=p.priority,
        )
        for p in qa_repository.list_for_assistant(assistant_id)
    ]


@app.post(
    "/assistants/{assistant_id}/qa-pairs",
    response_model=list[QAPairResponse],
    status_code=201,
)
def create_qa_pairs(assistant_id: str, bulk_input: BulkQAPairInput):
    """Create Q&A pairs for an assistant."""
    if not qa_repository:
        raise HTTPException(status_code=503, detail="Database not available")

    try:
        pairs = [
            QAPair(
                id=str(uuid.uuid4()),
                assistant_id=assistant_id,
                question=p.question,
                answer=p.answer,
                priority=p.priority,
            )
            for p in bulk_input.pairs
        ]
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    qa_repository.add_many(pairs)

    return [
        QAPairResponse(
            id=p.id,
            assistant_id=p.assistant_id,
            question=p.question,
            answer=p.answer,
            priority=p.priority,
        )
        for p in pairs
    ]


@app.get("/assistants/{assistant_id}/knowledge-base", response_model=KnowledgeBaseResponse)
def get_knowledge_base(assistant_id: str):
    """Get an assistant's knowledge base content and chunk count."""
    if not knowledge_chunks:
        raise HTTPException(status_code=503, detail="Database not available")

    content, chunk_count = knowledge_chunks.combined_content(assistant_id)
    return KnowledgeBaseResponse(assistant_id=assistant_id, content=content, chunks=chunk_count)


@app.post("/assistants/{assistant_id}/knowledge-base")
async def replace_knowledge_base(assistant_id: str, kb_input: KnowledgeBaseInput):
    """Chunk, embed and store an assistant's knowledge base content."""
    if not knowledge_ingestion:
        raise HTTPException(status_code=503, detail="Knowledge ingestion not available")

    try:
        chunks_created = await knowledge_ingestion.ingest(assistant_id, kb_input.content)
    except Exception as e:
        logger.error(f"Knowledge base processing failed for {assistant_id}: {e}")
        raise HTTPException(status_code=500, detail="Knowledge base processing failed")

    return {"success": True, "chunks_created": chunks_created}


# =============================================================================
# Analytics
# =============================================================================

@app.get("/analytics")
def get_analytics(
    assistant_id: list[str] = Query(...),
    period: str = Query(default="7d"),
    start: datetime | None = None,
    end: datetime | None = None,
):
    """Compute an analytics snapshot for one or more assistants.

    An explicit ``start``/``end`` pair overrides ``period``.
    """
    if not call_records:
        raise HTTPException(status_code=503, detail="Database not available")

    try:
        if start is not None or end is not None:
            if start is None or end is None:
                raise ValueError("start and end must be given together")
            time_range = TimeRange(as_utc(start), as_utc(end), period if period in PERIODS else "custom")
        else:
            time_range = TimeRange.last(period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    records = call_records.find_in_range(
        assistant_id, time_range.previous.start, time_range.end
    )
    return metrics_aggregator.aggregate(records, time_range).to_dict()


# =============================================================================
# Call Logs
# =============================================================================

@app.get("/calls", response_model=CallListResponse)
def get_calls(
    assistant_id: list[str] = Query(...),
    status: str | None = None,
    lead_only: bool = False,
    date_range: str | None = Query(default="7d"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
):
    """Get call history with filters and pagination, newest first."""
    if not call_records:
        raise HTTPException(status_code=503, detail="Database not available")

    status_filter = None
    if status and status != "all":
        try:
            status_filter = CallStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

    since = None
    if date_range and date_range != "all":
        if date_range not in PERIODS:
            raise HTTPException(status_code=400, detail=f"Unknown date range: {date_range}")
        since = utc_now() - PERIODS[date_range]

    records, total = call_records.list_calls(
        assistant_id,
        status=status_filter,
        lead_only=lead_only,
        since=since,
        skip=(page - 1) * limit,
        limit=limit,
    )

    return CallListResponse(
        calls=[_call_response(r) for r in records],
        total_count=total,
        page=page,
        limit=limit,
    )


@app.get("/calls/{external_call_id}", response_model=CallRecordResponse)
def get_call(external_call_id: str):
    """Get details of a specific call."""
    if not call_records:
        raise HTTPException(status_code=503, detail="Database not available")

    record = call_records.get(external_call_id)
    if not record:
        raise HTTPException(status_code=404, detail="Call not found")

    return _call_response(record)


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "call-intelligence",
        "components": {
            "database": db_manager is not None,
            "call_tracker": call_tracker is not None,
            "knowledge_resolver": knowledge_resolver is not None,
            "vector_search": vector_search is not None,
            "webhook_handler": webhook_handler is not None,
        },
    }


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.server_host, port=settings.server_port)
