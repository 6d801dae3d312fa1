"""Data models for call records, Q&A pairs and knowledge chunks."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ValidationError(Exception):
    """Raised when model validation fails."""

    pass


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (as stored by MongoDB) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CallStatus(Enum):
    """Lifecycle status of a call record."""

    STARTED = "started"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallStatus.COMPLETED, CallStatus.FAILED)


QUALITY_BUCKETS = ("good", "fair", "poor")
RESOLUTION_TYPES = ("transferred", "appointment", "information", "callback", "general")


@dataclass
class Utterance:
    """A single line of a call transcript.

    Attributes:
        role: Who spoke (assistant, user, ...)
        text: What was said
    """

    role: str
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Utterance":
        text = data.get("text")
        if text is None:
            text = data.get("message", data.get("content", data.get("transcript", "")))
        role = data.get("role", data.get("speaker", "unknown"))
        return cls(role=str(role or "unknown").lower(), text=str(text or ""))


def parse_transcript(raw: Any) -> list[Utterance]:
    """Normalize a provider transcript into utterances.

    The provider sends either a plain string with one ``Role: text`` line per
    utterance or a list of message objects. Blank utterances are dropped.

    Args:
        raw: Transcript as received in the webhook payload

    Returns:
        Ordered list of utterances (empty for None or unrecognized input)
    """
    utterances: list[Utterance] = []

    if raw is None:
        return utterances

    if isinstance(raw, str):
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            role, sep, text = line.partition(":")
            if sep and role and " " not in role.strip():
                utterances.append(Utterance(role=role.strip().lower(), text=text.strip()))
            else:
                utterances.append(Utterance(role="unknown", text=line))
        return utterances

    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, dict):
                utterance = Utterance.from_dict(item)
            elif isinstance(item, str):
                utterance = Utterance(role="unknown", text=item)
            else:
                continue
            if utterance.text.strip():
                utterances.append(utterance)

    return utterances


@dataclass(frozen=True)
class DerivedSignals:
    """Intelligence derived from a finished call's transcript.

    Attributes:
        lead_score: 0-100 lead intent score
        sentiment_score: -1..1 sentiment balance
        quality_bucket: good, fair or poor (by duration)
        resolution_type: transferred, appointment, information, callback or general
        lead_captured: Caller showed buying or booking intent
        appointment_booked: Caller booked an appointment
        sales_qualified: Caller discussed qualification topics
    """

    lead_score: int
    sentiment_score: float
    quality_bucket: str
    resolution_type: str
    lead_captured: bool
    appointment_booked: bool
    sales_qualified: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "lead_score": self.lead_score,
            "sentiment_score": self.sentiment_score,
            "quality_bucket": self.quality_bucket,
            "resolution_type": self.resolution_type,
            "lead_captured": self.lead_captured,
            "appointment_booked": self.appointment_booked,
            "sales_qualified": self.sales_qualified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DerivedSignals":
        return cls(
            lead_score=int(data.get("lead_score", 0)),
            sentiment_score=float(data.get("sentiment_score", 0.0)),
            quality_bucket=data.get("quality_bucket", "poor"),
            resolution_type=data.get("resolution_type", "general"),
            lead_captured=bool(data.get("lead_captured", False)),
            appointment_booked=bool(data.get("appointment_booked", False)),
            sales_qualified=bool(data.get("sales_qualified", False)),
        )


@dataclass
class CallRecord:
    """Canonical state of one provider call.

    Attributes:
        external_call_id: Provider call id (idempotency key)
        assistant_id: Owning assistant
        caller_number: Caller phone number or "unknown"
        status: Lifecycle status
        duration_seconds: Call length, set when the call ends
        transcript: Latest cumulative transcript
        derived: Signals computed at finalization (None until then)
        time_of_day: Hour the call started (0-23)
        day_of_week: Weekday the call started (0 = Monday)
        created_at: When the record was first stored
        updated_at: When the record was last changed
        ended_reason: Provider's end reason
        summary: Provider's call summary
        started_at: Start event timestamp
        ended_at: End event timestamp
        synthesized: Created by an event that arrived before call-started
        transcript_sealed: The end event carried the final transcript
        version: Compare-and-set counter for concurrent writers
    """

    external_call_id: str
    assistant_id: str = ""
    caller_number: str = "unknown"
    status: CallStatus = CallStatus.STARTED
    duration_seconds: int = 0
    transcript: list[Utterance] = field(default_factory=list)
    derived: DerivedSignals | None = None
    time_of_day: int = 0
    day_of_week: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    ended_reason: str | None = None
    summary: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    synthesized: bool = False
    transcript_sealed: bool = False
    version: int = 0

    def __post_init__(self) -> None:
        """Validate required fields after initialization."""
        self._validate()

    def _validate(self) -> None:
        """Validate all required fields."""
        if not self.external_call_id or not self.external_call_id.strip():
            raise ValidationError("external_call_id is required and cannot be empty")
        if self.duration_seconds < 0:
            raise ValidationError("duration_seconds cannot be negative")
        if not 0 <= self.time_of_day <= 23:
            raise ValidationError("time_of_day must be between 0 and 23")
        if not 0 <= self.day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 and 6")

    @property
    def is_finalized(self) -> bool:
        return self.status.is_terminal

    @property
    def lead_captured(self) -> bool:
        return self.derived is not None and self.derived.lead_captured

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for MongoDB storage."""
        return {
            "_id": self.external_call_id,
            "external_call_id": self.external_call_id,
            "assistant_id": self.assistant_id,
            "caller_number": self.caller_number,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "transcript": [u.to_dict() for u in self.transcript],
            "derived": self.derived.to_dict() if self.derived else None,
            "time_of_day": self.time_of_day,
            "day_of_week": self.day_of_week,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "ended_reason": self.ended_reason,
            "summary": self.summary,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "synthesized": self.synthesized,
            "transcript_sealed": self.transcript_sealed,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CallRecord":
        """Create CallRecord from MongoDB document."""
        derived = data.get("derived")
        return cls(
            external_call_id=str(data.get("external_call_id", data.get("_id", ""))),
            assistant_id=data.get("assistant_id", ""),
            caller_number=data.get("caller_number") or "unknown",
            status=CallStatus(data.get("status", CallStatus.STARTED.value)),
            duration_seconds=int(data.get("duration_seconds", 0)),
            transcript=[Utterance.from_dict(u) for u in data.get("transcript", [])],
            derived=DerivedSignals.from_dict(derived) if derived else None,
            time_of_day=int(data.get("time_of_day", 0)),
            day_of_week=int(data.get("day_of_week", 0)),
            created_at=as_utc(data.get("created_at")) or utc_now(),
            updated_at=as_utc(data.get("updated_at")) or utc_now(),
            ended_reason=data.get("ended_reason"),
            summary=data.get("summary"),
            started_at=as_utc(data.get("started_at")),
            ended_at=as_utc(data.get("ended_at")),
            synthesized=bool(data.get("synthesized", False)),
            transcript_sealed=bool(data.get("transcript_sealed", False)),
            version=int(data.get("version", 0)),
        )


@dataclass
class QAPair:
    """Explicit question/answer override for an assistant.

    Attributes:
        id: Unique identifier for the pair
        assistant_id: Owning assistant
        question: Question as configured
        answer: Answer to speak back
        priority: Lower values are checked first
    """

    id: str
    assistant_id: str
    question: str
    answer: str
    priority: int = 1

    def __post_init__(self) -> None:
        """Validate required fields after initialization."""
        self._validate()

    def _validate(self) -> None:
        """Validate all required fields."""
        if not self.assistant_id or not self.assistant_id.strip():
            raise ValidationError("assistant_id is required and cannot be empty")
        if not self.question or not self.question.strip():
            raise ValidationError("question is required and cannot be empty")
        if not self.answer or not self.answer.strip():
            raise ValidationError("answer is required and cannot be empty")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for MongoDB storage."""
        return {
            "_id": self.id,
            "assistant_id": self.assistant_id,
            "question": self.question,
            "answer": self.answer,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QAPair":
        """Create QAPair from MongoDB document."""
        return cls(
            id=str(data.get("_id", data.get("id", ""))),
            assistant_id=data.get("assistant_id", ""),
            question=data.get("question", ""),
            answer=data.get("answer", ""),
            priority=int(data.get("priority", 1)),
        )


@dataclass
class KnowledgeChunk:
    """A chunk of an assistant's knowledge base with its embedding.

    Attributes:
        assistant_id: Owning assistant
        content: Chunk text
        chunk_index: Position of the chunk in the source document
        embedding: Vector embedding for semantic search (optional)
    """

    assistant_id: str
    content: str
    chunk_index: int
    embedding: list[float] | None = None

    def __post_init__(self) -> None:
        """Validate required fields after initialization."""
        if not self.assistant_id or not self.assistant_id.strip():
            raise ValidationError("assistant_id is required and cannot be empty")
        if not self.content or not self.content.strip():
            raise ValidationError("Chunk content is required and cannot be empty")

    @property
    def id(self) -> str:
        return f"{self.assistant_id}:{self.chunk_index}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for MongoDB storage."""
        result: dict[str, Any] = {
            "_id": self.id,
            "assistant_id": self.assistant_id,
            "content": self.content,
            "chunk_index": self.chunk_index,
        }
        if self.embedding is not None:
            result["embedding"] = self.embedding
        return result
