"""Call lifecycle tracking for provider webhook events.

Events arrive at least once and in any order. Every event is applied as a
read-modify-write of the call's record, serialized per call id and guarded
by a version compare-and-set in the store, so concurrent or reordered
deliveries for one call converge on the same final record.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from . import transcript_analyzer
from .models import CallRecord, CallStatus, Utterance, as_utc, parse_transcript, utc_now

logger = logging.getLogger(__name__)


EVENT_CALL_STARTED = "call-started"
EVENT_TRANSCRIPT = "transcript"
EVENT_CALL_ENDED = "call-ended"

# Older provider payloads use the short names.
EVENT_ALIASES = {
    "call-start": EVENT_CALL_STARTED,
    "call-end": EVENT_CALL_ENDED,
}

UNKNOWN_CALLER = "unknown"

ENDED_REASON_STATUS: dict[str, CallStatus] = {
    # Conversation reached a natural end
    "customer-ended-call": CallStatus.COMPLETED,
    "assistant-ended-call": CallStatus.COMPLETED,
    "assistant-said-end-call-phrase": CallStatus.COMPLETED,
    "assistant-forwarded-call": CallStatus.COMPLETED,
    "call-transferred": CallStatus.COMPLETED,
    "exceeded-max-duration": CallStatus.COMPLETED,
    # Caller never really got through
    "customer-did-not-give-microphone-permission": CallStatus.FAILED,
    "voicemail": CallStatus.FAILED,
    "customer-did-not-answer": CallStatus.FAILED,
    "customer-busy": CallStatus.FAILED,
    "silence-timed-out": CallStatus.FAILED,
}


class IngestError(Exception):
    """Base class for events that cannot be applied."""

    def __init__(self, event_type: str, reason: str) -> None:
        super().__init__(f"{event_type}: {reason}")
        self.event_type = event_type
        self.reason = reason


class MalformedEvent(IngestError):
    """Payload is unparsable or missing a required field."""


class UnsupportedEvent(IngestError):
    """Event type is not one this tracker handles."""


class ConcurrentUpdateError(Exception):
    """Record kept changing underneath us; the write was not applied."""


class CallRecordStore(Protocol):
    """Persistence the tracker needs (see repositories.CallRecordRepository)."""

    def get(self, external_call_id: str) -> CallRecord | None: ...

    def save(self, record: CallRecord, expected_version: int) -> bool: ...


@dataclass
class Ack:
    """Acknowledgement of an ingested event.

    Attributes:
        external_call_id: Call the event belonged to
        event_type: Normalized event type
        status: Record status after the event
        applied: False when the event was a duplicate/no-op
    """

    external_call_id: str
    event_type: str
    status: CallStatus
    applied: bool = True


@dataclass
class LifecycleEvent:
    """Fields extracted from a provider payload."""

    event_type: str
    external_call_id: str
    assistant_id: str
    caller_number: str
    timestamp: datetime | None
    transcript: list[Utterance] | None
    duration_seconds: int
    ended_reason: str | None
    summary: str | None


def classify_ended_reason(ended_reason: str | None) -> CallStatus:
    """Map a provider end reason to a terminal status (unknown -> FAILED)."""
    if not ended_reason:
        return CallStatus.FAILED
    return ENDED_REASON_STATUS.get(ended_reason, CallStatus.FAILED)


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings, epoch seconds/milliseconds or datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            seconds = value / 1000 if value > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        if isinstance(value, str):
            try:
                return _parse_timestamp(float(value))
            except ValueError:
                return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except (ValueError, OverflowError, OSError):
        pass
    logger.warning(f"Ignoring unparsable event timestamp: {value!r}")
    return None


def _state(record: CallRecord) -> dict[str, Any]:
    """Record content that events can change (bookkeeping fields excluded)."""
    state = record.to_dict()
    del state["updated_at"]
    del state["version"]
    return state


def _parse_duration(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return max(int(round(float(value))), 0)
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Ignoring unparsable call duration: {value!r}")
        return 0


def parse_event(event_type: str, payload: Any) -> LifecycleEvent:
    """Extract lifecycle fields from a provider payload.

    Args:
        event_type: Normalized event type
        payload: The event's ``data`` object

    Returns:
        Parsed LifecycleEvent

    Raises:
        MalformedEvent: If the payload is not an object or has no call id
    """
    if not isinstance(payload, dict):
        raise MalformedEvent(event_type, "payload must be a JSON object")

    call = payload.get("call") if isinstance(payload.get("call"), dict) else {}
    call_id = call.get("id") or payload.get("callId") or payload.get("call_id")
    if not call_id or not str(call_id).strip():
        raise MalformedEvent(event_type, "missing call id")

    customer = payload.get("customer") or call.get("customer") or {}
    caller_number = customer.get("number") if isinstance(customer, dict) else None

    transcript = None
    if payload.get("transcript") is not None:
        transcript = parse_transcript(payload["transcript"])
    elif payload.get("messages") is not None:
        transcript = parse_transcript(payload["messages"])

    duration = payload.get("durationSeconds", call.get("duration", payload.get("duration")))

    return LifecycleEvent(
        event_type=event_type,
        external_call_id=str(call_id).strip(),
        assistant_id=str(call.get("assistantId") or payload.get("assistantId") or ""),
        caller_number=str(caller_number) if caller_number else UNKNOWN_CALLER,
        timestamp=_parse_timestamp(payload.get("timestamp")),
        transcript=transcript,
        duration_seconds=_parse_duration(duration),
        ended_reason=payload.get("endedReason") or call.get("endedReason"),
        summary=payload.get("summary"),
    )


class CallLifecycleTracker:
    """Maintains each call's canonical record from lifecycle events.

    Concurrent events for different calls run independently; events for the
    same call are applied one at a time per process, and the store's version
    check catches writers in other processes.
    """

    MAX_WRITE_ATTEMPTS = 5

    def __init__(
        self,
        store: CallRecordStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the tracker.

        Args:
            store: Call record persistence with compare-and-set saves
            clock: Source of ingestion time (fallback for missing timestamps)
        """
        self._store = store
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def ingest(self, event_type: str, payload: Any) -> Ack:
        """Apply one provider event to its call record.

        Args:
            event_type: Provider event type (call-started, transcript, call-ended)
            payload: Event data

        Returns:
            Ack describing the resulting record state

        Raises:
            UnsupportedEvent: For event types this tracker does not handle
            MalformedEvent: For payloads without a usable call id
            ConcurrentUpdateError: If the record could not be written
        """
        normalized = EVENT_ALIASES.get(event_type, event_type)
        handlers = {
            EVENT_CALL_STARTED: self._on_call_started,
            EVENT_TRANSCRIPT: self._on_transcript,
            EVENT_CALL_ENDED: self._on_call_ended,
        }
        handler = handlers.get(normalized)
        if handler is None:
            logger.warning(f"Ignoring unsupported event type: {event_type!r}")
            raise UnsupportedEvent(str(event_type), "unsupported event type")

        try:
            event = parse_event(normalized, payload)
            if normalized == EVENT_TRANSCRIPT and event.transcript is None:
                raise MalformedEvent(normalized, "missing transcript")
        except MalformedEvent as e:
            logger.warning(f"Dropping malformed {normalized} event: {e.reason}")
            raise

        record, applied = await self._apply(event, handler)
        if applied:
            logger.info(
                f"Call {event.external_call_id}: {normalized} -> {record.status.value}"
            )
        else:
            logger.info(f"Call {event.external_call_id}: duplicate {normalized} ignored")

        return Ack(
            external_call_id=event.external_call_id,
            event_type=normalized,
            status=record.status,
            applied=applied,
        )

    async def get_record(self, external_call_id: str) -> CallRecord | None:
        """Get the current record for a call."""
        return self._store.get(external_call_id)

    @asynccontextmanager
    async def _call_lock(self, external_call_id: str) -> AsyncIterator[None]:
        """Serialize work on one call id; locks are dropped when idle."""
        lock = self._locks.get(external_call_id)
        if lock is None:
            lock = self._locks[external_call_id] = asyncio.Lock()
        self._lock_users[external_call_id] = self._lock_users.get(external_call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[external_call_id] -= 1
            if self._lock_users[external_call_id] == 0:
                del self._lock_users[external_call_id]
                del self._locks[external_call_id]

    async def _apply(
        self,
        event: LifecycleEvent,
        handler: Callable[[CallRecord | None, LifecycleEvent], tuple[CallRecord, bool]],
    ) -> tuple[CallRecord, bool]:
        async with self._call_lock(event.external_call_id):
            for attempt in range(1, self.MAX_WRITE_ATTEMPTS + 1):
                existing = self._store.get(event.external_call_id)
                expected_version = existing.version if existing else 0
                before = _state(existing) if existing else None

                record, changed = handler(existing, event)
                if not changed or _state(record) == before:
                    return record, False

                record.updated_at = self._clock()
                if self._store.save(record, expected_version):
                    return record, True

                logger.warning(
                    f"Write conflict on call {event.external_call_id} "
                    f"(attempt {attempt}/{self.MAX_WRITE_ATTEMPTS})"
                )

        raise ConcurrentUpdateError(
            f"Could not update call {event.external_call_id} after "
            f"{self.MAX_WRITE_ATTEMPTS} attempts"
        )

    def _synthesize(self, event: LifecycleEvent, status: CallStatus) -> CallRecord:
        """Create a record for a call whose start event has not arrived."""
        moment = event.timestamp or self._clock()
        return CallRecord(
            external_call_id=event.external_call_id,
            assistant_id=event.assistant_id,
            caller_number=event.caller_number,
            status=status,
            time_of_day=moment.hour,
            day_of_week=moment.weekday(),
            created_at=moment,
            updated_at=moment,
            synthesized=True,
        )

    @staticmethod
    def _fill_identity(record: CallRecord, event: LifecycleEvent) -> bool:
        """Fill owner and caller from any event that knows them.

        Until call-started arrives, a synthesized record is dated by the
        earliest event seen so far.

        Returns:
            True if the record changed
        """
        changed = False
        if not record.assistant_id and event.assistant_id:
            record.assistant_id = event.assistant_id
            changed = True
        if record.caller_number == UNKNOWN_CALLER and event.caller_number != UNKNOWN_CALLER:
            record.caller_number = event.caller_number
            changed = True
        if (
            record.synthesized
            and event.timestamp is not None
            and event.timestamp < record.created_at
        ):
            record.created_at = event.timestamp
            record.time_of_day = event.timestamp.hour
            record.day_of_week = event.timestamp.weekday()
            changed = True
        return changed

    def _on_call_started(
        self, existing: CallRecord | None, event: LifecycleEvent
    ) -> tuple[CallRecord, bool]:
        if existing is None:
            moment = event.timestamp or self._clock()
            record = CallRecord(
                external_call_id=event.external_call_id,
                assistant_id=event.assistant_id,
                caller_number=event.caller_number,
                status=CallStatus.STARTED,
                time_of_day=moment.hour,
                day_of_week=moment.weekday(),
                created_at=moment,
                updated_at=moment,
                started_at=event.timestamp,
            )
            return record, True

        if not existing.synthesized:
            return existing, False

        # A later event got here first: the start event owns these fields.
        if event.assistant_id:
            existing.assistant_id = event.assistant_id
        if event.caller_number != UNKNOWN_CALLER:
            existing.caller_number = event.caller_number
        if event.timestamp is not None:
            existing.time_of_day = event.timestamp.hour
            existing.day_of_week = event.timestamp.weekday()
            existing.created_at = event.timestamp
            existing.started_at = event.timestamp
        existing.synthesized = False
        return existing, True

    def _on_transcript(
        self, existing: CallRecord | None, event: LifecycleEvent
    ) -> tuple[CallRecord, bool]:
        if existing is None:
            record = self._synthesize(event, CallStatus.ACTIVE)
            record.transcript = event.transcript
            return record, True

        identity_changed = self._fill_identity(existing, event)

        if existing.is_finalized:
            if existing.transcript_sealed:
                logger.debug(
                    f"Call {existing.external_call_id} transcript is frozen; "
                    f"late transcript ignored"
                )
                return existing, identity_changed
            # The end event had no transcript of its own: adopt the late one
            # and finalize again from it.
            existing.transcript = event.transcript
            self._finalize(existing)
            return existing, True

        existing.transcript = event.transcript
        if existing.status == CallStatus.STARTED:
            existing.status = CallStatus.ACTIVE
        return existing, True

    def _on_call_ended(
        self, existing: CallRecord | None, event: LifecycleEvent
    ) -> tuple[CallRecord, bool]:
        if existing is None:
            logger.info(
                f"Call {event.external_call_id} ended before it started; "
                f"synthesizing record"
            )
            record = self._synthesize(event, CallStatus.STARTED)
        else:
            record = existing
            self._fill_identity(record, event)

        if event.transcript is not None:
            record.transcript = event.transcript
            record.transcript_sealed = True

        record.duration_seconds = event.duration_seconds
        record.ended_reason = event.ended_reason
        record.status = classify_ended_reason(event.ended_reason)
        if event.summary is not None:
            record.summary = event.summary
        if event.timestamp is not None:
            record.ended_at = event.timestamp

        self._finalize(record)
        return record, True

    @staticmethod
    def _finalize(record: CallRecord) -> None:
        """Compute derived signals from the record's current transcript."""
        record.derived = transcript_analyzer.analyze(
            record.transcript,
            record.duration_seconds,
            record.ended_reason,
        )
