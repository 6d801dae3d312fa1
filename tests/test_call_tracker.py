"""Tests for call lifecycle tracking."""

import asyncio
import itertools

import pytest

from callintel.call_tracker import (
    CallLifecycleTracker,
    ConcurrentUpdateError,
    MalformedEvent,
    UnsupportedEvent,
    classify_ended_reason,
    parse_event,
)
from callintel.models import CallStatus

from conftest import FIXED_NOW, InMemoryCallStore

TRANSCRIPT = "AI: Thanks for calling.\nUser: I'd like to schedule an appointment and get a quote"


def started(call_id="call-1", timestamp="2024-03-04T09:15:00Z"):
    return {
        "call": {"id": call_id, "assistantId": "asst-1"},
        "customer": {"number": "+15551234567"},
        "timestamp": timestamp,
    }


def transcript(call_id="call-1", text=TRANSCRIPT):
    return {
        "call": {"id": call_id},
        "transcript": text,
        "timestamp": "2024-03-04T09:15:30Z",
    }


def ended(call_id="call-1", reason="customer-ended-call", with_transcript=True):
    payload = {
        "call": {"id": call_id, "assistantId": "asst-1"},
        "endedReason": reason,
        "durationSeconds": 45,
        "summary": "Caller booked an appointment.",
        "timestamp": "2024-03-04T09:16:00Z",
    }
    if with_transcript:
        payload["transcript"] = TRANSCRIPT
    return payload


def final_state(store, call_id="call-1"):
    record = store.get(call_id)
    state = record.to_dict()
    del state["updated_at"]
    del state["version"]
    return state


async def replay(events):
    store = InMemoryCallStore()
    tracker = CallLifecycleTracker(store, clock=lambda: FIXED_NOW)
    for event_type, payload in events:
        await tracker.ingest(event_type, payload)
    return store


@pytest.mark.asyncio
async def test_call_started_creates_record(tracker, call_store):
    ack = await tracker.ingest("call-started", started())

    assert ack.applied
    assert ack.status == CallStatus.STARTED
    record = call_store.get("call-1")
    assert record.assistant_id == "asst-1"
    assert record.caller_number == "+15551234567"
    assert record.time_of_day == 9
    assert record.day_of_week == 0
    assert record.derived is None


@pytest.mark.asyncio
async def test_duplicate_events_are_no_ops(tracker, call_store):
    """Redelivered events leave the record exactly as it was."""
    await tracker.ingest("call-started", started())
    await tracker.ingest("call-ended", ended())
    saves = call_store.saves
    version = call_store.get("call-1").version

    again_start = await tracker.ingest("call-started", started())
    again_end = await tracker.ingest("call-ended", ended())

    assert not again_start.applied
    assert not again_end.applied
    assert call_store.saves == saves
    assert call_store.get("call-1").version == version


@pytest.mark.asyncio
async def test_full_lifecycle_finalizes_once(tracker, call_store):
    await tracker.ingest("call-started", started())
    ack = await tracker.ingest("transcript", transcript())
    assert ack.status == CallStatus.ACTIVE

    ack = await tracker.ingest("call-ended", ended())

    assert ack.status == CallStatus.COMPLETED
    record = call_store.get("call-1")
    assert record.duration_seconds == 45
    assert record.summary == "Caller booked an appointment."
    assert record.derived.appointment_booked
    assert record.derived.quality_bucket == "good"
    assert record.derived.resolution_type == "appointment"


@pytest.mark.parametrize("with_transcript", [True, False])
@pytest.mark.asyncio
async def test_any_delivery_order_converges(with_transcript):
    """Every permutation of the three events yields the same record."""
    events = [
        ("call-started", started()),
        ("transcript", transcript()),
        ("call-ended", ended(with_transcript=with_transcript)),
    ]
    expected = final_state(await replay(events))

    for order in itertools.permutations(events):
        assert final_state(await replay(order)) == expected


@pytest.mark.asyncio
async def test_ended_before_started_synthesizes_record(tracker, call_store):
    ack = await tracker.ingest("call-ended", ended(reason="voicemail"))

    assert ack.status == CallStatus.FAILED
    record = call_store.get("call-1")
    assert record.synthesized
    assert record.derived is not None

    await tracker.ingest("call-started", started())

    record = call_store.get("call-1")
    assert not record.synthesized
    assert record.status == CallStatus.FAILED
    assert record.caller_number == "+15551234567"
    assert record.created_at.isoformat() == "2024-03-04T09:15:00+00:00"


@pytest.mark.asyncio
async def test_transcript_after_sealed_end_is_ignored(tracker, call_store):
    await tracker.ingest("call-started", started())
    await tracker.ingest("call-ended", ended())

    ack = await tracker.ingest("transcript", transcript(text="User: totally different"))

    assert not ack.applied
    assert call_store.get("call-1").transcript[-1].text.endswith("get a quote")


@pytest.mark.asyncio
async def test_events_for_one_call_are_serialized(tracker, call_store):
    await asyncio.gather(
        tracker.ingest("call-started", started()),
        tracker.ingest("transcript", transcript()),
        tracker.ingest("call-ended", ended()),
    )

    record = call_store.get("call-1")
    assert record.status == CallStatus.COMPLETED
    assert record.version == call_store.saves


@pytest.mark.asyncio
async def test_write_conflicts_are_retried(tracker, call_store):
    call_store.conflicts = 2

    ack = await tracker.ingest("call-started", started())

    assert ack.applied
    assert call_store.get("call-1") is not None


@pytest.mark.asyncio
async def test_persistent_conflict_raises(tracker, call_store):
    call_store.conflicts = CallLifecycleTracker.MAX_WRITE_ATTEMPTS

    with pytest.raises(ConcurrentUpdateError):
        await tracker.ingest("call-started", started())

    assert call_store.get("call-1") is None


@pytest.mark.asyncio
async def test_missing_call_id_is_malformed(tracker, call_store):
    with pytest.raises(MalformedEvent):
        await tracker.ingest("call-started", {"customer": {"number": "+1555"}})

    assert call_store.docs == {}


@pytest.mark.asyncio
async def test_transcript_event_without_transcript_is_malformed(tracker):
    with pytest.raises(MalformedEvent):
        await tracker.ingest("transcript", {"call": {"id": "call-1"}})


@pytest.mark.asyncio
async def test_unknown_event_type_is_unsupported(tracker):
    with pytest.raises(UnsupportedEvent):
        await tracker.ingest("status-update", started())


@pytest.mark.asyncio
async def test_legacy_event_names(tracker, call_store):
    await tracker.ingest("call-start", started())
    ack = await tracker.ingest("call-end", ended())

    assert ack.event_type == "call-ended"
    assert call_store.get("call-1").status == CallStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_timestamp_uses_clock(tracker, call_store):
    payload = started()
    del payload["timestamp"]

    await tracker.ingest("call-started", payload)

    record = call_store.get("call-1")
    assert record.created_at == FIXED_NOW
    assert record.time_of_day == 12


def test_classify_ended_reason():
    assert classify_ended_reason("customer-ended-call") == CallStatus.COMPLETED
    assert classify_ended_reason("call-transferred") == CallStatus.COMPLETED
    assert classify_ended_reason("voicemail") == CallStatus.FAILED
    assert classify_ended_reason("something-new") == CallStatus.FAILED
    assert classify_ended_reason(None) == CallStatus.FAILED


def test_parse_event_accepts_epoch_milliseconds():
    event = parse_event("call-started", {"callId": "call-9", "timestamp": 1709543700000})

    assert event.external_call_id == "call-9"
    assert event.caller_number == "unknown"
    assert event.timestamp.hour == 9
    assert event.timestamp.minute == 15


def test_parse_event_reads_message_list():
    event = parse_event("transcript", {
        "call": {"id": "call-1"},
        "messages": [{"role": "user", "message": "How much is it?"}],
    })

    assert event.transcript[0].text == "How much is it?"


@pytest.mark.parametrize("with_start", [True, False])
@pytest.mark.asyncio
async def test_caller_from_transcript_survives_any_order(with_start):
    """Identity carried only by a late transcript is kept after a sealed end."""
    start = started()
    del start["customer"]
    late_transcript = transcript()
    late_transcript["call"]["customer"] = {"number": "+15550001111"}
    events = [
        ("transcript", late_transcript),
        ("call-ended", ended(with_transcript=True)),
    ]
    if with_start:
        events.insert(0, ("call-started", start))

    expected = final_state(await replay(events))
    assert expected["caller_number"] == "+15550001111"

    for order in itertools.permutations(events):
        assert final_state(await replay(order)) == expected


@pytest.mark.asyncio
async def test_synthesized_record_is_dated_by_earliest_event(tracker, call_store):
    await tracker.ingest("call-ended", ended())
    await tracker.ingest("transcript", transcript())

    record = call_store.get("call-1")
    assert record.synthesized
    assert record.created_at.isoformat() == "2024-03-04T09:15:30+00:00"


@pytest.mark.parametrize("duration", ["Infinity", float("inf"), "NaN", "soon"])
def test_unusable_duration_becomes_zero(duration):
    event = parse_event("call-ended", {"call": {"id": "call-1"}, "durationSeconds": duration})

    assert event.duration_seconds == 0


@pytest.mark.asyncio
async def test_infinite_duration_still_ends_call(tracker, call_store):
    payload = ended()
    payload["durationSeconds"] = "Infinity"

    ack = await tracker.ingest("call-ended", payload)

    assert ack.status == CallStatus.COMPLETED
    assert call_store.get("call-1").duration_seconds == 0
