"""Tests for webhook authentication and dispatch."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from callintel.knowledge_resolver import KnowledgeResolver
from callintel.webhook_handler import (
    LOOKUP_FAILED_MESSAGE,
    TRANSFER_UNAVAILABLE_MESSAGE,
    AuthError,
    WebhookHandler,
    compute_signature,
    verify_signature,
)

from conftest import InMemoryQAPairs, make_pair

SECRET = "test-secret"


def signed(payload):
    body = json.dumps(payload).encode("utf-8")
    return body, compute_signature(body, SECRET)


def create_handler(tracker, resolver=None, assistants=None, call_records=None, secret=SECRET):
    return WebhookHandler(
        call_tracker=tracker,
        webhook_secret=secret,
        knowledge_resolver=resolver,
        assistants=assistants,
        call_records=call_records,
    )


def test_verify_signature_accepts_valid():
    body = b'{"type": "call-started"}'

    verify_signature(body, compute_signature(body, SECRET), SECRET)
    verify_signature(body, compute_signature(body, SECRET).upper(), SECRET)


@pytest.mark.parametrize("signature", [None, "", "deadbeef"])
def test_verify_signature_rejects_bad(signature):
    with pytest.raises(AuthError):
        verify_signature(b"{}", signature, SECRET)


def test_verify_signature_fails_closed_without_secret():
    body = b"{}"
    with pytest.raises(AuthError):
        verify_signature(body, compute_signature(body, ""), "")


@pytest.mark.asyncio
async def test_unsigned_event_never_reaches_tracker():
    tracker = MagicMock()
    tracker.ingest = AsyncMock()
    handler = create_handler(tracker)
    body, _ = signed({"type": "call-started", "data": {"call": {"id": "call-1"}}})

    with pytest.raises(AuthError):
        await handler.handle_event(body, "not-a-signature")

    tracker.ingest.assert_not_called()


@pytest.mark.asyncio
async def test_event_is_ingested(tracker, call_store):
    handler = create_handler(tracker)
    body, signature = signed({
        "type": "call-started",
        "data": {"call": {"id": "call-1", "assistantId": "asst-1"}},
    })

    response = await handler.handle_event(body, signature)

    assert response == {
        "success": True,
        "processed": True,
        "call_id": "call-1",
        "status": "started",
    }
    assert call_store.get("call-1") is not None


@pytest.mark.asyncio
async def test_message_envelope_is_accepted(tracker, call_store):
    handler = create_handler(tracker)
    body, signature = signed({
        "message": {
            "type": "call-ended",
            "call": {"id": "call-2"},
            "endedReason": "customer-ended-call",
            "durationSeconds": 12,
        }
    })

    response = await handler.handle_event(body, signature)

    assert response["status"] == "completed"
    assert call_store.get("call-2").duration_seconds == 12


@pytest.mark.asyncio
async def test_bad_events_are_acknowledged_without_processing(tracker, call_store):
    handler = create_handler(tracker)

    unknown_body, unknown_sig = signed({"type": "speech-update", "data": {"call": {"id": "c"}}})
    missing_body, missing_sig = signed({"type": "call-started", "data": {}})
    garbage = b"not json"

    unknown = await handler.handle_event(unknown_body, unknown_sig)
    missing = await handler.handle_event(missing_body, missing_sig)
    invalid = await handler.handle_event(garbage, compute_signature(garbage, SECRET))

    assert unknown == {"success": True, "processed": False, "error": "UnsupportedEvent"}
    assert missing["error"] == "MalformedEvent"
    assert invalid["error"] == "MalformedEvent"
    assert call_store.docs == {}


@pytest.mark.asyncio
async def test_search_knowledge_function_answers(tracker):
    resolver = KnowledgeResolver(
        InMemoryQAPairs([make_pair("1", "What are your hours?", "We are open 9 to 5.")])
    )
    handler = create_handler(tracker, resolver=resolver)
    body, signature = signed({
        "functionCall": {"name": "searchKnowledgeBase", "parameters": {"query": "hours"}},
        "call": {"id": "call-1", "assistantId": "asst-1"},
    })

    response = await handler.handle_function_call(body, signature)

    assert response == {"result": "We are open 9 to 5.", "source": "qa_pair"}


@pytest.mark.asyncio
async def test_search_knowledge_function_escalates(tracker):
    handler = create_handler(tracker, resolver=KnowledgeResolver(InMemoryQAPairs()))
    body, signature = signed({
        "functionCall": {"name": "searchKnowledgeBase", "parameters": {"query": "Do you fix roofs?"}},
        "call": {"id": "call-1", "assistantId": "asst-1"},
    })

    response = await handler.handle_function_call(body, signature)

    assert response["escalate"] is True


@pytest.mark.asyncio
async def test_search_knowledge_store_failure_apologizes(tracker):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(side_effect=RuntimeError("mongo down"))
    handler = create_handler(tracker, resolver=resolver)
    body, signature = signed({
        "functionCall": {"name": "searchKnowledgeBase", "parameters": {"query": "hours"}},
        "call": {"id": "call-1", "assistantId": "asst-1"},
    })

    response = await handler.handle_function_call(body, signature)

    assert response == {"result": LOOKUP_FAILED_MESSAGE, "escalate": True}


@pytest.mark.asyncio
async def test_transfer_call_function(tracker):
    assistants = MagicMock()
    assistants.get_transfer_number.return_value = "+15559876543"
    handler = create_handler(tracker, assistants=assistants)
    body, signature = signed({
        "functionCall": {"name": "transferCall", "parameters": {"reason": "billing"}},
        "call": {"id": "call-1", "assistantId": "asst-1"},
    })

    response = await handler.handle_function_call(body, signature)

    assert response["transfer"] == {"phoneNumber": "+15559876543", "reason": "billing"}
    assistants.get_transfer_number.assert_called_once_with("asst-1")


@pytest.mark.asyncio
async def test_transfer_without_number(tracker):
    assistants = MagicMock()
    assistants.get_transfer_number.return_value = None
    handler = create_handler(tracker, assistants=assistants)
    body, signature = signed({
        "functionCall": {"name": "transferCall", "parameters": {}},
        "call": {"id": "call-1", "assistantId": "asst-1"},
    })

    response = await handler.handle_function_call(body, signature)

    assert response == {"result": TRANSFER_UNAVAILABLE_MESSAGE}


@pytest.mark.asyncio
async def test_unknown_function(tracker):
    handler = create_handler(tracker)
    body, signature = signed({"functionCall": {"name": "orderPizza"}})

    assert await handler.handle_function_call(body, signature) == {"result": "Function not found"}


@pytest.mark.asyncio
async def test_invalid_utf8_body_is_acknowledged(tracker, call_store):
    handler = create_handler(tracker)
    body = b'{"type":"call-started","data":{"call":{"id":"\xff\xfe"}}}'

    response = await handler.handle_event(body, compute_signature(body, SECRET))

    assert response == {"success": True, "processed": False, "error": "MalformedEvent"}
    assert call_store.docs == {}


@pytest.mark.asyncio
async def test_invalid_utf8_function_call_apologizes(tracker):
    handler = create_handler(tracker)
    body = b'{"functionCall":{"name":"\xff"}}'

    response = await handler.handle_function_call(body, compute_signature(body, SECRET))

    assert response == {"result": LOOKUP_FAILED_MESSAGE}


@pytest.mark.asyncio
async def test_infinite_duration_event_is_processed(tracker, call_store):
    handler = create_handler(tracker)
    body, signature = signed({
        "type": "call-ended",
        "data": {
            "call": {"id": "call-3"},
            "endedReason": "customer-ended-call",
            "durationSeconds": "Infinity",
        },
    })

    response = await handler.handle_event(body, signature)

    assert response["processed"] is True
    assert call_store.get("call-3").duration_seconds == 0


@pytest.mark.asyncio
async def test_transfer_call_records_summary(tracker):
    assistants = MagicMock()
    assistants.get_transfer_number.return_value = "+15559876543"
    call_records = MagicMock()
    call_records.update_summary.return_value = True
    handler = create_handler(tracker, assistants=assistants, call_records=call_records)
    body, signature = signed({
        "functionCall": {"name": "transferCall", "parameters": {"reason": "billing"}},
        "call": {"id": "call-1", "assistantId": "asst-1"},
    })

    await handler.handle_function_call(body, signature)

    call_records.update_summary.assert_called_once_with("call-1", "Transfer requested: billing")


@pytest.mark.asyncio
async def test_transfer_proceeds_when_summary_write_fails(tracker):
    assistants = MagicMock()
    assistants.get_transfer_number.return_value = "+15559876543"
    call_records = MagicMock()
    call_records.update_summary.side_effect = RuntimeError("mongo down")
    handler = create_handler(tracker, assistants=assistants, call_records=call_records)
    body, signature = signed({
        "functionCall": {"name": "transferCall", "parameters": {"reason": "billing"}},
        "call": {"id": "call-1", "assistantId": "asst-1"},
    })

    response = await handler.handle_function_call(body, signature)

    assert response["transfer"]["phoneNumber"] == "+15559876543"


@pytest.mark.asyncio
async def test_function_call_with_odd_shapes(tracker):
    handler = create_handler(tracker)
    body, signature = signed({"functionCall": "searchKnowledgeBase", "call": []})

    assert await handler.handle_function_call(body, signature) == {"result": "Function not found"}
