"""Webhook handler for voice provider call events and function calls.

This module provides the WebhookHandler class that authenticates provider
webhooks, feeds lifecycle events to the CallLifecycleTracker and answers
in-call function calls (knowledge lookups and transfers).
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .call_tracker import CallLifecycleTracker, IngestError, MalformedEvent
from .knowledge_resolver import Answer, KnowledgeResolver
from .repositories import AssistantRepository, CallRecordRepository

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-vapi-signature"

FUNCTION_SEARCH_KNOWLEDGE = "searchKnowledgeBase"
FUNCTION_TRANSFER_CALL = "transferCall"

LOOKUP_FAILED_MESSAGE = (
    "I'm having trouble accessing that information right now. "
    "Let me transfer you to someone who can help."
)
TRANSFER_MESSAGE = "Transferring your call now. Please hold while I connect you."
TRANSFER_UNAVAILABLE_MESSAGE = (
    "I apologize, but I'm unable to transfer your call right now. "
    "Please call back later."
)


class AuthError(Exception):
    """Raised when a webhook signature is missing or does not match."""

    pass


def compute_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> None:
    """Check a webhook signature against the shared secret.

    Fails closed: an unset secret or a missing signature is rejected.

    Args:
        body: Raw request body exactly as received
        signature: Hex signature from the request header
        secret: Shared webhook secret

    Raises:
        AuthError: If the signature cannot be verified
    """
    if not secret:
        raise AuthError("Webhook secret is not configured")
    if not signature:
        raise AuthError("Missing webhook signature")
    expected = compute_signature(body, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise AuthError("Invalid webhook signature")


@dataclass
class WebhookEvent:
    """A lifecycle event extracted from a webhook body."""

    event_type: str
    payload: Any

    @classmethod
    def from_body(cls, body: Any) -> "WebhookEvent":
        """Accept ``{"type", "data"}`` and ``{"message": {"type", ...}}`` shapes."""
        if not isinstance(body, dict):
            raise MalformedEvent("unknown", "body must be a JSON object")
        if isinstance(body.get("message"), dict):
            message = body["message"]
            return cls(event_type=str(message.get("type", "")), payload=message)
        return cls(event_type=str(body.get("type", "")), payload=body.get("data"))


@dataclass
class FunctionCallRequest:
    """An in-call function call from the provider."""

    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""
    assistant_id: str = ""

    @classmethod
    def from_body(cls, body: Any) -> "FunctionCallRequest":
        body = body if isinstance(body, dict) else {}
        function_call = body.get("functionCall")
        function_call = function_call if isinstance(function_call, dict) else {}
        call = body.get("call")
        call = call if isinstance(call, dict) else {}
        parameters = function_call.get("parameters")
        return cls(
            name=str(function_call.get("name", "")),
            parameters=parameters if isinstance(parameters, dict) else {},
            call_id=str(call.get("id", "")),
            assistant_id=str(call.get("assistantId", "")),
        )


class WebhookHandler:
    """Handles incoming provider webhooks.

    This class processes:
    - Lifecycle events (call-started, transcript, call-ended)
    - Function calls made by the assistant during a live call
    """

    def __init__(
        self,
        call_tracker: CallLifecycleTracker,
        webhook_secret: str,
        knowledge_resolver: KnowledgeResolver | None = None,
        assistants: AssistantRepository | None = None,
        call_records: CallRecordRepository | None = None,
    ) -> None:
        """Initialize the webhook handler.

        Args:
            call_tracker: Tracker that owns call records.
            webhook_secret: Shared secret for signature verification.
            knowledge_resolver: Resolver for knowledge lookups (optional).
            assistants: Assistant lookups for call transfers (optional).
            call_records: Call log for recording transfer requests (optional).
        """
        self._call_tracker = call_tracker
        self._webhook_secret = webhook_secret
        self._knowledge_resolver = knowledge_resolver
        self._assistants = assistants
        self._call_records = call_records

    def authenticate(self, body: bytes, signature: str | None) -> None:
        """Verify a request before anything else looks at it.

        Raises:
            AuthError: If the signature is missing or wrong.
        """
        try:
            verify_signature(body, signature, self._webhook_secret)
        except AuthError as e:
            logger.warning(f"Rejected webhook: {e}")
            raise

    async def handle_event(self, body: bytes, signature: str | None) -> dict[str, Any]:
        """Authenticate and ingest one lifecycle event.

        Classification problems (bad JSON, no call id, unknown type) are
        logged and acknowledged so the provider does not retry them.

        Args:
            body: Raw request body.
            signature: Signature header value.

        Returns:
            Acknowledgment response.

        Raises:
            AuthError: If the signature is missing or wrong.
        """
        self.authenticate(body, signature)

        try:
            data = json.loads(body)
        except ValueError as e:
            # Invalid JSON or invalid UTF-8
            logger.warning(f"Dropping webhook with undecodable body: {e}")
            return {"success": True, "processed": False, "error": MalformedEvent.__name__}

        try:
            event = WebhookEvent.from_body(data)
            ack = await self._call_tracker.ingest(event.event_type, event.payload)
        except IngestError as e:
            return {"success": True, "processed": False, "error": type(e).__name__}

        return {
            "success": True,
            "processed": ack.applied,
            "call_id": ack.external_call_id,
            "status": ack.status.value,
        }

    async def handle_function_call(self, body: bytes, signature: str | None) -> dict[str, Any]:
        """Authenticate and answer an in-call function call.

        Args:
            body: Raw request body.
            signature: Signature header value.

        Returns:
            Function result for the provider to speak or act on.

        Raises:
            AuthError: If the signature is missing or wrong.
        """
        self.authenticate(body, signature)

        try:
            request = FunctionCallRequest.from_body(json.loads(body))
        except ValueError:
            logger.warning("Function call with undecodable body")
            return {"result": LOOKUP_FAILED_MESSAGE}

        if request.name == FUNCTION_SEARCH_KNOWLEDGE:
            return await self._search_knowledge(request)
        if request.name == FUNCTION_TRANSFER_CALL:
            return self._transfer_call(request)

        logger.warning(f"Unknown function call: {request.name!r}")
        return {"result": "Function not found"}

    async def _search_knowledge(self, request: FunctionCallRequest) -> dict[str, Any]:
        query = str(request.parameters.get("query", ""))
        if not self._knowledge_resolver:
            return {"result": LOOKUP_FAILED_MESSAGE, "escalate": True}

        try:
            outcome = await self._knowledge_resolver.resolve(request.assistant_id, query)
        except Exception as e:
            logger.error(f"Knowledge lookup failed for call {request.call_id}: {e}")
            return {"result": LOOKUP_FAILED_MESSAGE, "escalate": True}

        if isinstance(outcome, Answer):
            return {"result": outcome.text, "source": outcome.source}
        return {"result": outcome.message, "escalate": True}

    def _transfer_call(self, request: FunctionCallRequest) -> dict[str, Any]:
        reason = str(request.parameters.get("reason", ""))
        phone_number = None
        if self._assistants:
            try:
                phone_number = self._assistants.get_transfer_number(request.assistant_id)
            except Exception as e:
                logger.error(f"Transfer lookup failed for call {request.call_id}: {e}")

        if not phone_number:
            return {"result": TRANSFER_UNAVAILABLE_MESSAGE}

        logger.info(f"Transferring call {request.call_id}: {reason}")
        if self._call_records and request.call_id:
            try:
                found = self._call_records.update_summary(
                    request.call_id, f"Transfer requested: {reason}"
                )
                if not found:
                    logger.warning(f"No call record for transferred call {request.call_id}")
            except Exception as e:
                logger.error(f"Failed to log transfer for call {request.call_id}: {e}")

        return {
            "result": TRANSFER_MESSAGE,
            "transfer": {"phoneNumber": phone_number, "reason": reason},
        }
