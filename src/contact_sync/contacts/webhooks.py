"""Inbound webhook verification and dispatch.

WebhookVerifier checks an HMAC-SHA256 hex signature computed over the exact
raw request body with the shared secret, using a constant-time comparison.
A missing signature fails closed.

WebhookProcessor rejects unverified or unparseable deliveries before anything
reaches the store, then hands the event to ReconciliationEngine.apply_event().
Missing and wrong signatures are rejected identically.
"""

from __future__ import annotations

import hashlib
import hmac

import structlog
from pydantic import ValidationError

from src.contact_sync.contacts.engine import ReconciliationEngine
from src.contact_sync.contacts.errors import (
    ConfigError,
    InvalidSignatureError,
    InvalidWebhookPayloadError,
)
from src.contact_sync.contacts.schemas import EventResult, WebhookEvent
from src.contact_sync.core.monitoring import webhook_events_total

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Wealthbox-Signature"
_SIGNATURE_PREFIX = "sha256="


class WebhookVerifier:
    """HMAC-SHA256 signature verification for webhook payloads.

    Args:
        secret: Shared webhook secret configured in the CRM.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ConfigError("Missing webhook secret (WEALTHBOX_WEBHOOK_SECRET)")
        self._secret = secret.encode("utf-8")

    def sign(self, payload: bytes) -> str:
        """Hex HMAC-SHA256 of the raw payload."""
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify(self, payload: bytes, signature: str | None) -> bool:
        """Return True only if signature matches the payload's HMAC."""
        if not signature:
            return False
        supplied = signature.strip().lower()
        if supplied.startswith(_SIGNATURE_PREFIX):
            supplied = supplied[len(_SIGNATURE_PREFIX):]
        return hmac.compare_digest(
            supplied.encode("utf-8"), self.sign(payload).encode("utf-8")
        )


class WebhookProcessor:
    """Verify, parse and apply one webhook delivery.

    Args:
        verifier: WebhookVerifier holding the shared secret.
        engine: ReconciliationEngine applying the parsed event.
    """

    def __init__(self, verifier: WebhookVerifier, engine: ReconciliationEngine) -> None:
        self._verifier = verifier
        self._engine = engine

    async def handle(self, payload: bytes, signature: str | None) -> EventResult:
        """Process a raw webhook body.

        Raises:
            InvalidSignatureError: Signature missing or wrong; nothing applied.
            InvalidWebhookPayloadError: Body is not a valid event; nothing applied.
            RecordSyncError: The event was valid but applying it failed.
        """
        if not self._verifier.verify(payload, signature):
            webhook_events_total.labels(outcome="rejected").inc()
            logger.warning("webhook.rejected", payload_bytes=len(payload))
            raise InvalidSignatureError()

        try:
            event = WebhookEvent.model_validate_json(payload)
        except ValidationError as exc:
            webhook_events_total.labels(outcome="invalid").inc()
            logger.warning("webhook.invalid_payload", error=str(exc))
            raise InvalidWebhookPayloadError(f"Invalid webhook payload: {exc}") from exc

        logger.info("webhook.received", event_type=event.type, remote_id=event.data.id)
        result = await self._engine.apply_event(event)
        webhook_events_total.labels(outcome=result.outcome.value).inc()
        return result
