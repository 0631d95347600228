"""Unit tests for WebhookVerifier and WebhookProcessor.

Signature checks use real HMAC-SHA256; the processor runs against a real
ReconciliationEngine over InMemoryContactStore to prove rejected deliveries
never mutate the store.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import pytest

from src.contact_sync.contacts.engine import ReconciliationEngine
from src.contact_sync.contacts.errors import (
    ConfigError,
    InvalidSignatureError,
    InvalidWebhookPayloadError,
)
from src.contact_sync.contacts.identity import IdentityResolver
from src.contact_sync.contacts.schemas import EventOutcome
from src.contact_sync.contacts.webhooks import WebhookProcessor, WebhookVerifier

SECRET = "whsec-test"


def _body(event_type: str = "contact.created", remote_id: int = 1) -> bytes:
    return json.dumps(
        {
            "type": event_type,
            "data": {
                "id": remote_id,
                "firstName": "Ada",
                "lastName": "Lovelace",
                "email_addresses": [{"email": "ada@example.com", "primary": True}],
                "companyName": "Analytical Engines",
            },
        }
    ).encode("utf-8")


def _sign(payload: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


# ── Verifier ───────────────────────────────────────────────────────────────


class TestWebhookVerifier:
    def test_empty_secret_is_config_error(self):
        with pytest.raises(ConfigError):
            WebhookVerifier("")

    def test_valid_signature(self):
        payload = _body()
        assert WebhookVerifier(SECRET).verify(payload, _sign(payload)) is True

    def test_sign_matches_reference_hmac(self):
        payload = b'{"type":"contact.deleted"}'
        assert WebhookVerifier(SECRET).sign(payload) == _sign(payload)

    def test_prefixed_and_uppercase_signature_accepted(self):
        payload = _body()
        signature = "sha256=" + _sign(payload).upper()
        assert WebhookVerifier(SECRET).verify(payload, signature) is True

    def test_missing_signature_fails(self):
        verifier = WebhookVerifier(SECRET)
        assert verifier.verify(_body(), None) is False
        assert verifier.verify(_body(), "") is False

    def test_wrong_secret_fails(self):
        payload = _body()
        assert WebhookVerifier(SECRET).verify(payload, _sign(payload, "other")) is False

    def test_modified_body_fails(self):
        payload = _body()
        signature = _sign(payload)
        tampered = payload.replace(b"Ada", b"Eve")
        assert WebhookVerifier(SECRET).verify(tampered, signature) is False


# ── Processor ──────────────────────────────────────────────────────────────


class TestWebhookProcessor:
    @pytest.fixture
    def processor(self, store, source_factory):
        engine = ReconciliationEngine(
            client=source_factory(), resolver=IdentityResolver(store), store=store
        )
        return WebhookProcessor(verifier=WebhookVerifier(SECRET), engine=engine)

    async def test_signed_event_is_applied(self, processor, store):
        payload = _body()

        result = await processor.handle(payload, _sign(payload))

        assert result.outcome == EventOutcome.UPSERTED
        user = store.users["1"]
        assert (user.first_name, user.email) == ("Ada", "ada@example.com")
        assert user.organization_name == "Analytical Engines"

    async def test_bad_signature_mutates_nothing(self, processor, store):
        with pytest.raises(InvalidSignatureError):
            await processor.handle(_body(), "0" * 64)

        assert store.upsert_calls == 0
        assert store.organizations == {}

    async def test_missing_and_wrong_signature_are_indistinguishable(self, processor):
        payload = _body()
        with pytest.raises(InvalidSignatureError) as missing:
            await processor.handle(payload, None)
        with pytest.raises(InvalidSignatureError) as wrong:
            await processor.handle(payload, _sign(payload, "other"))

        assert type(missing.value) is type(wrong.value)
        assert str(missing.value) == str(wrong.value)

    async def test_signature_checked_before_parsing(self):
        engine = AsyncMock()
        processor = WebhookProcessor(verifier=WebhookVerifier(SECRET), engine=engine)

        with pytest.raises(InvalidSignatureError):
            await processor.handle(b"not json", "deadbeef")
        engine.apply_event.assert_not_awaited()

    async def test_invalid_payload_rejected(self, processor, store):
        payload = b'{"type": "contact.created"}'

        with pytest.raises(InvalidWebhookPayloadError):
            await processor.handle(payload, _sign(payload))
        assert store.upsert_calls == 0

    async def test_delete_event_for_absent_user(self, processor):
        payload = _body("contact.deleted", remote_id=404)
        result = await processor.handle(payload, _sign(payload))
        assert result.outcome == EventOutcome.ALREADY_ABSENT

    async def test_unknown_event_type_ignored(self, processor, store):
        payload = _body("contact.merged")
        result = await processor.handle(payload, _sign(payload))

        assert result.outcome == EventOutcome.IGNORED
        assert store.users == {}
