"""Wealthbox webhook receiver.

The endpoint reads the raw body (the signature covers the exact bytes) and
hands it to WebhookProcessor. It does not use the API key guard; the HMAC
signature authenticates the sender. Rejections carry no detail about why
the signature failed.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.contact_sync.api.deps import get_webhook_processor
from src.contact_sync.contacts.errors import (
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    RecordSyncError,
)
from src.contact_sync.contacts.webhooks import SIGNATURE_HEADER, WebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/wealthbox")
async def receive_wealthbox_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> dict:
    """Verify and apply one contact event."""
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        result = await processor.handle(payload, signature)
    except InvalidSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except InvalidWebhookPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc
    except RecordSyncError as exc:
        logger.error("webhook.apply_failed", remote_id=exc.remote_id, error=str(exc.cause))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process webhook",
        ) from exc

    return {"status": "ok", "outcome": result.outcome.value, "remote_id": result.remote_id}
