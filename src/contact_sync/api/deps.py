"""FastAPI dependency injection for sync components and API key authentication.

Components are wired once in the application lifespan and stored on
app.state. A component that could not be built (e.g. missing Wealthbox
credentials) is None there, and endpoints depending on it answer 503.
"""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request, status

from src.contact_sync.config import get_settings
from src.contact_sync.contacts.client import WealthboxClient
from src.contact_sync.contacts.engine import ReconciliationEngine
from src.contact_sync.contacts.store import ContactStore
from src.contact_sync.contacts.webhooks import WebhookProcessor


async def require_api_key(request: Request) -> None:
    """Check the X-API-Key header when an API_KEY is configured.

    Raises:
        HTTPException(401): If the key is missing or wrong.
    """
    expected = get_settings().API_KEY
    if not expected:
        return
    supplied = request.headers.get("X-API-Key", "")
    if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


def _from_state(request: Request, name: str, label: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not configured",
        )
    return component


async def get_sync_engine(request: Request) -> ReconciliationEngine:
    """Get the ReconciliationEngine built at startup."""
    return _from_state(request, "sync_engine", "Contact sync")


async def get_contact_store(request: Request) -> ContactStore:
    """Get the ContactStore built at startup."""
    return _from_state(request, "contact_store", "Contact store")


async def get_webhook_processor(request: Request) -> WebhookProcessor:
    """Get the WebhookProcessor built at startup."""
    return _from_state(request, "webhook_processor", "Webhook processing")


async def get_wealthbox_client(request: Request) -> WealthboxClient:
    """Get the WealthboxClient built at startup."""
    return _from_state(request, "wealthbox_client", "Wealthbox client")
