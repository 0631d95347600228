"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.contact_sync.api.v1 import contacts, sync, wealthbox, webhooks

router = APIRouter(prefix="/api/v1")

router.include_router(sync.router)
router.include_router(webhooks.router)
router.include_router(contacts.router)
router.include_router(wealthbox.router)
