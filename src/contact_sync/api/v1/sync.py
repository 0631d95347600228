"""REST API endpoints for triggering and inspecting contact sync.

The trigger endpoint calls ReconciliationEngine.full_sync() directly and
returns the aggregate counts, including under partial failure. Credential
problems come back as 401 so the caller can ask for a new API key instead
of retrying.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from src.contact_sync.api.deps import get_sync_engine, require_api_key
from src.contact_sync.contacts.engine import ReconciliationEngine
from src.contact_sync.contacts.errors import (
    InvalidCredentialsError,
    RemoteError,
    SyncInProgressError,
)
from src.contact_sync.contacts.schemas import SyncReport, SyncState

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_api_key)])


class SyncStatusResponse(BaseModel):
    """Current engine state and the last completed report."""

    state: SyncState
    running: bool
    last_report: SyncReport | None = None


class ConnectionTestResponse(BaseModel):
    connected: bool


@router.post("", response_model=SyncReport)
async def trigger_full_sync(
    engine: ReconciliationEngine = Depends(get_sync_engine),
) -> SyncReport:
    """Run a full sync now and return its report."""
    try:
        return await engine.full_sync()
    except InvalidCredentialsError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except SyncInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RemoteError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    engine: ReconciliationEngine = Depends(get_sync_engine),
) -> SyncStatusResponse:
    """Return the engine state without contacting the CRM."""
    return SyncStatusResponse(
        state=engine.state,
        running=engine.is_running,
        last_report=engine.last_report,
    )


@router.get("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    engine: ReconciliationEngine = Depends(get_sync_engine),
) -> ConnectionTestResponse:
    """Check whether the configured Wealthbox API key works."""
    return ConnectionTestResponse(connected=await engine.test_connection())
