"""Read-through endpoints for inspecting Wealthbox data directly.

Nothing here touches the local store. Errors map the same way as the sync
trigger: rejected credentials are 401, any other CRM failure is 502.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.contact_sync.api.deps import get_wealthbox_client, require_api_key
from src.contact_sync.contacts.client import WealthboxClient
from src.contact_sync.contacts.errors import InvalidCredentialsError, RemoteError
from src.contact_sync.contacts.schemas import ContactPage, RemoteContact, RemoteTask

router = APIRouter(
    prefix="/wealthbox", tags=["wealthbox"], dependencies=[Depends(require_api_key)]
)

T = TypeVar("T")


async def _call_remote(call: Awaitable[T]) -> T:
    try:
        return await call
    except InvalidCredentialsError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except RemoteError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


def _not_found(kind: str, remote_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Wealthbox {kind} {remote_id} not found",
    )


@router.get("/contacts", response_model=ContactPage)
async def get_contacts(
    page: int = Query(1, ge=1),
    per_page: int = Query(100, ge=1, le=1000, alias="perPage"),
    client: WealthboxClient = Depends(get_wealthbox_client),
) -> ContactPage:
    """One page of person contacts as Wealthbox returns them."""
    return await _call_remote(client.fetch_page(page, per_page))


@router.get("/contacts/all", response_model=ContactPage)
async def get_all_contacts(
    client: WealthboxClient = Depends(get_wealthbox_client),
) -> ContactPage:
    """Every contact in one bulk request."""
    return await _call_remote(client.fetch_all_bulk())


@router.get("/contacts/{contact_id}", response_model=RemoteContact)
async def get_contact(
    contact_id: str,
    client: WealthboxClient = Depends(get_wealthbox_client),
) -> RemoteContact:
    contact = await _call_remote(client.fetch_by_id(contact_id))
    if contact is None:
        raise _not_found("contact", contact_id)
    return contact


@router.get("/tasks/{task_id}", response_model=RemoteTask)
async def get_task(
    task_id: str,
    client: WealthboxClient = Depends(get_wealthbox_client),
) -> RemoteTask:
    task = await _call_remote(client.get_task(task_id))
    if task is None:
        raise _not_found("task", task_id)
    return task
