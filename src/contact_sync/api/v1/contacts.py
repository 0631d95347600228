"""Read-only listings of synced users and organizations.

These endpoints only read the local store; they never call the CRM. They are
public like the directory they expose; only sync and CRM passthrough routes
check the API key.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.contact_sync.api.deps import get_contact_store
from src.contact_sync.contacts.schemas import (
    OrganizationRead,
    OrganizationStats,
    UserPage,
    UserRead,
)
from src.contact_sync.contacts.store import ContactStore

router = APIRouter(tags=["contacts"])


async def _organization_or_404(store: ContactStore, organization_id: int) -> OrganizationRead:
    organization = await store.get_organization(organization_id)
    if organization is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Organization {organization_id} not found",
        )
    return organization


@router.get("/users", response_model=UserPage)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str | None = Query(None, max_length=200),
    organization_id: int | None = Query(None),
    store: ContactStore = Depends(get_contact_store),
) -> UserPage:
    """Paginated users, searchable by name or email."""
    return await store.list_users(
        page=page, limit=limit, search=search, organization_id=organization_id
    )


@router.get("/organizations", response_model=list[OrganizationRead])
async def list_organizations(
    store: ContactStore = Depends(get_contact_store),
) -> list[OrganizationRead]:
    """All organizations with their user counts."""
    return await store.list_organizations()


@router.get("/organizations/{organization_id}/users", response_model=list[UserRead])
async def list_organization_users(
    organization_id: int,
    store: ContactStore = Depends(get_contact_store),
) -> list[UserRead]:
    """Every user attached to one organization, ordered by first name."""
    await _organization_or_404(store, organization_id)
    return await store.list_organization_users(organization_id)


@router.get("/organizations/{organization_id}/stats", response_model=OrganizationStats)
async def organization_stats(
    organization_id: int,
    store: ContactStore = Depends(get_contact_store),
) -> OrganizationStats:
    """Organization name, creation time, user total and the users themselves."""
    organization = await _organization_or_404(store, organization_id)
    users = await store.list_organization_users(organization_id)
    return OrganizationStats(
        id=organization.id,
        name=organization.name,
        total_users=len(users),
        users=users,
        created_at=organization.created_at,
    )
