"""Contact store abstract base class -- the persistence interface the sync core consumes.

The ReconciliationEngine and IdentityResolver only talk to this interface.
ContactRepository is the SQLAlchemy implementation; tests substitute
in-memory doubles.

Implementations must make upsert_user and upsert_organization idempotent and
safe under concurrent calls for the same key (uniqueness constraint plus
insert-on-conflict, never read-then-write).
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.contact_sync.contacts.schemas import (
    OrganizationRead,
    UserPage,
    UserRead,
    UserUpsert,
)


class ContactStore(ABC):
    """Abstract interface for local user/organization persistence.

    Methods:
        upsert_user: Insert or update a user keyed by remote_id.
        delete_user: Delete a user by remote_id; False if already absent.
        upsert_organization: Resolve-or-create an organization by exact name.
        find_user_by_email: Look up the user owning an email address.
        find_user_by_remote_id: Look up a user by remote id.
        list_users: Paginated, searchable user listing.
        list_organizations: All organizations with user counts.
        get_organization: One organization with its user count.
        list_organization_users: Every user in one organization.
    """

    @abstractmethod
    async def upsert_user(self, data: UserUpsert) -> UserRead:
        """Insert or update a user keyed by remote_id.

        Raises:
            EmailTakenError: The email belongs to a user with another remote_id.
        """
        ...

    @abstractmethod
    async def delete_user(self, remote_id: str) -> bool:
        """Delete a user by remote_id. Returns False if no row existed."""
        ...

    @abstractmethod
    async def upsert_organization(self, name: str) -> OrganizationRead:
        """Return the organization with this exact name, creating it if needed."""
        ...

    @abstractmethod
    async def find_user_by_email(self, email: str) -> UserRead | None:
        """Return the user owning this email, if any."""
        ...

    @abstractmethod
    async def find_user_by_remote_id(self, remote_id: str) -> UserRead | None:
        """Return the user mirrored from this remote id, if any."""
        ...

    @abstractmethod
    async def list_users(
        self,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
        organization_id: int | None = None,
    ) -> UserPage:
        """List users ordered by first name."""
        ...

    @abstractmethod
    async def list_organizations(self) -> list[OrganizationRead]:
        """List organizations ordered by name, with user counts."""
        ...

    @abstractmethod
    async def get_organization(self, organization_id: int) -> OrganizationRead | None:
        """Return one organization with its user count, if it exists."""
        ...

    @abstractmethod
    async def list_organization_users(self, organization_id: int) -> list[UserRead]:
        """Return every user of an organization, ordered by first name."""
        ...
