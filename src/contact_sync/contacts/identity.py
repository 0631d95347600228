"""Identity resolution -- map a remote contact onto the local user it should become.

Primary email policy, applied to every contact:
1. the first address flagged primary,
2. otherwise the first listed address,
3. otherwise contact_<remoteId>@placeholder.com.
Addresses are trimmed and lower-cased before selection; blank ones are dropped.

Email collisions: when the chosen address already belongs to a user mirrored
from a different remote id, that user is left alone and the incoming contact
gets <local>+<remoteId>@<domain>. The derived address is deterministic, so
re-syncing the same contact keeps producing the same value. Only if that
address is itself taken by yet another contact is a timestamp appended,
and later syncs keep the stamped address already stored for that contact.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from src.contact_sync.contacts.schemas import RemoteContact, UserUpsert
from src.contact_sync.contacts.store import ContactStore

logger = structlog.get_logger(__name__)

PLACEHOLDER_DOMAIN = "placeholder.com"


def placeholder_email(remote_id: str) -> str:
    """Synthesized address for a contact with no email at all."""
    return f"contact_{remote_id}@{PLACEHOLDER_DOMAIN}"


def select_primary_email(contact: RemoteContact) -> str:
    """Pick the canonical email for a contact (see module docstring)."""
    addresses = [
        (entry.email.strip().lower(), entry.primary)
        for entry in contact.email_addresses
        if entry.email and entry.email.strip()
    ]
    for address, primary in addresses:
        if primary:
            return address
    if addresses:
        return addresses[0][0]
    return placeholder_email(contact.id)


def disambiguate_email(email: str, remote_id: str, suffix: str | None = None) -> str:
    """Derive a per-contact address from a colliding one.

    >>> disambiguate_email("x@y.com", "2")
    'x+2@y.com'
    """
    local, sep, domain = email.partition("@")
    tag = remote_id if suffix is None else f"{remote_id}.{suffix}"
    if not sep:
        return f"{email}+{tag}"
    return f"{local}+{tag}@{domain}"


def is_timestamped_variant(candidate: str, email: str, remote_id: str) -> bool:
    """True if candidate is a timestamp-suffixed address derived from email.

    >>> is_timestamped_variant("x+2.1700000000@y.com", "x@y.com", "2")
    True
    >>> is_timestamped_variant("x+3.1700000000@y.com", "x@y.com", "2")
    False
    """
    prefix = disambiguate_email(email, remote_id, suffix="")
    local_prefix, _, domain = prefix.partition("@")
    head, sep, tail = candidate.partition("@")
    if domain and (not sep or tail != domain):
        return False
    stamp = head[len(local_prefix):] if head.startswith(local_prefix) else ""
    return stamp.isdigit()


class IdentityResolver:
    """Compute the normalized local fields for a remote contact.

    Performs no writes except organization resolve-or-create, which the
    store makes idempotent.

    Args:
        store: ContactStore used for organization upsert and email lookups.
        clock: Returns unix seconds; injectable for tests.
    """

    def __init__(self, store: ContactStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    async def resolve_organization(self, company_name: str | None) -> int | None:
        """Resolve-or-create the organization named by the contact, if any."""
        if company_name is None:
            return None
        name = company_name.strip()
        if not name:
            return None
        organization = await self._store.upsert_organization(name)
        return organization.id

    async def resolve_email(self, remote_id: str, email: str) -> str:
        """Return an email for this contact that no other contact owns."""
        owner = await self._store.find_user_by_email(email)
        if owner is None or owner.remote_id == remote_id:
            return email

        candidate = disambiguate_email(email, remote_id)
        candidate_owner = await self._store.find_user_by_email(candidate)
        if candidate_owner is not None and candidate_owner.remote_id != remote_id:
            current = await self._store.find_user_by_remote_id(remote_id)
            if current is not None and is_timestamped_variant(current.email, email, remote_id):
                return current.email
            candidate = disambiguate_email(email, remote_id, suffix=str(int(self._clock())))

        logger.warning(
            "identity.email_collision",
            remote_id=remote_id,
            email=email,
            owner_remote_id=owner.remote_id,
            resolved_email=candidate,
        )
        return candidate

    async def resolve(self, contact: RemoteContact) -> UserUpsert:
        """Map a remote contact to the values its local user should hold."""
        email = await self.resolve_email(contact.id, select_primary_email(contact))
        organization_id = await self.resolve_organization(contact.company_name)

        return UserUpsert(
            remote_id=contact.id,
            first_name=contact.first_name.strip(),
            last_name=contact.last_name.strip(),
            email=email,
            organization_id=organization_id,
        )
