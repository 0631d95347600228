"""Shared fixtures for contact sync tests.

Provides:
- InMemoryContactStore: ContactStore test double enforcing the same
  uniqueness rules as the database (remote_id, email, organization name)
- FakeContactSource: stands in for WealthboxClient.fetch_all()
- sqlite-backed session_factory for ContactRepository tests (aiosqlite,
  one temporary database file per test)
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import AsyncGenerator, AsyncIterator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.contact_sync.contacts import models  # noqa: F401
from src.contact_sync.contacts.errors import EmailTakenError
from src.contact_sync.contacts.schemas import (
    InvalidRemoteRecord,
    OrganizationRead,
    RemoteContact,
    UserPage,
    UserRead,
    UserUpsert,
)
from src.contact_sync.contacts.store import ContactStore
from src.contact_sync.core.database import Base


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryContactStore(ContactStore):
    """In-memory ContactStore for testing without a database."""

    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.users: dict[str, UserRead] = {}
        self.organizations: dict[str, OrganizationRead] = {}
        self.fail_on = fail_on or set()
        self.upsert_calls = 0
        self.delete_calls = 0
        self._next_user_id = 1
        self._next_org_id = 1

    async def upsert_user(self, data: UserUpsert) -> UserRead:
        self.upsert_calls += 1
        if data.remote_id in self.fail_on:
            raise RuntimeError(f"store rejected {data.remote_id}")
        for user in self.users.values():
            if user.email == data.email and user.remote_id != data.remote_id:
                raise EmailTakenError(data.email)

        now = datetime.now(timezone.utc)
        existing = self.users.get(data.remote_id)
        org_name = next(
            (o.name for o in self.organizations.values() if o.id == data.organization_id),
            None,
        )
        if existing is None:
            user = UserRead(
                id=self._next_user_id,
                **data.model_dump(),
                organization_name=org_name,
                created_at=now,
                updated_at=now,
            )
            self._next_user_id += 1
        elif existing.model_dump(include=set(UserUpsert.model_fields)) == data.model_dump():
            user = existing
        else:
            user = existing.model_copy(
                update={**data.model_dump(), "organization_name": org_name, "updated_at": now}
            )
        self.users[data.remote_id] = user
        return user

    async def delete_user(self, remote_id: str) -> bool:
        self.delete_calls += 1
        return self.users.pop(remote_id, None) is not None

    async def upsert_organization(self, name: str) -> OrganizationRead:
        # Yield so concurrent callers interleave like real I/O would
        await asyncio.sleep(0)
        if name not in self.organizations:
            self.organizations[name] = OrganizationRead(
                id=self._next_org_id, name=name, created_at=datetime.now(timezone.utc)
            )
            self._next_org_id += 1
        return self.organizations[name]

    async def find_user_by_email(self, email: str) -> UserRead | None:
        return next((u for u in self.users.values() if u.email == email), None)

    async def find_user_by_remote_id(self, remote_id: str) -> UserRead | None:
        return self.users.get(remote_id)

    async def list_users(
        self,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
        organization_id: int | None = None,
    ) -> UserPage:
        users = sorted(self.users.values(), key=lambda u: (u.first_name, u.id))
        if search:
            needle = search.lower()
            users = [
                u
                for u in users
                if needle in u.first_name.lower()
                or needle in u.last_name.lower()
                or needle in u.email.lower()
            ]
        if organization_id is not None:
            users = [u for u in users if u.organization_id == organization_id]
        start = (page - 1) * limit
        return UserPage(
            users=users[start : start + limit],
            total=len(users),
            page=page,
            limit=limit,
            total_pages=math.ceil(len(users) / limit),
        )

    async def list_organizations(self) -> list[OrganizationRead]:
        return [
            org.model_copy(
                update={
                    "user_count": sum(
                        1 for u in self.users.values() if u.organization_id == org.id
                    )
                }
            )
            for org in sorted(self.organizations.values(), key=lambda o: o.name)
        ]

    async def get_organization(self, organization_id: int) -> OrganizationRead | None:
        return next(
            (o for o in await self.list_organizations() if o.id == organization_id), None
        )

    async def list_organization_users(self, organization_id: int) -> list[UserRead]:
        return sorted(
            (u for u in self.users.values() if u.organization_id == organization_id),
            key=lambda u: (u.first_name, u.id),
        )


class FakeContactSource:
    """Yields a fixed contact list; optionally raises after `fail_after` records."""

    def __init__(
        self,
        contacts: list[RemoteContact | InvalidRemoteRecord] | None = None,
        error: Exception | None = None,
        fail_after: int = 0,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.contacts = contacts or []
        self.error = error
        self.fail_after = fail_after
        self.gate = gate
        self.connected = True

    async def fetch_all(self) -> AsyncIterator[RemoteContact | InvalidRemoteRecord]:
        if self.gate is not None:
            await self.gate.wait()
        for index, contact in enumerate(self.contacts):
            if self.error is not None and index == self.fail_after:
                raise self.error
            yield contact
        if self.error is not None and self.fail_after >= len(self.contacts):
            raise self.error

    async def test_connection(self) -> bool:
        return self.connected


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> InMemoryContactStore:
    return InMemoryContactStore()


@pytest.fixture
def store_factory():
    """Build an InMemoryContactStore, optionally failing for some remote ids."""
    return InMemoryContactStore


@pytest.fixture
def source_factory():
    """Build a FakeContactSource."""
    return FakeContactSource


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path):
    """Async engine over a throwaway sqlite file with the contact tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'contacts.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    """session_factory callable in the shape ContactRepository expects."""

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(sqlite_engine, expire_on_commit=False) as session:
            yield session

    return _factory
