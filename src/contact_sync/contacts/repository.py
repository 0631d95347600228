"""Contact repository -- async SQLAlchemy implementation of ContactStore.

Uses the session_factory callable pattern: an async generator yielding
AsyncSession instances is injected at construction.

Both upserts are single INSERT ... ON CONFLICT statements against the unique
constraints on organizations.name and users.remote_id, so concurrent calls
for the same key converge on one row without client-side locking. The user
upsert only rewrites the row when a field actually changed, which keeps a
repeated identical upsert from touching updated_at.

PostgreSQL is the production dialect; SQLite is supported for tests and
local development.
"""

from __future__ import annotations

import math
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.contact_sync.contacts.errors import EmailTakenError
from src.contact_sync.contacts.models import OrganizationModel, UserModel
from src.contact_sync.contacts.schemas import (
    OrganizationRead,
    UserPage,
    UserRead,
    UserUpsert,
)
from src.contact_sync.contacts.store import ContactStore

logger = structlog.get_logger(__name__)

# Columns rewritten when an existing remote_id is upserted
_UPDATABLE_USER_FIELDS = ("first_name", "last_name", "email", "organization_id")


# ── Serialization Helpers ───────────────────────────────────────────────────


def _row_to_user(model: UserModel, organization_name: str | None) -> UserRead:
    """Convert a UserModel (plus joined organization name) to UserRead."""
    return UserRead(
        id=model.id,
        remote_id=model.remote_id,
        first_name=model.first_name,
        last_name=model.last_name,
        email=model.email,
        organization_id=model.organization_id,
        organization_name=organization_name,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT construct supporting on_conflict_do_update."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert is not supported on dialect {dialect!r}")


def _user_select() -> Any:
    return select(UserModel, OrganizationModel.name).outerjoin(
        OrganizationModel, UserModel.organization_id == OrganizationModel.id
    )


# ── Repository ──────────────────────────────────────────────────────────────


class ContactRepository(ContactStore):
    """Async persistence for users and organizations.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Take one session from the factory and close it deterministically."""
        sessions = self._session_factory()
        try:
            yield await anext(sessions)
        finally:
            await sessions.aclose()

    # ── Organizations ───────────────────────────────────────────────────────

    async def upsert_organization(self, name: str) -> OrganizationRead:
        """Resolve-or-create an organization by exact, case-sensitive name.

        The no-op DO UPDATE makes RETURNING yield the existing row on conflict,
        so concurrent callers with the same name all get the same id.
        """
        async with self._session() as session:
            insert_stmt = _insert_for(session, OrganizationModel).values(name=name)
            stmt = insert_stmt.on_conflict_do_update(
                index_elements=[OrganizationModel.name],
                set_={"name": insert_stmt.excluded.name},
            ).returning(
                OrganizationModel.id,
                OrganizationModel.name,
                OrganizationModel.created_at,
            )
            result = await session.execute(stmt)
            row = result.one()
            await session.commit()

        logger.debug("contact_repo.organization_upserted", organization_id=row.id, name=name)
        return OrganizationRead(id=row.id, name=row.name, created_at=row.created_at)

    async def list_organizations(self) -> list[OrganizationRead]:
        """List organizations ordered by name, each with its user count."""
        async with self._session() as session:
            stmt = (
                select(OrganizationModel, func.count(UserModel.id))
                .outerjoin(UserModel, UserModel.organization_id == OrganizationModel.id)
                .group_by(OrganizationModel.id)
                .order_by(OrganizationModel.name)
            )
            result = await session.execute(stmt)
            return [
                OrganizationRead(
                    id=org.id,
                    name=org.name,
                    created_at=org.created_at,
                    user_count=count,
                )
                for org, count in result.all()
            ]

    async def get_organization(self, organization_id: int) -> OrganizationRead | None:
        async with self._session() as session:
            stmt = (
                select(OrganizationModel, func.count(UserModel.id))
                .outerjoin(UserModel, UserModel.organization_id == OrganizationModel.id)
                .where(OrganizationModel.id == organization_id)
                .group_by(OrganizationModel.id)
            )
            row = (await session.execute(stmt)).one_or_none()
        if row is None:
            return None
        org, count = row
        return OrganizationRead(
            id=org.id, name=org.name, created_at=org.created_at, user_count=count
        )

    async def list_organization_users(self, organization_id: int) -> list[UserRead]:
        """All users of one organization, unpaginated."""
        async with self._session() as session:
            stmt = (
                _user_select()
                .where(UserModel.organization_id == organization_id)
                .order_by(UserModel.first_name, UserModel.id)
            )
            rows = (await session.execute(stmt)).all()
        return [_row_to_user(model, org_name) for model, org_name in rows]

    # ── Users ───────────────────────────────────────────────────────────────

    async def upsert_user(self, data: UserUpsert) -> UserRead:
        """Insert or update the user keyed by remote_id.

        Raises:
            EmailTakenError: If the email belongs to a user with another remote_id.
            sqlalchemy.exc.IntegrityError: Any other constraint violation.
        """
        try:
            return await self._write_user(data)
        except IntegrityError as exc:
            owner = await self.find_user_by_email(data.email)
            if owner is None or owner.remote_id == data.remote_id:
                raise
            logger.info(
                "contact_repo.email_taken",
                remote_id=data.remote_id,
                owner_remote_id=owner.remote_id,
            )
            raise EmailTakenError(data.email) from exc

    async def _write_user(self, data: UserUpsert) -> UserRead:
        values = data.model_dump()
        async with self._session() as session:
            insert_stmt = _insert_for(session, UserModel).values(**values)
            excluded = insert_stmt.excluded
            changed = or_(
                *(
                    getattr(UserModel, field).is_distinct_from(getattr(excluded, field))
                    for field in _UPDATABLE_USER_FIELDS
                )
            )
            stmt = insert_stmt.on_conflict_do_update(
                index_elements=[UserModel.remote_id],
                set_={
                    **{field: getattr(excluded, field) for field in _UPDATABLE_USER_FIELDS},
                    "updated_at": func.now(),
                },
                where=changed,
            ).returning(UserModel.id)
            result = await session.execute(stmt)
            written_id = result.scalar_one_or_none()
            await session.commit()

            row = (
                await session.execute(_user_select().where(UserModel.remote_id == data.remote_id))
            ).one()

        user = _row_to_user(row[0], row[1])
        logger.debug(
            "contact_repo.user_upserted",
            remote_id=data.remote_id,
            user_id=user.id,
            changed=written_id is not None,
        )
        return user

    async def delete_user(self, remote_id: str) -> bool:
        """Delete the user mirrored from remote_id. Absent is not an error."""
        async with self._session() as session:
            result = await session.execute(
                delete(UserModel).where(UserModel.remote_id == remote_id)
            )
            await session.commit()
            deleted = (result.rowcount or 0) > 0

        logger.debug("contact_repo.user_deleted", remote_id=remote_id, deleted=deleted)
        return deleted

    async def find_user_by_email(self, email: str) -> UserRead | None:
        async with self._session() as session:
            row = (
                await session.execute(_user_select().where(UserModel.email == email))
            ).one_or_none()
            if row is None:
                return None
            return _row_to_user(row[0], row[1])

    async def find_user_by_remote_id(self, remote_id: str) -> UserRead | None:
        async with self._session() as session:
            row = (
                await session.execute(_user_select().where(UserModel.remote_id == remote_id))
            ).one_or_none()
            if row is None:
                return None
            return _row_to_user(row[0], row[1])

    async def list_users(
        self,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
        organization_id: int | None = None,
    ) -> UserPage:
        """List users ordered by first name.

        Args:
            page: 1-based page number.
            limit: Page size.
            search: Case-insensitive substring matched against names and email.
            organization_id: Restrict to one organization.

        Returns:
            UserPage with the requested slice and totals.
        """
        page = max(page, 1)
        limit = max(limit, 1)

        conditions = []
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    UserModel.first_name.ilike(pattern),
                    UserModel.last_name.ilike(pattern),
                    UserModel.email.ilike(pattern),
                )
            )
        if organization_id is not None:
            conditions.append(UserModel.organization_id == organization_id)

        async with self._session() as session:
            count_stmt = select(func.count(UserModel.id)).where(*conditions)
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = (
                _user_select()
                .where(*conditions)
                .order_by(UserModel.first_name, UserModel.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = (await session.execute(stmt)).all()

        return UserPage(
            users=[_row_to_user(model, org_name) for model, org_name in rows],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )
