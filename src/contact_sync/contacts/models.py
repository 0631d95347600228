"""Contact sync persistence models.

Two SQLAlchemy models:
- OrganizationModel: Companies named by remote contacts, unique by exact name
- UserModel: Local mirror of a remote contact, unique by remote_id and by email

The unique constraints are what make concurrent resolve-or-create and
upsert safe: the repository relies on INSERT ... ON CONFLICT against them
rather than on read-then-write checks.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.contact_sync.core.database import Base


class OrganizationModel(Base):
    """Organization created lazily by the first contact naming it.

    Name matching is exact and case-sensitive.
    """

    __tablename__ = "organizations"
    __table_args__ = (UniqueConstraint("name", name="uq_organization_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    users: Mapped[list[UserModel]] = relationship(back_populates="organization")


class UserModel(Base):
    """Local user mirrored from a remote CRM contact.

    remote_id is immutable once set; exactly one row exists per remote id.
    """

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("remote_id", name="uq_user_remote_id"),
        UniqueConstraint("email", name="uq_user_email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    remote_id: Mapped[str] = mapped_column(String(100), nullable=False)
    first_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    organization_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    organization: Mapped[OrganizationModel | None] = relationship(back_populates="users")
