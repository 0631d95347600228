"""Pydantic schemas for contact sync -- remote payloads, local records, reports.

Defines all structured types flowing through the sync pipeline:
- Remote payloads: RemoteEmail, RemoteContact, ContactPage, RemoteTask
- Local records: UserUpsert, UserRead, OrganizationRead, UserPage
- Run reporting: SyncState, RecordError, SyncReport
- Webhooks: WebhookEventType, WebhookEvent, EventOutcome, EventResult

Remote schemas accept both the documented webhook keys (email/primary) and the
Wealthbox REST keys (address/principal), and ignore unknown fields.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

# Wealthbox REST timestamps look like "2015-05-24 10:00 AM -0400"
_WEALTHBOX_TIME_FORMATS = ("%Y-%m-%d %I:%M %p %z", "%Y-%m-%d %H:%M:%S %z")


def _parse_remote_time(value: Any) -> datetime | None:
    """Parse an ISO-8601 or Wealthbox-formatted timestamp, None if unparseable."""
    if value is None or isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in _WEALTHBOX_TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _coerce_remote_id(value: Any) -> Any:
    # bool is an int subclass; a boolean id is a malformed payload
    if isinstance(value, bool):
        raise ValueError("remote id must be a string or integer")
    if isinstance(value, int):
        return str(value)
    return value


# ── Remote Payloads ─────────────────────────────────────────────────────────


class RemoteEmail(BaseModel):
    """One email address on a remote contact."""

    model_config = ConfigDict(extra="ignore")

    email: str = Field(validation_alias=AliasChoices("email", "address"))
    primary: bool = Field(default=False, validation_alias=AliasChoices("primary", "principal"))

    @field_validator("primary", mode="before")
    @classmethod
    def _none_is_not_primary(cls, value: Any) -> Any:
        return False if value is None else value


class RemoteContact(BaseModel):
    """A contact as delivered by the CRM REST API or a webhook event.

    The remote id is opaque and normalized to a string. A contact may carry
    zero, one, or several primary-flagged addresses; IdentityResolver decides.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    first_name: str = Field(default="", validation_alias=AliasChoices("first_name", "firstName"))
    last_name: str = Field(default="", validation_alias=AliasChoices("last_name", "lastName"))
    email_addresses: list[RemoteEmail] = Field(default_factory=list)
    company_name: str | None = Field(
        default=None, validation_alias=AliasChoices("company_name", "companyName")
    )
    created_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("created_at", "createdAt")
    )
    updated_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("updated_at", "updatedAt")
    )

    @model_validator(mode="before")
    @classmethod
    def _single_email_field(cls, data: Any) -> Any:
        """Older payloads carry a single ``email`` string instead of a list."""
        if isinstance(data, dict) and not data.get("email_addresses"):
            email = data.get("email")
            if isinstance(email, str) and email.strip():
                data = {**data, "email_addresses": [{"email": email, "primary": True}]}
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> Any:
        return _coerce_remote_id(value)

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _none_is_blank(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _lenient_time(cls, value: Any) -> datetime | None:
        return _parse_remote_time(value)


class InvalidRemoteRecord(BaseModel):
    """A remote contact that failed validation; counted as a failed record."""

    id: str = ""
    error: str


class ContactPage(BaseModel):
    """One page of remote contacts plus the continuation decision."""

    records: list[RemoteContact] = Field(default_factory=list)
    invalid: list[InvalidRemoteRecord] = Field(default_factory=list)
    page: int = 1
    has_more: bool = False
    total_pages: int | None = None


class RemoteTask(BaseModel):
    """A CRM task, passed through read-only."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = Field(default="", validation_alias=AliasChoices("name", "title"))
    description: str | None = None
    due_date: datetime | None = Field(default=None, validation_alias=AliasChoices("due_date", "dueDate"))
    complete: bool = False
    linked_to: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> Any:
        return _coerce_remote_id(value)

    @field_validator("due_date", mode="before")
    @classmethod
    def _lenient_time(cls, value: Any) -> datetime | None:
        return _parse_remote_time(value)


# ── Local Records ───────────────────────────────────────────────────────────


class UserUpsert(BaseModel):
    """Normalized field values for a LocalUser, ready for upsert."""

    remote_id: str
    first_name: str = ""
    last_name: str = ""
    email: str
    organization_id: int | None = None


class UserRead(BaseModel):
    """A persisted LocalUser."""

    id: int
    remote_id: str
    first_name: str
    last_name: str
    email: str
    organization_id: int | None = None
    organization_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OrganizationRead(BaseModel):
    """A persisted LocalOrganization."""

    id: int
    name: str
    created_at: datetime | None = None
    user_count: int | None = None


class OrganizationStats(BaseModel):
    """An organization with every user that belongs to it."""

    id: int
    name: str
    total_users: int
    users: list[UserRead] = Field(default_factory=list)
    created_at: datetime | None = None


class UserPage(BaseModel):
    """Paginated listing of local users."""

    users: list[UserRead] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10
    total_pages: int = 0


# ── Run Reporting ───────────────────────────────────────────────────────────


class SyncState(str, Enum):
    """Lifecycle of a full sync run. Terminal states accept the next trigger."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class RecordError(BaseModel):
    """A single record that failed during a full sync."""

    remote_id: str
    error: str


class SyncReport(BaseModel):
    """Aggregate outcome of a full sync. Invariant: succeeded + failed == total."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    status: SyncState = SyncState.SUCCEEDED
    errors: list[RecordError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None


# ── Webhooks ────────────────────────────────────────────────────────────────


class WebhookEventType(str, Enum):
    """Event types the engine acts on."""

    CONTACT_CREATED = "contact.created"
    CONTACT_UPDATED = "contact.updated"
    CONTACT_DELETED = "contact.deleted"


class WebhookEvent(BaseModel):
    """Inbound webhook body.

    ``type`` stays a plain string so unknown event types parse and can be
    ignored instead of rejected.
    """

    model_config = ConfigDict(extra="ignore")

    type: str
    data: RemoteContact


class EventOutcome(str, Enum):
    """What applying a single event did to the store."""

    UPSERTED = "upserted"
    DELETED = "deleted"
    ALREADY_ABSENT = "already_absent"
    IGNORED = "ignored"


class EventResult(BaseModel):
    """Result of ReconciliationEngine.apply_event()."""

    event_type: str
    remote_id: str
    outcome: EventOutcome
