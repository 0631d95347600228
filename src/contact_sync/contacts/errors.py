"""Error taxonomy for contact synchronization.

Connection- and credential-level errors abort a sync and propagate to the
caller. Record-level errors are absorbed into the batch counts by the
ReconciliationEngine and only surface on the single-event webhook path.
"""

from __future__ import annotations


class ContactSyncError(Exception):
    """Base class for all contact sync errors."""


class ConfigError(ContactSyncError):
    """Raised at construction time when required configuration is missing."""


class InvalidCredentialsError(ContactSyncError):
    """The CRM rejected the API key (HTTP 401). Never retried."""

    def __init__(self, message: str = "Invalid Wealthbox API credentials") -> None:
        super().__init__(message)


class RemoteError(ContactSyncError):
    """Base class for failed calls to the CRM API.

    Attributes:
        status_code: HTTP status code, or None for transport failures.
        path: API path that was requested.
    """

    def __init__(self, message: str, status_code: int | None = None, path: str = "") -> None:
        self.status_code = status_code
        self.path = path
        super().__init__(message)


class RateLimitedError(RemoteError):
    """The CRM answered HTTP 429. Retried internally with linear backoff."""


class RemoteUnavailableError(RemoteError):
    """Network failure or an error status other than 401/404/429."""


class RemoteNotFoundError(RemoteError):
    """The requested CRM record does not exist (HTTP 404)."""


class RecordSyncError(ContactSyncError):
    """Resolving or upserting a single remote contact failed."""

    def __init__(self, remote_id: str, cause: Exception) -> None:
        self.remote_id = remote_id
        self.cause = cause
        super().__init__(f"Failed to sync contact {remote_id}: {cause}")


class InvalidSignatureError(ContactSyncError):
    """Webhook signature missing or wrong. The message never says which."""

    def __init__(self) -> None:
        super().__init__("Invalid webhook signature")


class InvalidWebhookPayloadError(ContactSyncError):
    """Webhook body is not valid JSON or does not match the event schema."""


class SyncInProgressError(ContactSyncError):
    """A full sync is already running on this engine."""

    def __init__(self) -> None:
        super().__init__("A full contact sync is already running")


class EmailTakenError(ContactSyncError):
    """The store refused an upsert because another remote id owns the email."""

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__("Email already belongs to another contact")


class InvalidContactError(ContactSyncError):
    """A remote contact record failed validation and was not synced."""
