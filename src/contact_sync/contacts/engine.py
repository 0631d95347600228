"""Contact reconciliation engine -- full sync and single-event sync.

Orchestrates data flow from the CRM client through the IdentityResolver into
the ContactStore.

Key behaviors:
- Full sync streams every remote contact and upserts in batches of
  `concurrency` records; one failing record is counted, never fatal, and
  records the CRM sent malformed count as failures
- Within a batch, contacts sharing a canonical email are upserted in
  server order, so the first keeps the address and the rest are
  disambiguated
- Fetch-level failures (bad credentials, CRM unavailable, retries exhausted)
  abort the run and propagate; upserts already committed stay committed
- At most one full sync per engine; an overlapping trigger is rejected
- Webhook events go through the same resolve + upsert primitive, so running
  them alongside a full sync is safe
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Protocol

import structlog

from src.contact_sync.contacts.errors import (
    ContactSyncError,
    EmailTakenError,
    InvalidContactError,
    RecordSyncError,
    SyncInProgressError,
)
from src.contact_sync.contacts.identity import IdentityResolver, select_primary_email
from src.contact_sync.contacts.schemas import (
    EventOutcome,
    EventResult,
    InvalidRemoteRecord,
    RecordError,
    RemoteContact,
    SyncReport,
    SyncState,
    UserRead,
    WebhookEvent,
    WebhookEventType,
)
from src.contact_sync.contacts.store import ContactStore
from src.contact_sync.core.monitoring import sync_records_total, sync_runs_total

logger = structlog.get_logger(__name__)


def describe_failure(exc: Exception) -> str:
    """Short record failure text for reports; driver errors keep only their type.

    >>> describe_failure(InvalidContactError("invalid fields: id"))
    'InvalidContactError: invalid fields: id'
    >>> describe_failure(RuntimeError("INSERT INTO users ..."))
    'RuntimeError'
    """
    if isinstance(exc, ContactSyncError):
        return f"{type(exc).__name__}: {exc}"
    return type(exc).__name__


def _split_shared_emails(
    batch: list[RemoteContact | InvalidRemoteRecord],
) -> list[list[RemoteContact | InvalidRemoteRecord]]:
    """Split a batch into waves in which no two contacts share a canonical email.

    Each contact goes into the first wave that does not already hold its
    email, so server order decides who keeps the address.
    """
    waves: list[list[RemoteContact | InvalidRemoteRecord]] = []
    claimed: list[set[str]] = []
    for item in batch:
        email = select_primary_email(item) if isinstance(item, RemoteContact) else None
        index = 0
        while email is not None and index < len(waves) and email in claimed[index]:
            index += 1
        if index == len(waves):
            waves.append([])
            claimed.append(set())
        waves[index].append(item)
        if email is not None:
            claimed[index].add(email)
    return waves


class ContactSource(Protocol):
    """The part of WealthboxClient the engine depends on."""

    def fetch_all(self) -> AsyncIterator[RemoteContact | InvalidRemoteRecord]: ...

    async def test_connection(self) -> bool: ...


class ReconciliationEngine:
    """Reconciles remote CRM contacts into the local store.

    Args:
        client: Source of remote contacts (WealthboxClient in production).
        resolver: IdentityResolver computing local field values.
        store: ContactStore receiving upserts and deletes.
        concurrency: Records upserted concurrently within one batch.
    """

    def __init__(
        self,
        client: ContactSource,
        resolver: IdentityResolver,
        store: ContactStore,
        concurrency: int = 10,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._store = store
        self._concurrency = max(concurrency, 1)
        self._run_lock = asyncio.Lock()
        self._state = SyncState.IDLE
        self._last_report: SyncReport | None = None

    @property
    def state(self) -> SyncState:
        """Current run state; terminal states mean the engine is idle."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def last_report(self) -> SyncReport | None:
        """Report of the most recent completed full sync, if any."""
        return self._last_report

    async def test_connection(self) -> bool:
        """Check the CRM credentials without touching the store."""
        return await self._client.test_connection()

    # ── Full Sync ───────────────────────────────────────────────────────────

    async def full_sync(self) -> SyncReport:
        """Pull every remote contact and upsert each one independently.

        Returns:
            SyncReport where succeeded + failed == total.

        Raises:
            SyncInProgressError: Another full sync is running on this engine.
            InvalidCredentialsError: The CRM rejected the API key.
            RemoteUnavailableError: The CRM could not be reached mid-run.
            RateLimitedError: Rate-limit retries were exhausted.
        """
        if self._run_lock.locked():
            logger.warning("sync.full_sync_rejected", reason="already_running")
            raise SyncInProgressError()

        async with self._run_lock:
            self._state = SyncState.RUNNING
            report = SyncReport()
            logger.info("sync.full_sync_started", concurrency=self._concurrency)

            try:
                batch: list[RemoteContact | InvalidRemoteRecord] = []
                async for contact in self._client.fetch_all():
                    batch.append(contact)
                    if len(batch) >= self._concurrency:
                        await self._process_batch(batch, report)
                        batch = []
                if batch:
                    await self._process_batch(batch, report)
            except Exception as exc:
                self._state = SyncState.FAILED
                sync_runs_total.labels(status=SyncState.FAILED.value).inc()
                logger.error(
                    "sync.full_sync_aborted",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    processed=report.total,
                    succeeded=report.succeeded,
                    failed=report.failed,
                )
                raise

            report.status = self._terminal_state(report)
            report.finished_at = datetime.now(timezone.utc)
            self._state = report.status
            self._last_report = report
            sync_runs_total.labels(status=report.status.value).inc()

            logger.info(
                "sync.full_sync_complete",
                total=report.total,
                succeeded=report.succeeded,
                failed=report.failed,
                status=report.status.value,
            )
            return report

    async def _process_batch(
        self, batch: list[RemoteContact | InvalidRemoteRecord], report: SyncReport
    ) -> None:
        """Upsert a batch concurrently and fold each outcome into the report."""
        for wave in _split_shared_emails(batch):
            results = await asyncio.gather(
                *(self._reconcile_item(item) for item in wave),
                return_exceptions=True,
            )
            for item, result in zip(wave, results):
                report.total += 1
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    self._record_failure(report, item.id, result)
                else:
                    report.succeeded += 1
                    sync_records_total.labels(outcome="upserted").inc()

    @staticmethod
    def _record_failure(report: SyncReport, remote_id: str, exc: Exception) -> None:
        report.failed += 1
        report.errors.append(RecordError(remote_id=remote_id, error=describe_failure(exc)))
        sync_records_total.labels(outcome="failed").inc()
        logger.error(
            "sync.record_failed",
            remote_id=remote_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    async def _reconcile_item(self, item: RemoteContact | InvalidRemoteRecord) -> UserRead:
        if isinstance(item, InvalidRemoteRecord):
            raise InvalidContactError(item.error)
        return await self._reconcile(item)

    @staticmethod
    def _terminal_state(report: SyncReport) -> SyncState:
        if report.failed == 0:
            return SyncState.SUCCEEDED
        if report.succeeded == 0:
            return SyncState.FAILED
        return SyncState.PARTIALLY_FAILED

    async def _reconcile(self, contact: RemoteContact) -> UserRead:
        """Resolve identity and upsert one contact.

        If another writer took the resolved email between resolve and upsert,
        the contact is resolved again once against the now-current owner.
        """
        data = await self._resolver.resolve(contact)
        try:
            return await self._store.upsert_user(data)
        except EmailTakenError:
            logger.info("sync.email_taken_retry", remote_id=contact.id)
            data = await self._resolver.resolve(contact)
            return await self._store.upsert_user(data)

    # ── Single Event ────────────────────────────────────────────────────────

    async def apply_event(self, event: WebhookEvent) -> EventResult:
        """Apply one webhook event to the store.

        created/updated upsert exactly like a full sync record; deleted removes
        the user, treating an already-absent user as success; other event types
        are ignored.

        Raises:
            RecordSyncError: Resolving or writing the record failed.
        """
        remote_id = event.data.id

        if event.type in (WebhookEventType.CONTACT_CREATED, WebhookEventType.CONTACT_UPDATED):
            try:
                user = await self._reconcile(event.data)
            except Exception as exc:
                sync_records_total.labels(outcome="failed").inc()
                logger.error(
                    "sync.event_failed",
                    event_type=event.type,
                    remote_id=remote_id,
                    error=str(exc),
                )
                raise RecordSyncError(remote_id, exc) from exc
            sync_records_total.labels(outcome="upserted").inc()
            logger.info(
                "sync.event_applied",
                event_type=event.type,
                remote_id=remote_id,
                user_id=user.id,
            )
            return EventResult(
                event_type=event.type, remote_id=remote_id, outcome=EventOutcome.UPSERTED
            )

        if event.type == WebhookEventType.CONTACT_DELETED:
            try:
                deleted = await self._store.delete_user(remote_id)
            except Exception as exc:
                logger.error("sync.event_failed", event_type=event.type, remote_id=remote_id, error=str(exc))
                raise RecordSyncError(remote_id, exc) from exc
            outcome = EventOutcome.DELETED if deleted else EventOutcome.ALREADY_ABSENT
            sync_records_total.labels(outcome=outcome.value).inc()
            logger.info(
                "sync.event_applied",
                event_type=event.type,
                remote_id=remote_id,
                outcome=outcome.value,
            )
            return EventResult(event_type=event.type, remote_id=remote_id, outcome=outcome)

        logger.warning("sync.event_ignored", event_type=event.type, remote_id=remote_id)
        return EventResult(event_type=event.type, remote_id=remote_id, outcome=EventOutcome.IGNORED)
