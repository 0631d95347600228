"""Async HTTP client for the Wealthbox CRM REST API.

Provides WealthboxClient with bearer auth, page-based contact listing and a
tenacity retry loop that only retries rate-limited (HTTP 429) responses.
Delay before retry n is retry_base_delay * n; every other error status is
raised on the first occurrence.

Pagination stops when the response reports meta.total_pages and the current
page has reached it; without that field it stops on the first page holding
fewer records than requested.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from src.contact_sync.config import Settings
from src.contact_sync.contacts.errors import (
    ConfigError,
    InvalidCredentialsError,
    RateLimitedError,
    RemoteError,
    RemoteNotFoundError,
    RemoteUnavailableError,
)
from src.contact_sync.contacts.schemas import (
    ContactPage,
    InvalidRemoteRecord,
    RemoteContact,
    RemoteTask,
)
from src.contact_sync.core.monitoring import remote_requests_total

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.crmworkspace.com/v1"


def _total_pages(payload: dict[str, Any], per_page: int) -> int | None:
    """Extract the server-reported page count, if the response carries one."""
    meta = payload.get("meta")
    if isinstance(meta, dict):
        if meta.get("total_pages") is not None:
            return int(meta["total_pages"])
        if meta.get("total_count") is not None:
            return math.ceil(int(meta["total_count"]) / per_page)
    if payload.get("total_pages") is not None:
        return int(payload["total_pages"])
    return None


class WealthboxClient:
    """Async client for the Wealthbox REST API.

    Missing credentials are a construction-time ConfigError, never a
    per-call failure.

    Args:
        api_key: Wealthbox API access token, sent as a bearer credential.
        base_url: API root, e.g. https://api.crmworkspace.com/v1.
        page_size: Records requested per page by fetch_all().
        max_retries: Retries after an HTTP 429, on top of the first request.
        retry_base_delay: Seconds; retry n waits retry_base_delay * n.
        page_delay: Seconds slept between successive page fetches.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        *,
        page_size: int = 100,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        page_delay: float = 0.1,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ConfigError("Missing Wealthbox API key (WEALTHBOX_API_KEY)")
        if not base_url:
            raise ConfigError("Missing Wealthbox API base URL (WEALTHBOX_API_URL)")
        if page_size < 1:
            raise ConfigError(f"page_size must be positive, got {page_size}")
        if max_retries < 0:
            raise ConfigError(f"max_retries must not be negative, got {max_retries}")

        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }
        self._page_size = page_size
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._page_delay = page_delay
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> WealthboxClient:
        """Build a client from application settings (millisecond knobs converted)."""
        return cls(
            api_key=settings.WEALTHBOX_API_KEY,
            base_url=settings.WEALTHBOX_API_URL,
            page_size=settings.SYNC_PAGE_SIZE,
            max_retries=settings.SYNC_MAX_RETRIES,
            retry_base_delay=settings.SYNC_RETRY_BASE_DELAY_MS / 1000,
            page_delay=settings.SYNC_PAGE_DELAY_MS / 1000,
            timeout=settings.WEALTHBOX_TIMEOUT,
            transport=transport,
        )

    @property
    def page_size(self) -> int:
        return self._page_size

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client carrying the auth headers."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    # ── Transport ───────────────────────────────────────────────────────────

    async def _send(self, path: str, params: dict[str, Any] | None) -> Any:
        """Issue one GET and translate the status code into the error taxonomy."""
        try:
            async with self._client() as client:
                response = await client.get(path, params=params)
        except httpx.TransportError as exc:
            remote_requests_total.labels(status="transport_error").inc()
            raise RemoteUnavailableError(
                f"Wealthbox API unreachable: {exc}", path=path
            ) from exc

        status = response.status_code
        remote_requests_total.labels(status=str(status)).inc()

        if status == 401:
            raise InvalidCredentialsError()
        if status == 429:
            raise RateLimitedError("Wealthbox API rate limit exceeded", status, path)
        if status == 404:
            raise RemoteNotFoundError(f"Wealthbox record not found: {path}", status, path)
        if status >= 400:
            raise RemoteUnavailableError(
                f"Wealthbox API returned HTTP {status}", status, path
            )

        try:
            return response.json()
        except ValueError as exc:
            raise RemoteUnavailableError(
                "Wealthbox API returned a non-JSON body", status, path
            ) from exc

    def _log_rate_limited(self, retry_state: RetryCallState) -> None:
        logger.warning(
            "wealthbox.rate_limited",
            attempt=retry_state.attempt_number,
            max_retries=self._max_retries,
            sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        )

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET with linear backoff on HTTP 429; the last error is re-raised on exhaustion."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_incrementing(
                start=self._retry_base_delay, increment=self._retry_base_delay
            ),
            retry=retry_if_exception_type(RateLimitedError),
            before_sleep=self._log_rate_limited,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                payload = await self._send(path, params)
        return payload

    # ── Contacts ────────────────────────────────────────────────────────────

    def _parse_contacts(
        self, raw: list[Any]
    ) -> tuple[list[RemoteContact], list[InvalidRemoteRecord]]:
        """Validate raw contact dicts, separating out malformed ones."""
        contacts: list[RemoteContact] = []
        invalid: list[InvalidRemoteRecord] = []
        for item in raw:
            try:
                contacts.append(RemoteContact.model_validate(item))
            except ValidationError as exc:
                raw_id = item.get("id") if isinstance(item, dict) else None
                fields = sorted(
                    {".".join(str(part) for part in err["loc"]) or "record" for err in exc.errors()}
                )
                record = InvalidRemoteRecord(
                    id="" if raw_id is None else str(raw_id),
                    error=f"invalid fields: {', '.join(fields)}",
                )
                invalid.append(record)
                logger.warning(
                    "wealthbox.invalid_contact",
                    remote_id=record.id or None,
                    error=record.error,
                )
        return contacts, invalid

    async def fetch_page(self, page: int, per_page: int | None = None) -> ContactPage:
        """Fetch one page of person contacts.

        GET /contacts?page&per_page&type=Person

        Args:
            page: 1-based page number.
            per_page: Page size; defaults to the client's page_size.

        Returns:
            ContactPage with parsed records and whether another page follows.
        """
        per_page = per_page or self._page_size
        payload = await self._get(
            "/contacts",
            params={"page": page, "per_page": per_page, "type": "Person"},
        )

        raw = payload.get("contacts") if isinstance(payload, dict) else None
        if not isinstance(raw, list):
            raw = []

        total_pages = _total_pages(payload, per_page) if isinstance(payload, dict) else None
        if not raw:
            has_more = False
        elif total_pages is not None:
            has_more = page < total_pages
        else:
            has_more = len(raw) >= per_page

        records, invalid = self._parse_contacts(raw)
        logger.debug(
            "wealthbox.page_fetched",
            page=page,
            per_page=per_page,
            received=len(raw),
            invalid=len(invalid),
            total_pages=total_pages,
            has_more=has_more,
        )
        return ContactPage(
            records=records,
            invalid=invalid,
            page=page,
            has_more=has_more,
            total_pages=total_pages,
        )

    async def fetch_all(self) -> AsyncIterator[RemoteContact | InvalidRemoteRecord]:
        """Yield every person contact, page by page, in server order.

        Records that fail validation are yielded as InvalidRemoteRecord after
        the valid records of their page.

        Each call starts again from page 1; a consumer that stops early and
        calls again re-fetches from the beginning.
        """
        page = 1
        while True:
            result = await self.fetch_page(page, self._page_size)
            for contact in result.records:
                yield contact
            for record in result.invalid:
                yield record
            if not result.has_more:
                break
            page += 1
            if self._page_delay > 0:
                await asyncio.sleep(self._page_delay)

    async def fetch_all_bulk(self) -> ContactPage:
        """Fetch every contact in one request via GET /contacts/all."""
        payload = await self._get("/contacts/all")
        raw = payload.get("contacts") if isinstance(payload, dict) else payload
        if not isinstance(raw, list):
            raw = []
        records, invalid = self._parse_contacts(raw)
        logger.info("wealthbox.bulk_fetched", count=len(records), invalid=len(invalid))
        return ContactPage(records=records, invalid=invalid, total_pages=1)

    async def fetch_by_id(self, remote_id: str | int) -> RemoteContact | None:
        """Fetch one contact by id; None if the CRM answers 404."""
        try:
            payload = await self._get(f"/contacts/{quote(str(remote_id), safe='')}")
        except RemoteNotFoundError:
            logger.info("wealthbox.contact_not_found", remote_id=str(remote_id))
            return None
        if isinstance(payload, dict) and isinstance(payload.get("contact"), dict):
            payload = payload["contact"]
        return RemoteContact.model_validate(payload)

    # ── Tasks ───────────────────────────────────────────────────────────────

    async def get_task(self, task_id: str | int) -> RemoteTask | None:
        """Fetch one task by id; None if the CRM answers 404."""
        try:
            payload = await self._get(f"/tasks/{quote(str(task_id), safe='')}")
        except RemoteNotFoundError:
            logger.info("wealthbox.task_not_found", task_id=str(task_id))
            return None
        if isinstance(payload, dict) and isinstance(payload.get("task"), dict):
            payload = payload["task"]
        return RemoteTask.model_validate(payload)

    # ── Health ──────────────────────────────────────────────────────────────

    async def test_connection(self) -> bool:
        """Return True if the API key is accepted and the API answers."""
        try:
            await self._get("/contacts", params={"page": 1, "per_page": 1, "type": "Person"})
        except InvalidCredentialsError:
            logger.warning("wealthbox.connection_test_failed", reason="invalid_credentials")
            return False
        except RemoteError as exc:
            logger.warning(
                "wealthbox.connection_test_failed",
                reason="remote_error",
                status_code=exc.status_code,
                error=str(exc),
            )
            return False
        logger.info("wealthbox.connection_test_ok")
        return True
