"""Provider-neutral calendar service contract and shared sync logic.

Each provider subclass implements a small set of wire-level primitives
(probe, fetch one page of a full or incremental listing, CRUD, free/busy,
push channels).  The full and incremental sync state machine lives here so
that both providers apply pages, store cursors and fall back from an expired
cursor in exactly the same way.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from calsync.core.metrics import record_events_applied
from calsync.errors import (
    CalendarError,
    CalendarErrorCode,
    ConnectionNotFoundError,
    SyncTokenExpiredError,
    TokenRefreshError,
    sanitize_error_message,
)
from calsync.models import (
    CalendarConnection,
    CalendarEvent,
    ExternalCalendarEvent,
    ProviderName,
    SyncType,
)
from calsync.store import CalendarStore
from calsync.tokens import TokenManager

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_LIST_MAX_RESULTS = 250
DEFAULT_FULL_SYNC_WINDOW = timedelta(days=183)
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventRemoval:
    """A provider report that ``event_id`` no longer exists remotely."""

    event_id: str


EventChange = CalendarEvent | EventRemoval


@dataclass
class EventPage:
    """One page of a listing, in the order the provider returned it."""

    changes: list[EventChange] = field(default_factory=list)
    next_sync_token: str | None = None
    next_page_token: str | None = None

    @property
    def events(self) -> list[CalendarEvent]:
        return [change for change in self.changes if isinstance(change, CalendarEvent)]

    @property
    def removed_event_ids(self) -> list[str]:
        return [change.event_id for change in self.changes if isinstance(change, EventRemoval)]


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class FreeBusyError:
    reason: str
    domain: str | None = None


@dataclass
class FreeBusyCalendar:
    calendar_id: str
    busy: list[BusyInterval] = field(default_factory=list)
    errors: list[FreeBusyError] = field(default_factory=list)


@dataclass(frozen=True)
class WebhookRegistration:
    webhook_id: str
    expiration_time: datetime
    resource_id: str | None = None


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one ``perform_*_sync`` call.

    ``sync_type`` is the kind of sync that actually ran: an incremental call
    that fell back from an expired cursor reports ``full`` with
    ``fell_back_to_full`` set.
    """

    connection_id: str
    sync_type: SyncType
    events_processed: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    sync_token_before: str | None = None
    sync_token_after: str | None = None
    fell_back_to_full: bool = False


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class CalendarService(abc.ABC):
    """Uniform capability set implemented once per calendar provider."""

    provider: ProviderName

    def __init__(
        self,
        *,
        store: CalendarStore,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        full_sync_window: timedelta = DEFAULT_FULL_SYNC_WINDOW,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._store = store
        self._tokens = token_manager
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)
        self._batch_size = batch_size
        self._full_sync_window = full_sync_window

    # -- provider primitives ----------------------------------------------

    @abc.abstractmethod
    def _classify_status(
        self, status_code: int, message: str, *, sync_request: bool = False
    ) -> CalendarError:
        """Map a failed HTTP status onto the shared taxonomy.

        ``sync_request`` marks a request that replays a sync cursor; only those
        turn 410 Gone into :class:`SyncTokenExpiredError`.
        """

    @abc.abstractmethod
    def _error_message(self, response: httpx.Response) -> str:
        """Extract a short, credential-free message from a failed response."""

    @abc.abstractmethod
    async def _probe(self, connection: CalendarConnection) -> None:
        """Make the cheapest authenticated call the provider offers."""

    @abc.abstractmethod
    async def _fetch_full_page(
        self,
        connection: CalendarConnection,
        *,
        time_min: datetime,
        time_max: datetime,
        page_token: str | None,
    ) -> EventPage:
        """Fetch one page of the time-bounded listing that yields a fresh cursor."""

    @abc.abstractmethod
    async def _fetch_changes(
        self,
        connection: CalendarConnection,
        *,
        sync_token: str,
        page_token: str | None,
    ) -> EventPage:
        """Fetch one page of changes since ``sync_token``.

        Raises
        ------
        SyncTokenExpiredError
            When the provider rejects ``sync_token``.
        """

    # -- public operations -------------------------------------------------

    @abc.abstractmethod
    async def list_events(
        self,
        connection_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int = DEFAULT_LIST_MAX_RESULTS,
        sync_token: str | None = None,
        page_token: str | None = None,
    ) -> EventPage: ...

    @abc.abstractmethod
    async def create_event(self, connection_id: str, event: CalendarEvent) -> CalendarEvent: ...

    @abc.abstractmethod
    async def update_event(
        self,
        connection_id: str,
        event_id: str,
        event: CalendarEvent,
    ) -> CalendarEvent: ...

    @abc.abstractmethod
    async def delete_event(self, connection_id: str, event_id: str) -> None: ...

    @abc.abstractmethod
    async def get_free_busy(
        self,
        connection_id: str,
        *,
        time_min: datetime,
        time_max: datetime,
        calendars: list[str] | None = None,
    ) -> list[FreeBusyCalendar]: ...

    @abc.abstractmethod
    async def setup_webhook(
        self,
        connection_id: str,
        notification_url: str,
    ) -> WebhookRegistration: ...

    @abc.abstractmethod
    async def remove_webhook(self, connection_id: str, webhook_id: str) -> None: ...

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- connection + token handling ---------------------------------------

    async def _load_connection(self, connection_id: str) -> CalendarConnection:
        connection = await self._store.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    async def _authorized_connection(self, connection_id: str) -> CalendarConnection:
        connection = await self._load_connection(connection_id)
        return await self._tokens.ensure_valid_token(connection)

    async def refresh_tokens(self, connection_id: str) -> None:
        """Force a refresh-token exchange for ``connection_id``.

        Raises
        ------
        TokenRefreshError
            After recording the failure on the connection.
        """
        connection = await self._load_connection(connection_id)
        await self._tokens.refresh(connection)

    async def validate_connection(self, connection_id: str) -> bool:
        """Return whether the connection can make an authenticated call.

        Expected failures are recorded on the connection and reported as
        ``False``; they are never raised.
        """
        try:
            connection = await self._authorized_connection(connection_id)
            await self._probe(connection)
        except ConnectionNotFoundError:
            logger.warning("Cannot validate unknown connection %s", connection_id)
            return False
        except TokenRefreshError:
            # TokenManager already counted this failure.
            return False
        except CalendarError as exc:
            await self._store.record_connection_failure(
                connection_id,
                sanitize_error_message(exc),
            )
            logger.warning(
                "Connection %s failed validation: %s", connection_id, sanitize_error_message(exc)
            )
            return False
        return True

    # -- HTTP ----------------------------------------------------------------

    async def _request(
        self,
        connection: CalendarConnection,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send an authenticated request, refreshing once on 401."""
        response = await self._send(
            connection.access_token, method, url, params, json_body, headers
        )
        if response.status_code == 401 and connection.refresh_token:
            logger.info(
                "%s returned 401 for connection %s; forcing token refresh",
                self.provider,
                connection.id,
            )
            refreshed = await self._tokens.refresh(connection)
            response = await self._send(
                refreshed.access_token, method, url, params, json_body, headers
            )
        return response

    async def _send(
        self,
        access_token: str,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        request_headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        if extra_headers:
            request_headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=request_headers,
            )
        except httpx.HTTPError as exc:
            raise CalendarError(
                f"{self.provider} calendar request failed: {sanitize_error_message(exc)}",
                code=CalendarErrorCode.SERVICE_UNAVAILABLE,
                provider=str(self.provider),
            ) from exc

    def _raise_for_status(self, response: httpx.Response, *, sync_request: bool = False) -> None:
        if 200 <= response.status_code < 300:
            return
        raise self._classify_status(
            response.status_code, self._error_message(response), sync_request=sync_request
        )

    async def _request_json(
        self,
        connection: CalendarConnection,
        method: str,
        url: str,
        *,
        sync_request: bool = False,
        **kwargs: Any,
    ) -> dict[str, Any]:
        response = await self._request(connection, method, url, **kwargs)
        self._raise_for_status(response, sync_request=sync_request)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError(
                f"{self.provider} calendar API returned invalid JSON",
                provider=str(self.provider),
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarError(
                f"{self.provider} calendar API returned an unexpected payload shape",
                provider=str(self.provider),
            )
        return payload

    # -- sync state machine --------------------------------------------------

    async def perform_full_sync(self, connection_id: str) -> SyncOutcome:
        """Clear the cursor, mirror the time-bounded event set, store a new cursor.

        The window runs from now to now plus the configured full-sync window.
        Pages of ``batch_size`` events are followed until the provider hands
        back its initial cursor.
        """
        connection = await self._authorized_connection(connection_id)
        sync_token_before = connection.last_sync_token
        if sync_token_before is not None:
            connection = await self._store.update_connection(connection_id, last_sync_token=None)

        time_min = datetime.now(UTC)
        time_max = time_min + self._full_sync_window
        processed = updated = deleted = 0
        page_token: str | None = None
        cursor: str | None = None
        while True:
            page = await self._fetch_full_page(
                connection,
                time_min=time_min,
                time_max=time_max,
                page_token=page_token,
            )
            counts = await self._apply_page(connection, page)
            processed += counts[0]
            updated += counts[1]
            deleted += counts[2]
            if page.next_page_token is None:
                cursor = page.next_sync_token
                break
            page_token = page.next_page_token
            # A 401 on this page may have replaced the access token.
            connection = await self._load_connection(connection_id)

        if cursor is None:
            logger.warning(
                "%s full sync for connection %s returned no sync cursor",
                self.provider,
                connection_id,
            )
        await self._store.update_connection(
            connection_id,
            last_sync_token=cursor,
            last_full_sync_at=datetime.now(UTC),
        )
        logger.info(
            "%s full sync for connection %s stored %d event(s), removed %d",
            self.provider,
            connection_id,
            updated,
            deleted,
        )
        return SyncOutcome(
            connection_id=connection_id,
            sync_type=SyncType.FULL,
            events_processed=processed,
            events_updated=updated,
            events_deleted=deleted,
            sync_token_before=sync_token_before,
            sync_token_after=cursor,
        )

    async def perform_incremental_sync(self, connection_id: str) -> SyncOutcome:
        """Apply changes since the stored cursor.

        Without a cursor this is a full sync.  An expired cursor is cleared and
        the same call completes as a full sync; the expiry never reaches the
        caller.
        """
        connection = await self._authorized_connection(connection_id)
        sync_token = connection.last_sync_token
        if not sync_token:
            return await self.perform_full_sync(connection_id)

        try:
            return await self._drain_changes(connection, sync_token)
        except SyncTokenExpiredError:
            logger.info(
                "%s sync cursor expired for connection %s; falling back to full sync",
                self.provider,
                connection_id,
            )
            await self._store.update_connection(connection_id, last_sync_token=None)
            outcome = await self.perform_full_sync(connection_id)
            return replace(outcome, sync_token_before=sync_token, fell_back_to_full=True)

    async def _drain_changes(
        self,
        connection: CalendarConnection,
        sync_token: str,
    ) -> SyncOutcome:
        processed = updated = deleted = 0
        page_token: str | None = None
        next_cursor: str | None = None
        while True:
            page = await self._fetch_changes(
                connection,
                sync_token=sync_token,
                page_token=page_token,
            )
            counts = await self._apply_page(connection, page)
            processed += counts[0]
            updated += counts[1]
            deleted += counts[2]
            if page.next_page_token is None:
                next_cursor = page.next_sync_token
                break
            page_token = page.next_page_token
            connection = await self._load_connection(connection.id)

        if next_cursor is None:
            logger.warning(
                "%s incremental sync for connection %s returned no new cursor; keeping the old one",
                self.provider,
                connection.id,
            )
            next_cursor = sync_token
        await self._store.update_connection(
            connection.id,
            last_sync_token=next_cursor,
            last_incremental_sync_at=datetime.now(UTC),
        )
        return SyncOutcome(
            connection_id=connection.id,
            sync_type=SyncType.INCREMENTAL,
            events_processed=processed,
            events_updated=updated,
            events_deleted=deleted,
            sync_token_before=sync_token,
            sync_token_after=next_cursor,
        )

    async def _apply_page(
        self,
        connection: CalendarConnection,
        page: EventPage,
    ) -> tuple[int, int, int]:
        """Apply one page in provider order; returns (processed, upserted, deleted)."""
        processed = upserted = deleted = 0
        synced_at = datetime.now(UTC)
        for change in page.changes:
            processed += 1
            if isinstance(change, EventRemoval):
                if await self._store.delete_event(connection.id, change.event_id):
                    deleted += 1
                continue
            if not change.id:
                logger.debug("Skipping %s event without an id", self.provider)
                continue
            await self._store.upsert_event(
                ExternalCalendarEvent.from_canonical(
                    connection_id=connection.id,
                    calendar_id=connection.calendar_id,
                    event=change,
                    synced_at=synced_at,
                )
            )
            upserted += 1
        record_events_applied(upserted=upserted, deleted=deleted)
        return processed, upserted, deleted
