"""Google Calendar v3 implementation of :class:`CalendarService`."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from calsync.errors import CalendarError, classify_google_status, sanitize_error_message
from calsync.models import CalendarConnection, CalendarEvent, ProviderName, WebhookChannel
from calsync.normalizers.google import (
    canonical_to_google_event,
    google_event_to_canonical,
    google_rfc3339,
    parse_google_datetime,
)
from calsync.providers.base import (
    DEFAULT_LIST_MAX_RESULTS,
    BusyInterval,
    CalendarService,
    EventChange,
    EventPage,
    EventRemoval,
    FreeBusyCalendar,
    FreeBusyError,
    WebhookRegistration,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_MAX_RESULTS = 2500
GOOGLE_CHANNEL_TTL = timedelta(days=7)


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_epoch_ms(value: Any) -> datetime | None:
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


class GoogleCalendarService(CalendarService):
    """Google provider with bearer-token requests and syncToken-based diffs."""

    provider = ProviderName.GOOGLE

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _url(path: str) -> str:
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

    @staticmethod
    def _events_path(connection: CalendarConnection, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(connection.calendar_id, safe='')}/events"
        if event_id is not None:
            path = f"{path}/{quote(event_id, safe='')}"
        return path

    def _classify_status(
        self, status_code: int, message: str, *, sync_request: bool = False
    ) -> CalendarError:
        return classify_google_status(status_code, message, sync_request=sync_request)

    def _error_message(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict):
            error_payload = payload.get("error")
            if isinstance(error_payload, dict):
                message = error_payload.get("message")
                if isinstance(message, str) and message.strip():
                    return sanitize_error_message(message)
            if isinstance(error_payload, str) and error_payload.strip():
                return sanitize_error_message(error_payload)

        raw_text = response.text.strip()
        if raw_text:
            return sanitize_error_message(raw_text)
        return "Request failed without an error payload"

    def _parse_page(self, connection: CalendarConnection, payload: dict[str, Any]) -> EventPage:
        items = payload.get("items")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise CalendarError(
                "Google Calendar events response has a non-list items field",
                provider=str(self.provider),
            )

        changes: list[EventChange] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            event_id = _optional_text(item.get("id"))
            if event_id is None:
                continue
            status = item.get("status")
            if isinstance(status, str) and status.strip().lower() == "cancelled":
                # Deleted events come back as cancelled stubs, usually without times.
                changes.append(EventRemoval(event_id))
                continue
            try:
                changes.append(
                    google_event_to_canonical(item, fallback_timezone=connection.time_zone)
                )
            except ValueError as exc:
                logger.warning("Skipping malformed Google event %s: %s", event_id, exc)

        return EventPage(
            changes=changes,
            next_sync_token=_optional_text(payload.get("nextSyncToken")),
            next_page_token=_optional_text(payload.get("nextPageToken")),
        )

    async def _get_events_page(
        self,
        connection: CalendarConnection,
        params: dict[str, Any],
    ) -> EventPage:
        payload = await self._request_json(
            connection,
            "GET",
            self._url(self._events_path(connection)),
            params=params,
            sync_request="syncToken" in params,
        )
        return self._parse_page(connection, payload)

    # -- primitives ------------------------------------------------------------

    async def _probe(self, connection: CalendarConnection) -> None:
        await self._request_json(
            connection,
            "GET",
            self._url("/users/me/calendarList"),
            params={"maxResults": 1},
        )

    async def _fetch_full_page(
        self,
        connection: CalendarConnection,
        *,
        time_min: datetime,
        time_max: datetime,
        page_token: str | None,
    ) -> EventPage:
        params: dict[str, Any] = {
            "singleEvents": True,
            "timeMin": google_rfc3339(time_min),
            "timeMax": google_rfc3339(time_max),
            "maxResults": min(self._batch_size, GOOGLE_MAX_RESULTS),
        }
        if page_token is not None:
            params["pageToken"] = page_token
        return await self._get_events_page(connection, params)

    async def _fetch_changes(
        self,
        connection: CalendarConnection,
        *,
        sync_token: str,
        page_token: str | None,
    ) -> EventPage:
        # syncToken requests must repeat singleEvents from the initial listing.
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": True,
            "syncToken": sync_token,
            "maxResults": min(self._batch_size, GOOGLE_MAX_RESULTS),
        }
        if page_token is not None:
            params["pageToken"] = page_token
        return await self._get_events_page(connection, params)

    # -- public operations -----------------------------------------------------

    async def list_events(
        self,
        connection_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int = DEFAULT_LIST_MAX_RESULTS,
        sync_token: str | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        if max_results < 1:
            raise ValueError("max_results must be at least 1")

        connection = await self._authorized_connection(connection_id)
        params: dict[str, Any] = {
            "singleEvents": True,
            "maxResults": min(max_results, GOOGLE_MAX_RESULTS),
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
            params["showDeleted"] = True
        else:
            params["orderBy"] = "startTime"
            if time_min is not None:
                params["timeMin"] = google_rfc3339(time_min)
            if time_max is not None:
                params["timeMax"] = google_rfc3339(time_max)
        if page_token is not None:
            params["pageToken"] = page_token
        return await self._get_events_page(connection, params)

    async def create_event(self, connection_id: str, event: CalendarEvent) -> CalendarEvent:
        connection = await self._authorized_connection(connection_id)
        payload = await self._request_json(
            connection,
            "POST",
            self._url(self._events_path(connection)),
            json_body=canonical_to_google_event(event),
        )
        return google_event_to_canonical(payload, fallback_timezone=connection.time_zone)

    async def update_event(
        self,
        connection_id: str,
        event_id: str,
        event: CalendarEvent,
    ) -> CalendarEvent:
        connection = await self._authorized_connection(connection_id)
        payload = await self._request_json(
            connection,
            "PUT",
            self._url(self._events_path(connection, event_id)),
            json_body=canonical_to_google_event(event),
        )
        return google_event_to_canonical(payload, fallback_timezone=connection.time_zone)

    async def delete_event(self, connection_id: str, event_id: str) -> None:
        connection = await self._authorized_connection(connection_id)
        response = await self._request(
            connection, "DELETE", self._url(self._events_path(connection, event_id))
        )
        if response.status_code in (404, 410):
            logger.info("Google event %s already deleted", event_id)
            return
        self._raise_for_status(response)

    async def get_free_busy(
        self,
        connection_id: str,
        *,
        time_min: datetime,
        time_max: datetime,
        calendars: list[str] | None = None,
    ) -> list[FreeBusyCalendar]:
        connection = await self._authorized_connection(connection_id)
        calendar_ids = calendars or [connection.calendar_id]
        payload = await self._request_json(
            connection,
            "POST",
            self._url("/freeBusy"),
            json_body={
                "timeMin": google_rfc3339(time_min),
                "timeMax": google_rfc3339(time_max),
                "items": [{"id": calendar_id} for calendar_id in calendar_ids],
            },
        )

        calendars_payload = payload.get("calendars")
        if not isinstance(calendars_payload, dict):
            calendars_payload = {}

        results: list[FreeBusyCalendar] = []
        for calendar_id in calendar_ids:
            entry = calendars_payload.get(calendar_id)
            result = FreeBusyCalendar(calendar_id=calendar_id)
            if isinstance(entry, dict):
                for interval in entry.get("busy") or []:
                    if not isinstance(interval, dict):
                        continue
                    start = _optional_text(interval.get("start"))
                    end = _optional_text(interval.get("end"))
                    if start is None or end is None:
                        continue
                    result.busy.append(
                        BusyInterval(
                            start=parse_google_datetime(start),
                            end=parse_google_datetime(end),
                        )
                    )
                for error in entry.get("errors") or []:
                    if isinstance(error, dict):
                        result.errors.append(
                            FreeBusyError(
                                reason=_optional_text(error.get("reason")) or "unknown",
                                domain=_optional_text(error.get("domain")),
                            )
                        )
            results.append(result)
        return results

    async def setup_webhook(
        self,
        connection_id: str,
        notification_url: str,
    ) -> WebhookRegistration:
        connection = await self._authorized_connection(connection_id)
        now = datetime.now(UTC)
        channel_id = f"webhook-{connection_id}-{int(now.timestamp() * 1000)}"
        requested_expiration = now + GOOGLE_CHANNEL_TTL
        payload = await self._request_json(
            connection,
            "POST",
            self._url(f"{self._events_path(connection)}/watch"),
            json_body={
                "id": channel_id,
                "type": "web_hook",
                "address": notification_url,
                "expiration": int(requested_expiration.timestamp() * 1000),
            },
        )

        expiration = _parse_epoch_ms(payload.get("expiration")) or requested_expiration
        resource_id = _optional_text(payload.get("resourceId"))
        channel_id = _optional_text(payload.get("id")) or channel_id
        await self._store.save_webhook_channel(
            WebhookChannel(
                connection_id=connection_id,
                provider=self.provider,
                channel_id=channel_id,
                resource_id=resource_id,
                resource=_optional_text(payload.get("resourceUri"))
                or self._events_path(connection),
                notification_url=notification_url,
                expiration=expiration,
            )
        )
        logger.info(
            "Google push channel %s created for connection %s (expires %s)",
            channel_id,
            connection_id,
            expiration.isoformat(),
        )
        return WebhookRegistration(
            webhook_id=channel_id,
            expiration_time=expiration,
            resource_id=resource_id,
        )

    async def remove_webhook(self, connection_id: str, webhook_id: str) -> None:
        connection = await self._authorized_connection(connection_id)
        channel = await self._store.get_webhook_channel(connection_id, webhook_id)
        body: dict[str, Any] = {"id": webhook_id}
        if channel is not None and channel.resource_id:
            body["resourceId"] = channel.resource_id

        response = await self._request(
            connection, "POST", self._url("/channels/stop"), json_body=body
        )
        if response.status_code != 404:
            self._raise_for_status(response)
        await self._store.delete_webhook_channel(connection_id, webhook_id)
