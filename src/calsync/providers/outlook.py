"""Microsoft Graph implementation of :class:`CalendarService`.

Reads ask Graph for UTC times via ``Prefer: outlook.timezone="UTC"``.  The
sync cursor is a Graph delta link, stored and replayed verbatim.  A 410 on
a delta link means the delta state expired and a full sync is required.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from calsync.errors import CalendarError, classify_outlook_status, sanitize_error_message
from calsync.models import CalendarConnection, CalendarEvent, ProviderName, WebhookChannel
from calsync.normalizers.outlook import (
    canonical_to_outlook_event,
    outlook_event_to_canonical,
    parse_graph_datetime,
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

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
OUTLOOK_SUBSCRIPTION_TTL = timedelta(days=2)
OUTLOOK_CHANGE_TYPES = "created,updated,deleted"
FREE_BUSY_INTERVAL_MINUTES = 60

_UTC_PREFERENCE = 'outlook.timezone="UTC"'


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _graph_utc(value: datetime) -> str:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S")


def _graph_utc_z(value: datetime) -> str:
    return f"{_graph_utc(value)}Z"


class OutlookCalendarService(CalendarService):
    """Outlook provider over Microsoft Graph v1.0."""

    provider = ProviderName.OUTLOOK

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _url(path: str) -> str:
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{GRAPH_API_BASE_URL}{normalized_path}"

    @staticmethod
    def _calendar_path(connection: CalendarConnection) -> str:
        if connection.calendar_id in ("", "primary"):
            return "/me/calendar"
        return f"/me/calendars/{quote(connection.calendar_id, safe='')}"

    def _read_headers(self, *, page_size: int | None = None) -> dict[str, str]:
        prefer = [_UTC_PREFERENCE]
        if page_size is not None:
            prefer.append(f"odata.maxpagesize={page_size}")
        return {"Prefer": ", ".join(prefer)}

    def _classify_status(
        self, status_code: int, message: str, *, sync_request: bool = False
    ) -> CalendarError:
        return classify_outlook_status(status_code, message, sync_request=sync_request)

    def _error_message(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict):
            error_payload = payload.get("error")
            if isinstance(error_payload, dict):
                message = error_payload.get("message")
                code = error_payload.get("code")
                if isinstance(message, str) and message.strip():
                    prefix = f"{code}: " if isinstance(code, str) and code.strip() else ""
                    return sanitize_error_message(f"{prefix}{message}")

        raw_text = response.text.strip()
        if raw_text:
            return sanitize_error_message(raw_text)
        return "Request failed without an error payload"

    def _parse_page(self, connection: CalendarConnection, payload: dict[str, Any]) -> EventPage:
        items = payload.get("value")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise CalendarError(
                "Microsoft Graph events response has a non-list value field",
                provider=str(self.provider),
            )

        changes: list[EventChange] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            event_id = _optional_text(item.get("id"))
            if event_id is None:
                continue
            if "@removed" in item:
                changes.append(EventRemoval(event_id))
                continue
            try:
                changes.append(
                    outlook_event_to_canonical(item, fallback_timezone=connection.time_zone)
                )
            except ValueError as exc:
                logger.warning("Skipping malformed Outlook event %s: %s", event_id, exc)

        return EventPage(
            changes=changes,
            next_sync_token=_optional_text(payload.get("@odata.deltaLink")),
            next_page_token=_optional_text(payload.get("@odata.nextLink")),
        )

    async def _get_page(
        self,
        connection: CalendarConnection,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        page_size: int | None = None,
        sync_request: bool = False,
    ) -> EventPage:
        payload = await self._request_json(
            connection,
            "GET",
            url,
            params=params,
            headers=self._read_headers(page_size=page_size),
            sync_request=sync_request,
        )
        return self._parse_page(connection, payload)

    # -- primitives ------------------------------------------------------------

    async def _probe(self, connection: CalendarConnection) -> None:
        await self._request_json(connection, "GET", self._url("/me"))

    async def _fetch_full_page(
        self,
        connection: CalendarConnection,
        *,
        time_min: datetime,
        time_max: datetime,
        page_token: str | None,
    ) -> EventPage:
        if page_token is not None:
            return await self._get_page(connection, page_token, page_size=self._batch_size)
        # calendarView/delta is the only Graph listing that ends with a delta link.
        return await self._get_page(
            connection,
            self._url(f"{self._calendar_path(connection)}/calendarView/delta"),
            params={
                "startDateTime": _graph_utc_z(time_min),
                "endDateTime": _graph_utc_z(time_max),
            },
            page_size=self._batch_size,
        )

    async def _fetch_changes(
        self,
        connection: CalendarConnection,
        *,
        sync_token: str,
        page_token: str | None,
    ) -> EventPage:
        return await self._get_page(
            connection,
            page_token or sync_token,
            page_size=self._batch_size,
            sync_request=True,
        )

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
        if page_token is not None or sync_token is not None:
            return await self._get_page(
                connection,
                page_token or str(sync_token),
                page_size=max_results,
                sync_request=sync_token is not None,
            )

        filters: list[str] = []
        if time_min is not None:
            filters.append(f"start/dateTime ge '{_graph_utc(time_min)}'")
        if time_max is not None:
            filters.append(f"end/dateTime le '{_graph_utc(time_max)}'")
        params: dict[str, Any] = {"$top": max_results, "$orderby": "start/dateTime"}
        if filters:
            params["$filter"] = " and ".join(filters)
        return await self._get_page(
            connection,
            self._url(f"{self._calendar_path(connection)}/events"),
            params=params,
        )

    async def create_event(self, connection_id: str, event: CalendarEvent) -> CalendarEvent:
        connection = await self._authorized_connection(connection_id)
        payload = await self._request_json(
            connection,
            "POST",
            self._url(f"{self._calendar_path(connection)}/events"),
            json_body=canonical_to_outlook_event(event),
            headers=self._read_headers(),
        )
        return outlook_event_to_canonical(payload, fallback_timezone=connection.time_zone)

    async def update_event(
        self,
        connection_id: str,
        event_id: str,
        event: CalendarEvent,
    ) -> CalendarEvent:
        connection = await self._authorized_connection(connection_id)
        payload = await self._request_json(
            connection,
            "PATCH",
            self._url(f"/me/events/{quote(event_id, safe='')}"),
            json_body=canonical_to_outlook_event(event),
            headers=self._read_headers(),
        )
        return outlook_event_to_canonical(payload, fallback_timezone=connection.time_zone)

    async def delete_event(self, connection_id: str, event_id: str) -> None:
        connection = await self._authorized_connection(connection_id)
        response = await self._request(
            connection, "DELETE", self._url(f"/me/events/{quote(event_id, safe='')}")
        )
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
        schedules = calendars or [connection.email or connection.calendar_id]
        payload = await self._request_json(
            connection,
            "POST",
            self._url("/me/calendar/getSchedule"),
            json_body={
                "schedules": schedules,
                "startTime": {"dateTime": _graph_utc(time_min), "timeZone": "UTC"},
                "endTime": {"dateTime": _graph_utc(time_max), "timeZone": "UTC"},
                "availabilityViewInterval": FREE_BUSY_INTERVAL_MINUTES,
            },
            headers=self._read_headers(),
        )

        results: list[FreeBusyCalendar] = []
        for entry in payload.get("value") or []:
            if not isinstance(entry, dict):
                continue
            result = FreeBusyCalendar(calendar_id=_optional_text(entry.get("scheduleId")) or "")
            for item in entry.get("scheduleItems") or []:
                if not isinstance(item, dict):
                    continue
                if str(item.get("status", "")).lower() == "free":
                    continue
                try:
                    start, _ = parse_graph_datetime(item.get("start"))
                    end, _ = parse_graph_datetime(item.get("end"))
                except ValueError as exc:
                    logger.debug("Skipping malformed schedule item: %s", exc)
                    continue
                result.busy.append(BusyInterval(start=start, end=end))
            error = entry.get("error")
            if isinstance(error, dict):
                result.errors.append(
                    FreeBusyError(
                        reason=_optional_text(error.get("message")) or "unknown",
                        domain=_optional_text(error.get("responseCode")),
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
        client_state = f"subscription-{connection_id}-{int(now.timestamp() * 1000)}"
        resource = f"{self._calendar_path(connection)}/events"
        requested_expiration = now + OUTLOOK_SUBSCRIPTION_TTL
        payload = await self._request_json(
            connection,
            "POST",
            self._url("/subscriptions"),
            json_body={
                "changeType": OUTLOOK_CHANGE_TYPES,
                "notificationUrl": notification_url,
                "resource": resource,
                "expirationDateTime": requested_expiration.astimezone(UTC)
                .isoformat()
                .replace("+00:00", "Z"),
                "clientState": client_state,
            },
        )

        subscription_id = _optional_text(payload.get("id"))
        if subscription_id is None:
            raise CalendarError(
                "Microsoft Graph subscription response is missing an id",
                provider=str(self.provider),
            )
        expiration = requested_expiration
        expiration_raw = _optional_text(payload.get("expirationDateTime"))
        if expiration_raw is not None:
            expiration, _ = parse_graph_datetime({"dateTime": expiration_raw, "timeZone": "UTC"})

        await self._store.save_webhook_channel(
            WebhookChannel(
                connection_id=connection_id,
                provider=self.provider,
                channel_id=subscription_id,
                resource=_optional_text(payload.get("resource")) or resource,
                notification_url=notification_url,
                client_state=client_state,
                expiration=expiration,
            )
        )
        logger.info(
            "Graph subscription %s created for connection %s (expires %s)",
            subscription_id,
            connection_id,
            expiration.isoformat(),
        )
        return WebhookRegistration(webhook_id=subscription_id, expiration_time=expiration)

    async def remove_webhook(self, connection_id: str, webhook_id: str) -> None:
        connection = await self._authorized_connection(connection_id)
        response = await self._request(
            connection, "DELETE", self._url(f"/subscriptions/{quote(webhook_id, safe='')}")
        )
        if response.status_code != 404:
            self._raise_for_status(response)
        await self._store.delete_webhook_channel(connection_id, webhook_id)
