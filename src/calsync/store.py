"""Persistence contract for the sync engine plus its asyncpg implementation.

Collaborators never touch the tables directly; the engine reads and writes
rows only through :class:`CalendarStore`.  Event writes are always keyed on
``(calendar_connection_id, provider_event_id)`` so no broader locking is
needed.  The single-running-sync invariant is enforced by a partial unique
index on ``calendar_sync_logs`` (see the ``calsync_001`` migration).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

import asyncpg

from calsync.errors import ConnectionNotFoundError, SyncInProgressError
from calsync.models import (
    Attendee,
    CalendarConnection,
    CalendarSyncLog,
    ExternalCalendarEvent,
    SyncDirection,
    SyncStatus,
    SyncType,
    WebhookChannel,
)

logger = logging.getLogger(__name__)

MUTABLE_CONNECTION_FIELDS = frozenset(
    {
        "access_token",
        "refresh_token",
        "token_expires_at",
        "last_sync_token",
        "last_full_sync_at",
        "last_incremental_sync_at",
        "is_active",
        "consecutive_failures",
        "last_error",
    }
)


class CalendarStore(Protocol):
    """Abstract relational store used by providers and the orchestrator."""

    # -- connections ------------------------------------------------------

    async def get_connection(self, connection_id: str) -> CalendarConnection | None:
        """Return one connection or ``None``."""
        ...

    async def list_active_connections(self) -> list[CalendarConnection]:
        """Return every connection with ``is_active`` set."""
        ...

    async def update_connection(self, connection_id: str, **changes: Any) -> CalendarConnection:
        """Apply whitelisted column changes and return the updated row."""
        ...

    async def record_connection_failure(
        self,
        connection_id: str,
        message: str,
        *,
        deactivate_at: int | None = None,
    ) -> CalendarConnection:
        """Increment the failure counter, store ``message``, maybe deactivate."""
        ...

    # -- mirrored events --------------------------------------------------

    async def upsert_event(self, event: ExternalCalendarEvent) -> None:
        """Insert or update one mirrored event by its unique key."""
        ...

    async def delete_event(self, connection_id: str, provider_event_id: str) -> bool:
        """Delete one mirrored event; return whether a row was removed."""
        ...

    async def find_conflicting_events(
        self,
        connection_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ExternalCalendarEvent]:
        """Return non-cancelled events overlapping ``[start, end)``."""
        ...

    async def delete_events_ended_before(self, connection_id: str, cutoff: datetime) -> int:
        """Delete mirrored events whose end time is before ``cutoff``."""
        ...

    # -- sync logs --------------------------------------------------------

    async def open_sync_log(
        self,
        *,
        connection_id: str,
        sync_type: SyncType,
        direction: SyncDirection = SyncDirection.INBOUND,
        sync_token_before: str | None = None,
    ) -> CalendarSyncLog:
        """Create a ``running`` log; raise SyncInProgressError if one is open."""
        ...

    async def close_sync_log(
        self,
        log_id: str,
        *,
        status: SyncStatus,
        sync_type: SyncType | None = None,
        sync_token_after: str | None = None,
        events_processed: int = 0,
        events_updated: int = 0,
        events_deleted: int = 0,
        retry_count: int = 0,
        error_code: str | None = None,
        error_message: str | None = None,
        error_details: Mapping[str, Any] | None = None,
    ) -> None:
        """Finish a sync log."""
        ...

    async def fail_stale_sync_logs(self, connection_id: str, *, started_before: datetime) -> int:
        """Mark orphaned ``running`` logs older than ``started_before`` as failed."""
        ...

    # -- webhook channels -------------------------------------------------

    async def save_webhook_channel(self, channel: WebhookChannel) -> None:
        """Insert or replace a push-channel record keyed on ``channel_id``."""
        ...

    async def get_webhook_channel(
        self,
        connection_id: str,
        channel_id: str,
    ) -> WebhookChannel | None:
        """Return one push-channel record."""
        ...

    async def delete_webhook_channel(self, connection_id: str, channel_id: str) -> bool:
        """Delete one push-channel record."""
        ...

    async def list_expiring_webhook_channels(self, before: datetime) -> list[WebhookChannel]:
        """Return active channels expiring before ``before``."""
        ...


# ---------------------------------------------------------------------------
# asyncpg implementation
# ---------------------------------------------------------------------------


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value returned as text by asyncpg."""
    if not isinstance(val, str):
        return val
    return json.loads(val)


def _encode_jsonb(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


_CONNECTION_COLUMNS = """
    id, user_id, organization_id, provider, provider_account_id, email, calendar_id,
    time_zone, access_token, refresh_token, token_expires_at, last_sync_token,
    last_full_sync_at, last_incremental_sync_at, is_active, is_default,
    consecutive_failures, last_error, created_at, updated_at
"""

_EVENT_COLUMNS = """
    calendar_connection_id, provider_event_id, provider_calendar_id, title, description,
    location, start_time, end_time, time_zone, is_all_day, status, show_as,
    organizer_email, organizer_name, attendees, recurrence_rule, provider_data,
    last_synced_at
"""

_WEBHOOK_COLUMNS = """
    calendar_connection_id, provider, channel_id, resource_id, resource,
    notification_url, client_state, expiration, is_active, created_at
"""


def _row_to_connection(row: Mapping[str, Any]) -> CalendarConnection:
    data = dict(row)
    data["consecutive_failures"] = data.get("consecutive_failures") or 0
    return CalendarConnection(**data)


def _row_to_event(row: Mapping[str, Any]) -> ExternalCalendarEvent:
    data = dict(row)
    data["connection_id"] = data.pop("calendar_connection_id")
    attendees = decode_jsonb(data.pop("attendees", None)) or []
    data["attendees"] = [Attendee(**item) for item in attendees]
    data["provider_data"] = decode_jsonb(data.get("provider_data"))
    return ExternalCalendarEvent(**data)


def _row_to_sync_log(row: Mapping[str, Any]) -> CalendarSyncLog:
    data = dict(row)
    data["connection_id"] = data.pop("calendar_connection_id")
    data["error_details"] = decode_jsonb(data.get("error_details"))
    return CalendarSyncLog(**data)


def _row_to_webhook(row: Mapping[str, Any]) -> WebhookChannel:
    data = dict(row)
    data["connection_id"] = data.pop("calendar_connection_id")
    return WebhookChannel(**data)


class PostgresCalendarStore:
    """CalendarStore backed by an asyncpg pool (or ``calsync.db.Database``)."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    # -- connections ------------------------------------------------------

    async def get_connection(self, connection_id: str) -> CalendarConnection | None:
        row = await self._pool.fetchrow(
            f"SELECT {_CONNECTION_COLUMNS} FROM calendar_connections WHERE id = $1",
            connection_id,
        )
        return _row_to_connection(row) if row is not None else None

    async def list_active_connections(self) -> list[CalendarConnection]:
        rows = await self._pool.fetch(
            f"SELECT {_CONNECTION_COLUMNS} FROM calendar_connections "
            "WHERE is_active = true ORDER BY created_at, id"
        )
        return [_row_to_connection(row) for row in rows]

    async def update_connection(self, connection_id: str, **changes: Any) -> CalendarConnection:
        unknown = sorted(set(changes) - MUTABLE_CONNECTION_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported connection field(s): {', '.join(unknown)}")

        assignments: list[str] = []
        args: list[Any] = [connection_id]
        for column, value in changes.items():
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")
        assignments.append("updated_at = now()")

        row = await self._pool.fetchrow(
            f"UPDATE calendar_connections SET {', '.join(assignments)} "
            f"WHERE id = $1 RETURNING {_CONNECTION_COLUMNS}",
            *args,
        )
        if row is None:
            raise ConnectionNotFoundError(connection_id)
        return _row_to_connection(row)

    async def record_connection_failure(
        self,
        connection_id: str,
        message: str,
        *,
        deactivate_at: int | None = None,
    ) -> CalendarConnection:
        row = await self._pool.fetchrow(
            f"""
            UPDATE calendar_connections
            SET consecutive_failures = COALESCE(consecutive_failures, 0) + 1,
                last_error = $2,
                is_active = CASE
                    WHEN $3::int IS NOT NULL
                         AND COALESCE(consecutive_failures, 0) + 1 >= $3::int THEN false
                    ELSE is_active
                END,
                updated_at = now()
            WHERE id = $1
            RETURNING {_CONNECTION_COLUMNS}
            """,
            connection_id,
            message,
            deactivate_at,
        )
        if row is None:
            raise ConnectionNotFoundError(connection_id)
        return _row_to_connection(row)

    # -- mirrored events --------------------------------------------------

    async def upsert_event(self, event: ExternalCalendarEvent) -> None:
        await self._pool.execute(
            """
            INSERT INTO external_calendar_events (
                calendar_connection_id, provider_event_id, provider_calendar_id, title,
                description, location, start_time, end_time, time_zone, is_all_day, status,
                show_as, organizer_email, organizer_name, attendees, is_recurring,
                recurrence_rule, provider_data, last_synced_at
            )
            VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                $15::jsonb, $16, $17, $18::jsonb, $19
            )
            ON CONFLICT (calendar_connection_id, provider_event_id) DO UPDATE SET
                provider_calendar_id = EXCLUDED.provider_calendar_id,
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                location = EXCLUDED.location,
                start_time = EXCLUDED.start_time,
                end_time = EXCLUDED.end_time,
                time_zone = EXCLUDED.time_zone,
                is_all_day = EXCLUDED.is_all_day,
                status = EXCLUDED.status,
                show_as = EXCLUDED.show_as,
                organizer_email = EXCLUDED.organizer_email,
                organizer_name = EXCLUDED.organizer_name,
                attendees = EXCLUDED.attendees,
                is_recurring = EXCLUDED.is_recurring,
                recurrence_rule = EXCLUDED.recurrence_rule,
                provider_data = EXCLUDED.provider_data,
                last_synced_at = EXCLUDED.last_synced_at,
                updated_at = now()
            """,
            event.connection_id,
            event.provider_event_id,
            event.provider_calendar_id,
            event.title,
            event.description,
            event.location,
            event.start_time,
            event.end_time,
            event.time_zone,
            event.is_all_day,
            str(event.status),
            str(event.show_as),
            event.organizer_email,
            event.organizer_name,
            _encode_jsonb([a.model_dump(mode="json") for a in event.attendees]),
            event.is_recurring,
            event.recurrence_rule,
            _encode_jsonb(event.provider_data),
            event.last_synced_at,
        )

    async def delete_event(self, connection_id: str, provider_event_id: str) -> bool:
        result = await self._pool.execute(
            "DELETE FROM external_calendar_events "
            "WHERE calendar_connection_id = $1 AND provider_event_id = $2",
            connection_id,
            provider_event_id,
        )
        return result.endswith(" 1")

    async def find_conflicting_events(
        self,
        connection_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ExternalCalendarEvent]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM external_calendar_events
            WHERE calendar_connection_id = $1
              AND start_time < $3
              AND end_time > $2
              AND status IS DISTINCT FROM 'cancelled'
            ORDER BY start_time, provider_event_id
            """,
            connection_id,
            start,
            end,
        )
        return [_row_to_event(row) for row in rows]

    async def delete_events_ended_before(self, connection_id: str, cutoff: datetime) -> int:
        result = await self._pool.execute(
            "DELETE FROM external_calendar_events "
            "WHERE calendar_connection_id = $1 AND end_time < $2",
            connection_id,
            cutoff,
        )
        return _affected_rows(result)

    # -- sync logs --------------------------------------------------------

    async def open_sync_log(
        self,
        *,
        connection_id: str,
        sync_type: SyncType,
        direction: SyncDirection = SyncDirection.INBOUND,
        sync_token_before: str | None = None,
    ) -> CalendarSyncLog:
        try:
            row = await self._pool.fetchrow(
                """
                INSERT INTO calendar_sync_logs (
                    calendar_connection_id, sync_type, direction, status, started_at,
                    sync_token_before
                )
                VALUES ($1, $2, $3, 'running', $4, $5)
                RETURNING id, calendar_connection_id, sync_type, direction, status,
                          started_at, completed_at, sync_token_before, sync_token_after,
                          events_processed, events_updated, events_deleted, error_code,
                          error_message, error_details, retry_count
                """,
                connection_id,
                str(sync_type),
                str(direction),
                datetime.now(UTC),
                sync_token_before,
            )
        except asyncpg.UniqueViolationError as exc:
            raise SyncInProgressError(connection_id) from exc
        return _row_to_sync_log(row)

    async def close_sync_log(
        self,
        log_id: str,
        *,
        status: SyncStatus,
        sync_type: SyncType | None = None,
        sync_token_after: str | None = None,
        events_processed: int = 0,
        events_updated: int = 0,
        events_deleted: int = 0,
        retry_count: int = 0,
        error_code: str | None = None,
        error_message: str | None = None,
        error_details: Mapping[str, Any] | None = None,
    ) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_sync_logs
            SET status = $2,
                sync_type = COALESCE($3, sync_type),
                sync_token_after = $4,
                events_processed = $5,
                events_updated = $6,
                events_deleted = $7,
                retry_count = $8,
                error_code = $9,
                error_message = $10,
                error_details = $11::jsonb,
                completed_at = now()
            WHERE id = $1
            """,
            log_id,
            str(status),
            str(sync_type) if sync_type is not None else None,
            sync_token_after,
            events_processed,
            events_updated,
            events_deleted,
            retry_count,
            error_code,
            error_message,
            _encode_jsonb(dict(error_details) if error_details is not None else None),
        )

    async def fail_stale_sync_logs(self, connection_id: str, *, started_before: datetime) -> int:
        result = await self._pool.execute(
            """
            UPDATE calendar_sync_logs
            SET status = 'failed',
                error_code = 'UNKNOWN_ERROR',
                error_message = 'Sync abandoned before completion',
                completed_at = now()
            WHERE calendar_connection_id = $1
              AND status = 'running'
              AND started_at < $2
            """,
            connection_id,
            started_before,
        )
        return _affected_rows(result)

    # -- webhook channels -------------------------------------------------

    async def save_webhook_channel(self, channel: WebhookChannel) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_webhook_channels (
                calendar_connection_id, provider, channel_id, resource_id, resource,
                notification_url, client_state, expiration, is_active
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (channel_id) DO UPDATE SET
                resource_id = EXCLUDED.resource_id,
                resource = EXCLUDED.resource,
                notification_url = EXCLUDED.notification_url,
                client_state = EXCLUDED.client_state,
                expiration = EXCLUDED.expiration,
                is_active = EXCLUDED.is_active
            """,
            channel.connection_id,
            str(channel.provider),
            channel.channel_id,
            channel.resource_id,
            channel.resource,
            channel.notification_url,
            channel.client_state,
            channel.expiration,
            channel.is_active,
        )

    async def get_webhook_channel(
        self,
        connection_id: str,
        channel_id: str,
    ) -> WebhookChannel | None:
        row = await self._pool.fetchrow(
            f"SELECT {_WEBHOOK_COLUMNS} FROM calendar_webhook_channels "
            "WHERE calendar_connection_id = $1 AND channel_id = $2",
            connection_id,
            channel_id,
        )
        return _row_to_webhook(row) if row is not None else None

    async def delete_webhook_channel(self, connection_id: str, channel_id: str) -> bool:
        result = await self._pool.execute(
            "DELETE FROM calendar_webhook_channels "
            "WHERE calendar_connection_id = $1 AND channel_id = $2",
            connection_id,
            channel_id,
        )
        return result.endswith(" 1")

    async def list_expiring_webhook_channels(self, before: datetime) -> list[WebhookChannel]:
        rows = await self._pool.fetch(
            f"SELECT {_WEBHOOK_COLUMNS} FROM calendar_webhook_channels "
            "WHERE is_active = true AND expiration < $1 ORDER BY expiration",
            before,
        )
        return [_row_to_webhook(row) for row in rows]


def _affected_rows(command_tag: str) -> int:
    """Parse the row count from an asyncpg command tag such as ``DELETE 3``."""
    try:
        return int(command_tag.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0
