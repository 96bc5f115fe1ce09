"""Canonical calendar models shared by every provider.

This module defines:
- ``CalendarEvent``: the provider-neutral event that normalizers produce and consume
- ``CalendarConnection``: one OAuth-linked external calendar (the ownership root)
- ``ExternalCalendarEvent``: the local mirror row of one remote event
- ``CalendarSyncLog``: one row per sync attempt
- ``WebhookChannel``: a provider push-channel / subscription renewal record
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UNTITLED_EVENT_TITLE = "Untitled"


class ProviderName(StrEnum):
    GOOGLE = "google"
    OUTLOOK = "outlook"


class EventStatus(StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class ShowAs(StrEnum):
    """Normalized busy/free classification."""

    BUSY = "busy"
    FREE = "free"
    TENTATIVE = "tentative"
    OUT_OF_OFFICE = "outOfOffice"


class AttendeeResponseStatus(StrEnum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"
    NEEDS_ACTION = "needsAction"


class SyncType(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class SyncDirection(StrEnum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    BIDIRECTIONAL = "bidirectional"


class SyncStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


def _ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Canonical event
# ---------------------------------------------------------------------------


class EventPerson(BaseModel):
    """Organizer identity."""

    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    name: str | None = None


class Attendee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=1)
    name: str | None = None
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.NEEDS_ACTION


class CalendarEvent(BaseModel):
    """Provider-neutral calendar event.

    ``recurrence_rule`` holds at most one RRULE string.  Providers that carry
    several recurrence lines (RRULE plus EXRULE/RDATE/EXDATE) keep only the
    first one; the full payload stays available in ``provider_data``.
    """

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    title: str = UNTITLED_EVENT_TITLE
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    time_zone: str = "UTC"
    is_all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    show_as: ShowAs = ShowAs.BUSY
    organizer: EventPerson | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    recurrence_rule: str | None = None
    provider_data: dict[str, Any] | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _default_title(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return UNTITLED_EVENT_TITLE
        return value.strip() if isinstance(value, str) else value

    @field_validator("start_time", "end_time")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    @model_validator(mode="after")
    def _validate_window(self) -> CalendarEvent:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be earlier than start_time")
        return self


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


class CalendarConnection(BaseModel):
    """One OAuth-linked external calendar."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    organization_id: str
    provider: ProviderName
    provider_account_id: str | None = None
    email: str | None = None
    calendar_id: str = "primary"
    time_zone: str = "UTC"
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    last_sync_token: str | None = None
    last_full_sync_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None
    is_active: bool = True
    is_default: bool = False
    consecutive_failures: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ExternalCalendarEvent(BaseModel):
    """Local mirror of one remote event, unique on (connection_id, provider_event_id)."""

    model_config = ConfigDict(extra="forbid")

    connection_id: str
    provider_event_id: str = Field(min_length=1)
    provider_calendar_id: str
    title: str = UNTITLED_EVENT_TITLE
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    time_zone: str = "UTC"
    is_all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    show_as: ShowAs = ShowAs.BUSY
    organizer_email: str | None = None
    organizer_name: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    recurrence_rule: str | None = None
    provider_data: dict[str, Any] | None = None
    last_synced_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_rule is not None

    @classmethod
    def from_canonical(
        cls,
        *,
        connection_id: str,
        calendar_id: str,
        event: CalendarEvent,
        synced_at: datetime | None = None,
    ) -> ExternalCalendarEvent:
        if not event.id:
            raise ValueError("Cannot mirror an event without a provider event id")
        organizer = event.organizer or EventPerson()
        return cls(
            connection_id=connection_id,
            provider_event_id=event.id,
            provider_calendar_id=calendar_id,
            title=event.title,
            description=event.description,
            location=event.location,
            start_time=event.start_time,
            end_time=event.end_time,
            time_zone=event.time_zone,
            is_all_day=event.is_all_day,
            status=event.status,
            show_as=event.show_as,
            organizer_email=organizer.email,
            organizer_name=organizer.name,
            attendees=list(event.attendees),
            recurrence_rule=event.recurrence_rule,
            provider_data=event.provider_data,
            last_synced_at=synced_at or datetime.now(UTC),
        )


class CalendarSyncLog(BaseModel):
    """One sync attempt; at most one ``running`` row per connection."""

    model_config = ConfigDict(extra="forbid")

    id: str
    connection_id: str
    sync_type: SyncType
    direction: SyncDirection = SyncDirection.INBOUND
    status: SyncStatus = SyncStatus.RUNNING
    started_at: datetime
    completed_at: datetime | None = None
    sync_token_before: str | None = None
    sync_token_after: str | None = None
    events_processed: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    error_code: str | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    retry_count: int = 0


class WebhookChannel(BaseModel):
    """Provider push-channel (Google) or subscription (Outlook) record."""

    model_config = ConfigDict(extra="forbid")

    connection_id: str
    provider: ProviderName
    channel_id: str = Field(min_length=1)
    resource_id: str | None = None
    resource: str
    notification_url: str
    client_state: str | None = None
    expiration: datetime
    is_active: bool = True
    created_at: datetime | None = None

    @field_validator("expiration")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        return _ensure_aware(value)
