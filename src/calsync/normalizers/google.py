"""Google Calendar v3 event <-> canonical event mapping."""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calsync.models import (
    Attendee,
    AttendeeResponseStatus,
    CalendarEvent,
    EventPerson,
    EventStatus,
    ShowAs,
)

_ALL_DAY_END_OF_DAY = time(23, 59, 59)


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _boundary_timezone(payload: dict[str, Any], fallback_timezone: str) -> str:
    return _normalize_optional_text(payload.get("timeZone")) or fallback_timezone


def _parse_all_day_date(payload: dict[str, Any]) -> date | None:
    value = _normalize_optional_text(payload.get("date"))
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid date value: {value}") from exc


def _parse_status(value: Any) -> EventStatus:
    if isinstance(value, str):
        try:
            return EventStatus(value.strip().lower())
        except ValueError:
            pass
    return EventStatus.CONFIRMED


def _parse_show_as(transparency: Any) -> ShowAs:
    # Absent transparency means "opaque" in Google's model.
    if isinstance(transparency, str) and transparency.strip().lower() == "transparent":
        return ShowAs.FREE
    return ShowAs.BUSY


def _parse_response_status(value: Any) -> AttendeeResponseStatus:
    if isinstance(value, str):
        try:
            return AttendeeResponseStatus(value.strip())
        except ValueError:
            pass
    return AttendeeResponseStatus.NEEDS_ACTION


def _extract_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []
    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        attendees.append(
            Attendee(
                email=email,
                name=_normalize_optional_text(entry.get("displayName")),
                response_status=_parse_response_status(entry.get("responseStatus")),
            )
        )
    return attendees


def _extract_organizer(payload: Any) -> EventPerson | None:
    if not isinstance(payload, dict):
        return None
    email = _normalize_optional_text(payload.get("email"))
    name = _normalize_optional_text(payload.get("displayName"))
    if email is None and name is None:
        return None
    return EventPerson(email=email, name=name)


def _extract_recurrence_rule(payload: Any) -> str | None:
    if not isinstance(payload, list):
        return None
    for entry in payload:
        normalized = _normalize_optional_text(entry)
        if normalized:
            return normalized
    return None


def google_event_to_canonical(
    payload: dict[str, Any],
    *,
    fallback_timezone: str = "UTC",
) -> CalendarEvent:
    """Normalize one Google ``Event`` resource.

    All-day events (``start.date``) span 00:00:00 of their first day through
    23:59:59 of their last day in the event's time zone.  Google's ``end.date``
    is exclusive, so the last day is ``end.date - 1`` when it lies after the
    start date.
    """
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    timezone = _boundary_timezone(start_payload, fallback_timezone)
    start_date = _parse_all_day_date(start_payload)

    if start_date is not None:
        zone = coerce_zoneinfo(timezone)
        end_date = _parse_all_day_date(end_payload) or start_date
        last_day = end_date - timedelta(days=1) if end_date > start_date else start_date
        start_time = datetime.combine(start_date, time(0, 0), tzinfo=zone)
        end_time = datetime.combine(last_day, _ALL_DAY_END_OF_DAY, tzinfo=zone)
        is_all_day = True
    else:
        start_raw = _normalize_optional_text(start_payload.get("dateTime"))
        end_raw = _normalize_optional_text(end_payload.get("dateTime"))
        if start_raw is None or end_raw is None:
            raise ValueError(
                f"Google Calendar event '{event_id}' is missing start/end dateTime or date"
            )
        start_time = parse_google_datetime(start_raw)
        end_time = parse_google_datetime(end_raw)
        is_all_day = False

    return CalendarEvent(
        id=event_id,
        title=payload.get("summary"),
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        start_time=start_time,
        end_time=end_time,
        time_zone=timezone,
        is_all_day=is_all_day,
        status=_parse_status(payload.get("status")),
        show_as=_parse_show_as(payload.get("transparency")),
        organizer=_extract_organizer(payload.get("organizer")),
        attendees=_extract_attendees(payload.get("attendees")),
        recurrence_rule=_extract_recurrence_rule(payload.get("recurrence")),
        provider_data=payload,
    )


def canonical_to_google_event(event: CalendarEvent) -> dict[str, Any]:
    """Build a Google ``Event`` write body from a canonical event."""
    body: dict[str, Any] = {
        "summary": event.title,
        "status": str(event.status),
        "transparency": "transparent" if event.show_as == ShowAs.FREE else "opaque",
    }
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location

    if event.is_all_day:
        zone = coerce_zoneinfo(event.time_zone)
        first_day = event.start_time.astimezone(zone).date()
        last_day = event.end_time.astimezone(zone).date()
        body["start"] = {"date": first_day.isoformat()}
        body["end"] = {"date": (max(last_day, first_day) + timedelta(days=1)).isoformat()}
    else:
        body["start"] = {"dateTime": google_rfc3339(event.start_time), "timeZone": event.time_zone}
        body["end"] = {"dateTime": google_rfc3339(event.end_time), "timeZone": event.time_zone}

    if event.attendees:
        attendees: list[dict[str, Any]] = []
        for attendee in event.attendees:
            entry: dict[str, Any] = {
                "email": attendee.email,
                "responseStatus": str(attendee.response_status),
            }
            if attendee.name:
                entry["displayName"] = attendee.name
            attendees.append(entry)
        body["attendees"] = attendees

    if event.recurrence_rule:
        body["recurrence"] = [event.recurrence_rule]
    return body
