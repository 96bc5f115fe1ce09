"""Microsoft Graph event <-> canonical event mapping."""

from __future__ import annotations

import re
from datetime import UTC, datetime, time, timedelta
from typing import Any

from calsync.models import (
    Attendee,
    AttendeeResponseStatus,
    CalendarEvent,
    EventPerson,
    EventStatus,
    ShowAs,
)
from calsync.normalizers.google import coerce_zoneinfo

DEFAULT_RRULE = "RRULE:FREQ=DAILY;INTERVAL=1"

_FRACTION_PATTERN = re.compile(r"\.(\d{6})\d+")

_EVENT_STATUS_BY_RESPONSE = {
    "accepted": EventStatus.CONFIRMED,
    "tentativelyaccepted": EventStatus.TENTATIVE,
    "declined": EventStatus.CANCELLED,
}

_SHOW_AS_BY_OUTLOOK = {
    "free": ShowAs.FREE,
    "tentative": ShowAs.TENTATIVE,
    "busy": ShowAs.BUSY,
    "oof": ShowAs.OUT_OF_OFFICE,
}

_OUTLOOK_BY_SHOW_AS = {
    ShowAs.FREE: "free",
    ShowAs.TENTATIVE: "tentative",
    ShowAs.BUSY: "busy",
    ShowAs.OUT_OF_OFFICE: "oof",
}

_ATTENDEE_STATUS_BY_RESPONSE = {
    "accepted": AttendeeResponseStatus.ACCEPTED,
    "declined": AttendeeResponseStatus.DECLINED,
    "tentativelyaccepted": AttendeeResponseStatus.TENTATIVE,
    "notresponded": AttendeeResponseStatus.NEEDS_ACTION,
    "none": AttendeeResponseStatus.NEEDS_ACTION,
}

_RRULE_WEEKDAYS = {
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
    "sunday": "SU",
}


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def parse_graph_datetime(payload: Any, *, fallback_timezone: str = "UTC") -> tuple[datetime, str]:
    """Parse a Graph ``dateTimeTimeZone`` object into an aware datetime.

    Graph emits seven fractional digits and a separate ``timeZone`` name.
    """
    if not isinstance(payload, dict):
        raise ValueError("Outlook event is missing a dateTimeTimeZone payload")
    raw = _normalize_optional_text(payload.get("dateTime"))
    if raw is None:
        raise ValueError("Outlook event dateTimeTimeZone payload is missing dateTime")
    timezone = _normalize_optional_text(payload.get("timeZone")) or fallback_timezone

    normalized = _FRACTION_PATTERN.sub(r".\1", raw)
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Outlook returned an invalid dateTime: {raw}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=coerce_zoneinfo(timezone))
    return parsed, timezone


def graph_datetime(value: datetime, timezone: str) -> dict[str, str]:
    zone = coerce_zoneinfo(timezone)
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    local = aware.astimezone(zone).replace(tzinfo=None)
    return {"dateTime": local.isoformat(), "timeZone": timezone}


def _parse_event_status(payload: dict[str, Any]) -> EventStatus:
    if payload.get("isCancelled") is True:
        return EventStatus.CANCELLED
    response_status = payload.get("responseStatus")
    if not isinstance(response_status, dict):
        return EventStatus.CONFIRMED
    response = _normalize_optional_text(response_status.get("response"))
    if response is None:
        return EventStatus.CONFIRMED
    return _EVENT_STATUS_BY_RESPONSE.get(response.lower(), EventStatus.CONFIRMED)


def _parse_show_as(value: Any) -> ShowAs:
    normalized = _normalize_optional_text(value)
    if normalized is None:
        return ShowAs.BUSY
    return _SHOW_AS_BY_OUTLOOK.get(normalized.lower(), ShowAs.BUSY)


def _parse_attendee_status(value: Any) -> AttendeeResponseStatus:
    if not isinstance(value, dict):
        return AttendeeResponseStatus.NEEDS_ACTION
    response = _normalize_optional_text(value.get("response"))
    if response is None:
        return AttendeeResponseStatus.NEEDS_ACTION
    return _ATTENDEE_STATUS_BY_RESPONSE.get(response.lower(), AttendeeResponseStatus.NEEDS_ACTION)


def _email_address(payload: Any) -> tuple[str | None, str | None]:
    if not isinstance(payload, dict):
        return None, None
    address = payload.get("emailAddress")
    if not isinstance(address, dict):
        return None, None
    return (
        _normalize_optional_text(address.get("address")),
        _normalize_optional_text(address.get("name")),
    )


def _extract_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []
    attendees: list[Attendee] = []
    for entry in payload:
        email, name = _email_address(entry)
        if email is None:
            continue
        attendees.append(
            Attendee(
                email=email,
                name=name,
                response_status=_parse_attendee_status(entry.get("status")),
            )
        )
    return attendees


def _extract_organizer(payload: Any) -> EventPerson | None:
    email, name = _email_address(payload)
    if email is None and name is None:
        return None
    return EventPerson(email=email, name=name)


def outlook_recurrence_to_rrule(recurrence: Any) -> str | None:
    """Convert a Graph ``patternedRecurrence`` into one RRULE string."""
    if not isinstance(recurrence, dict):
        return None
    pattern = recurrence.get("pattern")
    if not isinstance(pattern, dict):
        return DEFAULT_RRULE

    pattern_type = pattern.get("type")
    interval = pattern.get("interval") or 1
    if pattern_type == "daily":
        rule = f"RRULE:FREQ=DAILY;INTERVAL={interval}"
    elif pattern_type == "weekly":
        rule = f"RRULE:FREQ=WEEKLY;INTERVAL={interval}"
        days = [
            _RRULE_WEEKDAYS.get(str(day).lower(), str(day).upper()[:2])
            for day in pattern.get("daysOfWeek") or []
        ]
        if days:
            rule += f";BYDAY={','.join(days)}"
    elif pattern_type == "absoluteMonthly":
        rule = f"RRULE:FREQ=MONTHLY;INTERVAL={interval};BYMONTHDAY={pattern.get('dayOfMonth')}"
    elif pattern_type == "absoluteYearly":
        rule = (
            f"RRULE:FREQ=YEARLY;INTERVAL={interval};BYMONTH={pattern.get('month')}"
            f";BYMONTHDAY={pattern.get('dayOfMonth')}"
        )
    else:
        return DEFAULT_RRULE

    range_payload = recurrence.get("range")
    if isinstance(range_payload, dict):
        range_type = range_payload.get("type")
        if range_type == "endDate" and range_payload.get("endDate"):
            rule += f";UNTIL={str(range_payload['endDate']).replace('-', '')}"
        elif range_type == "numbered" and range_payload.get("numberOfOccurrences"):
            rule += f";COUNT={range_payload['numberOfOccurrences']}"
    return rule


def outlook_event_to_canonical(
    payload: dict[str, Any],
    *,
    fallback_timezone: str = "UTC",
) -> CalendarEvent:
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Outlook event payload is missing a non-empty id")

    start_time, timezone = parse_graph_datetime(
        payload.get("start"), fallback_timezone=fallback_timezone
    )
    end_time, _ = parse_graph_datetime(payload.get("end"), fallback_timezone=timezone)
    is_all_day = payload.get("isAllDay") is True
    if is_all_day and end_time > start_time and end_time.time() == time(0, 0):
        # Graph all-day ends are exclusive midnights; keep the canonical 23:59:59 form.
        end_time -= timedelta(seconds=1)

    body = payload.get("body")
    location = payload.get("location")
    return CalendarEvent(
        id=event_id,
        title=payload.get("subject"),
        description=_normalize_optional_text(body.get("content"))
        if isinstance(body, dict)
        else None,
        location=_normalize_optional_text(location.get("displayName"))
        if isinstance(location, dict)
        else None,
        start_time=start_time,
        end_time=end_time,
        time_zone=timezone,
        is_all_day=is_all_day,
        status=_parse_event_status(payload),
        show_as=_parse_show_as(payload.get("showAs")),
        organizer=_extract_organizer(payload.get("organizer")),
        attendees=_extract_attendees(payload.get("attendees")),
        recurrence_rule=outlook_recurrence_to_rrule(payload.get("recurrence")),
        provider_data=payload,
    )


def canonical_to_outlook_event(event: CalendarEvent) -> dict[str, Any]:
    """Build a Graph ``event`` write body from a canonical event.

    Recurrence is not written back; Graph recurrence patterns are edited in
    the provider's own UI.
    """
    if event.is_all_day:
        zone = coerce_zoneinfo(event.time_zone)
        first_day = event.start_time.astimezone(zone).date()
        last_day = max(event.end_time.astimezone(zone).date(), first_day)
        start = {"dateTime": f"{first_day.isoformat()}T00:00:00", "timeZone": event.time_zone}
        end = {
            "dateTime": f"{(last_day + timedelta(days=1)).isoformat()}T00:00:00",
            "timeZone": event.time_zone,
        }
    else:
        start = graph_datetime(event.start_time, event.time_zone)
        end = graph_datetime(event.end_time, event.time_zone)

    body: dict[str, Any] = {
        "subject": event.title,
        "start": start,
        "end": end,
        "isAllDay": event.is_all_day,
        "showAs": _OUTLOOK_BY_SHOW_AS[event.show_as],
    }
    if event.description is not None:
        body["body"] = {"contentType": "text", "content": event.description}
    if event.location is not None:
        body["location"] = {"displayName": event.location}
    if event.attendees:
        body["attendees"] = [
            {
                "emailAddress": {"address": attendee.email, "name": attendee.name},
                "type": "required",
            }
            for attendee in event.attendees
        ]
    return body
