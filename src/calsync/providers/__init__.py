"""Calendar provider clients."""

from calsync.providers.base import (
    BusyInterval,
    CalendarService,
    EventPage,
    EventRemoval,
    FreeBusyCalendar,
    FreeBusyError,
    SyncOutcome,
    WebhookRegistration,
)
from calsync.providers.google import GoogleCalendarService
from calsync.providers.outlook import OutlookCalendarService

__all__ = [
    "BusyInterval",
    "CalendarService",
    "EventPage",
    "EventRemoval",
    "FreeBusyCalendar",
    "FreeBusyError",
    "GoogleCalendarService",
    "OutlookCalendarService",
    "SyncOutcome",
    "WebhookRegistration",
]
